import matplotlib

matplotlib.use("Agg")

import pytest

from Assembler import assemble
from Simulator import Simulator
from Storage import load_config


def encode(line):
    """Machine word for a single assembly statement."""
    return assemble(line).words[0]


@pytest.fixture
def make_sim():
    def _make(program, forwarding=True, **overrides):
        config = load_config(overrides=overrides or None)
        sim = Simulator(config=config, forwarding=forwarding)
        sim.load_assembly(program)
        return sim
    return _make
