import copy
import logging

import numpy as np
import yaml

from Cache import CacheState, CacheWithNMRU
from Memory import Memory, MemoryPort

log = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "l1i_config": {
        "num_sets":      32,
        "associativity": 2,
        "block_size":    16,
    },
    "l1d_config": {
        "num_sets":      32,
        "associativity": 2,
        "block_size":    16,
    },
    "memory": {
        "size":           64 * 1024,
        "latency":        2,
        "latency_jitter": 0,
        "seed":           0,
    },
    "core": {
        "entry_point":  0x00000000,
        "forwarding":   True,
        "max_cycles":   100000,
        "stop_on_trap": True,
    },
}


def _merge(base, overrides):
    for key, value in (overrides or {}).items():
        if key not in base:
            raise ValueError(f"unknown configuration key: {key}")
        if isinstance(base[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"configuration section {key} must be a mapping")
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: str = None, overrides: dict = None) -> dict:
    """
    Built-in defaults, then the YAML file (if any), then `overrides`.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path is not None:
        with open(config_path, "r") as file:
            from_file = yaml.safe_load(file) or {}
        if not isinstance(from_file, dict):
            raise ValueError(f"{config_path}: top level must be a mapping")
        _merge(config, from_file)
        log.info("Loaded configuration from %s", config_path)
    _merge(config, overrides)
    return config


class CacheAndMemory:
    """
    Private L1-I and L1-D in front of one backing memory. Each cache owns an
    independent memory port; both ports see the same storage.
    """

    def __init__(self,
                 config_path: str = None,
                 memory: Memory = None,
                 config: dict = None):
        self.config = config if config is not None else load_config(config_path)
        mem_config = self.config["memory"]

        self.memory = memory if memory is not None else Memory(mem_config["size"])

        # Variable memory latency comes from one seeded generator
        self.rng = np.random.default_rng(mem_config["seed"])
        self.iport = MemoryPort(self.memory, "imem",
                                latency=mem_config["latency"],
                                latency_jitter=mem_config["latency_jitter"],
                                rng=self.rng)
        self.dport = MemoryPort(self.memory, "dmem",
                                latency=mem_config["latency"],
                                latency_jitter=mem_config["latency_jitter"],
                                rng=self.rng)

        self.l1i = CacheWithNMRU(self.iport, name="L1I", address_space=self.memory.size,
                                 **self.config["l1i_config"])
        self.l1d = CacheWithNMRU(self.dport, name="L1D", address_space=self.memory.size,
                                 **self.config["l1d_config"])

        log.debug("Cache configuration: L1I %s, L1D %s, memory %s",
                  self.config["l1i_config"], self.config["l1d_config"], mem_config)

    def tick(self):
        # Caches consume/issue at the edge first, then memory advances.
        self.l1i.tick()
        self.l1d.tick()
        self.iport.tick()
        self.dport.tick()

    def idle(self):
        return (self.l1i.state is CacheState.COMPARE
                and self.l1d.state is CacheState.COMPARE
                and self.iport.inflight is None
                and self.dport.inflight is None)

    def drain(self):
        """Run the hierarchy with no requests until refills and writes settle."""
        cycles = 0
        while not self.idle():
            self.l1i.access()
            self.l1d.access()
            self.tick()
            cycles += 1
        return cycles

    def reset(self, keep_caches=False):
        if keep_caches:
            self.drain()
            return
        self.iport.reset()
        self.dport.reset()
        self.reseed()
        self.l1i.reset()
        self.l1d.reset()

    def reseed(self):
        """Restart the latency generator so a cold rerun repeats its timing."""
        self.rng = np.random.default_rng(self.config["memory"]["seed"])
        self.iport.rng = self.rng
        self.dport.rng = self.rng

    def stats(self):
        return {
            "l1i": self.l1i.stats(),
            "l1d": self.l1d.stats(),
            "memory_reads": self.iport.reads + self.dport.reads,
            "memory_writes": self.iport.writes + self.dport.writes,
        }
