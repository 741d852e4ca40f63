import logging

import matplotlib.pyplot as plt
import numpy as np

from Assembler import assemble
from Core import Core
from Memory import Memory
from Reference import ReferenceModel
from Storage import CacheAndMemory, load_config
from Trace import format_record, write_trace

log = logging.getLogger(__name__)


class VerificationError(AssertionError):
    """The pipeline retired something other than what the reference model did."""

    def __init__(self, expected, actual, message=None):
        self.expected = expected
        self.actual = actual
        if message is None:
            names = expected.diff(actual) if expected is not None and actual is not None else []
            message = (f"retirement mismatch in {', '.join(names)}\n"
                       f"  expected: {format_record(expected) if expected else None}\n"
                       f"  actual:   {format_record(actual) if actual else None}")
        super().__init__(message)


class Simulator:
    def __init__(self, config_path=None, forwarding=None, config=None):
        self.config = config if config is not None else load_config(config_path)
        core_config = self.config["core"]

        self.forwarding = core_config["forwarding"] if forwarding is None else forwarding
        self.entry_point = core_config["entry_point"]
        self.max_cycles = core_config["max_cycles"]
        self.stop_on_trap = core_config["stop_on_trap"]

        self.memory = Memory(self.config["memory"]["size"])
        self.candm = CacheAndMemory(memory=self.memory, config=self.config)
        self.core = Core(self.candm, entry_point=self.entry_point, forwarding=self.forwarding)

        self.program = None
        self.image = None
        self.clock = 0
        self.records = []
        self.retire_cycles = []

    #======================
    # Program loading
    #======================
    def _snapshot(self):
        # The image the reference model starts from
        self.image = self.memory.copy()

    def load_program(self, words, base=None):
        base = self.entry_point if base is None else base
        self.memory.load_words(words, base)
        self._snapshot()
        log.info("Loaded %d words at %#010x", len(words), base)

    def load_assembly(self, text):
        self.program = assemble(text, base=self.entry_point)
        self.load_program(self.program.words, self.program.base)
        return self.program

    def load_mem_file(self, path, base=0):
        count = self.memory.load_mem_file(path, base)
        self._snapshot()
        return count

    def load_file(self, path):
        if path.endswith(".mem") or path.endswith(".hex"):
            return self.load_mem_file(path)
        with open(path, "r") as file:
            return self.load_assembly(file.read())

    #======================
    # Execution
    #======================
    def step(self):
        """One clock: the core evaluates and latches, then the hierarchy ticks."""
        rec = self.core.pipeline_cycle()
        self.candm.tick()
        if rec is not None:
            self.records.append(rec)
            self.retire_cycles.append(self.clock)
        self.clock += 1
        return rec

    def run(self, max_cycles=None, stop_on_trap=None, verify=False):
        """
        Clock the system until a halt-class instruction retires, a trap
        retires (when `stop_on_trap`), or the cycle limit is reached.

        With `verify` set, every retirement is checked against the reference
        model as it happens.

        Returns:
            list: the RetireRecords of this run
        """
        max_cycles = self.max_cycles if max_cycles is None else max_cycles
        stop_on_trap = self.stop_on_trap if stop_on_trap is None else stop_on_trap
        if self.image is None:
            self._snapshot()

        reference = ReferenceModel(self.image.copy(), self.entry_point) if verify else None
        start = len(self.records)

        log.info("Starting simulation (forwarding %s)", "on" if self.forwarding else "off")
        while True:
            rec = self.step()
            if rec is not None:
                if reference is not None:
                    self.check(reference.step(), rec)
                if rec.halt or (rec.trap and stop_on_trap):
                    break
            if self.clock >= max_cycles:
                log.warning("Maximum cycle count reached. Stopping simulation.")
                break

        # Let outstanding write-throughs land before memory is inspected
        self.candm.drain()

        log.info("clock cycles: %d, retired: %d, IPC: %.3f",
                 self.clock, self.core.inst_executed, self.core.get_ipc())
        return self.records[start:]

    @staticmethod
    def check(expected, actual):
        if expected != actual:
            raise VerificationError(expected, actual)

    def verify(self, records=None):
        """
        Replay the reference model over the loaded image and compare it with
        `records` (by default everything retired so far).
        """
        records = self.records if records is None else records
        reference = ReferenceModel(self.image.copy(), self.entry_point)
        for rec in records:
            self.check(reference.step(), rec)
        log.info("Verified %d retirement records against the reference model", len(records))
        return True

    def reset(self, keep_caches=True):
        """
        Reset the core and the run state. With `keep_caches` the cache
        contents survive, so a rerun sees warm caches and the memory the
        previous run left behind. A cold reset also restores the loaded
        program image.
        """
        self.candm.reset(keep_caches=keep_caches)
        if keep_caches:
            # Drained write-throughs make memory match the warm lines
            self._snapshot()
        elif self.image is not None:
            self.memory.memory[:] = self.image.memory
        self.core.reset()
        self.clock = 0
        self.records = []
        self.retire_cycles = []

    #======================
    # Results
    #======================
    @property
    def registers(self):
        return self.core.registers

    def stats(self):
        stats = self.core.stats()
        stats.update(self.candm.stats())
        return stats

    def write_trace(self, path):
        count = write_trace(self.records, path)
        log.info("Wrote %d retirement records to %s", count, path)
        return count

    def display(self):
        print("\n=== Register States ===")
        for row in range(4):
            regs = self.registers[8 * row:8 * row + 8]
            print("  " + "  ".join(f"x{8 * row + i:<2d}={value:08x}" for i, value in enumerate(regs)))

        print(f"\nNumber of clock cycles: {self.clock}")

        stats = self.stats()
        print("\n=== Performance Metrics ===")
        print(f"Retired: {stats['retired']}, Stalls: {stats['stalls']}, IPC: {stats['ipc']:.3f}")
        print(f"Fetch stalls: {stats['fetch_stalls']}, Memory stalls: {stats['mem_stalls']}, "
              f"Flushes: {stats['flushes']}")
        for name in ("l1i", "l1d"):
            cache = stats[name]
            print(f"{name.upper()}: hits {cache['hits']}, misses {cache['misses']}, "
                  f"evictions {cache['evictions']}")

    def plot_registers(self, path=None):
        """Heat map of the register file, 4 rows of 8 registers."""
        data = np.array(self.registers, dtype=np.int64).reshape(4, 8)
        fig = plt.figure(figsize=(16, 6))
        plt.imshow(data, cmap="Blues", aspect="auto")
        for i in range(4):
            for j in range(8):
                plt.text(j, i, f"x{8 * i + j}\n{data[i, j]:#x}",
                         ha="center", va="center", color="black")
        plt.title(f"Register State after {self.clock} cycles")
        plt.axis("off")
        if path is None:
            plt.show()
        else:
            fig.savefig(path)
            plt.close(fig)
        return data
