import logging

import numpy as np

from ByteLane import merge

log = logging.getLogger(__name__)


class MemoryPortError(RuntimeError):
    """A request was presented that the port's protocol does not allow."""


class Memory:
    """
    Word-organised backing store shared by the instruction and data ports.
    Addresses are byte addresses and wrap modulo the memory size.
    """

    def __init__(self, size=64 * 1024):
        if size <= 0 or size % 4:
            raise ValueError(f"memory size must be a positive multiple of 4, got {size}")
        self.size = size
        self.memory = np.zeros(size // 4, dtype=np.uint32)

    def _index(self, address):
        return (address % self.size) >> 2

    def load_word(self, address):
        return int(self.memory[self._index(address)])

    def store_word(self, address, value, mask=0xF):
        idx = self._index(address)
        self.memory[idx] = merge(int(self.memory[idx]), value, mask)

    def load_words(self, words, base=0):
        for i, word in enumerate(words):
            self.store_word(base + 4 * i, word)

    def load_mem_file(self, path, base=0):
        """
        Load a $readmemh style image: hex words separated by whitespace,
        `@<hex>` sets the word index, `//` starts a comment.

        Returns:
            int: number of words loaded
        """
        index = 0
        count = 0
        with open(path, "r") as file:
            for line in file:
                line = line.split("//", 1)[0]
                for token in line.split():
                    if token.startswith("@"):
                        index = int(token[1:], 16)
                        continue
                    self.store_word(base + 4 * index, int(token.replace("_", ""), 16))
                    index += 1
                    count += 1
        log.info("Loaded %d words from %s", count, path)
        return count

    def dump(self, start=0, count=16):
        return [self.load_word(start + 4 * i) for i in range(count)]

    def copy(self):
        clone = Memory(self.size)
        clone.memory = self.memory.copy()
        return clone


class MemoryPort:
    """
    One cache's view of the backing memory.

    Single request in flight. `ready` says a new request can be accepted at
    the next clock edge; `valid`/`rdata` present returned read data until the
    owner consumes it with `recv`. Latency is `latency` cycles plus a bounded
    random jitter, so responses are variable but always finite and in order.
    """

    def __init__(self, memory, name="port", latency=1, latency_jitter=0, rng=None):
        if latency < 1:
            raise ValueError(f"memory latency must be at least 1 cycle, got {latency}")
        if latency_jitter < 0:
            raise ValueError(f"latency jitter cannot be negative, got {latency_jitter}")
        self.memory = memory
        self.name = name
        self.latency = latency
        self.latency_jitter = latency_jitter
        self.rng = rng if rng is not None else np.random.default_rng(0)

        self.inflight = None
        self.valid = False
        self.rdata = 0

        self.reads = 0
        self.writes = 0

    def reset(self):
        self.inflight = None
        self.valid = False
        self.rdata = 0

    @property
    def ready(self):
        return self.inflight is None and not self.valid

    def _delay(self):
        if self.latency_jitter:
            return self.latency + int(self.rng.integers(0, self.latency_jitter + 1))
        return self.latency

    def send(self, address, read=False, write=False, wdata=0, mask=0xF):
        if read == write:
            raise MemoryPortError(f"{self.name}: exactly one of read/write must be set")
        if not self.ready:
            raise MemoryPortError(f"{self.name}: request sent while port busy")
        self.inflight = {
            "address": address & ~0x3,
            "write": write,
            "wdata": wdata,
            "mask": mask,
            "cycles_remaining": self._delay(),
        }

    def recv(self):
        if not self.valid:
            raise MemoryPortError(f"{self.name}: no read data to receive")
        self.valid = False
        return self.rdata

    def tick(self):
        req = self.inflight
        if req is None:
            return
        req["cycles_remaining"] -= 1
        if req["cycles_remaining"] > 0:
            return

        if req["write"]:
            self.memory.store_word(req["address"], req["wdata"], req["mask"])
            self.writes += 1
            log.debug("%s: wrote %#010x to %#010x (mask %x)",
                      self.name, req["wdata"], req["address"], req["mask"])
        else:
            self.rdata = self.memory.load_word(req["address"])
            self.valid = True
            self.reads += 1
            log.debug("%s: read %#010x from %#010x", self.name, self.rdata, req["address"])
        self.inflight = None
