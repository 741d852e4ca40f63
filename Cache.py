import logging
import math
from enum import Enum

from ByteLane import merge

log = logging.getLogger(__name__)


class CacheProtocolError(RuntimeError):
    """The requester broke the cache interface contract."""


class CacheState(Enum):
    COMPARE = "compare"
    ALLOCATE = "allocate"


class CacheWithNMRU:
    """
    2-way set-associative, write-through / write-allocate cache controller.

    Every cycle the requester calls `access` (combinational: returns busy and
    read data for this cycle) and the hierarchy calls `tick` at the clock edge
    (LRU update, line writes, refill progress). A miss moves the controller
    from COMPARE to ALLOCATE, where the line is fetched one word at a time
    through the memory port; busy stays asserted until the last word lands.
    """

    def __init__(self, port, name="L1", num_sets=32, associativity=2, block_size=16,
                 address_space=None):
        if associativity != 2:
            raise ValueError(f"{name}: only 2-way caches are supported, got {associativity}")
        if block_size < 4 or block_size & (block_size - 1):
            raise ValueError(f"{name}: block size must be a power of two >= 4, got {block_size}")
        if num_sets < 1 or num_sets & (num_sets - 1):
            raise ValueError(f"{name}: number of sets must be a power of two, got {num_sets}")

        self.port = port
        self.name = name
        # Requests are folded into the backing memory, so aliases share a line
        self.address_space = address_space
        self.num_sets = num_sets
        self.associativity = associativity
        self.block_size = block_size
        self.words_per_block = block_size // 4
        self.offset_bits = int(math.log2(block_size))
        self.index_bits = int(math.log2(num_sets))

        self.reset()

    def reset(self):
        """Invalidate every line and return to COMPARE."""
        self.cache = []
        for _ in range(self.num_sets):
            cache_set = []
            for _ in range(self.associativity):
                cache_set.append({
                    "valid": False,
                    "tag":   None,
                    "data":  [0] * self.words_per_block,
                })
            self.cache.append(cache_set)
        # One bit per set: the most recently used way
        self.mru = [0] * self.num_sets

        self.state = CacheState.COMPARE
        self.miss = None
        self.fill_count = 0
        self.fill_issued = False

        self.req = None
        self.resp = {"busy": False, "rdata": 0}

        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _split_address(self, address):
        word = (address >> 2) & (self.words_per_block - 1)
        index = (address >> self.offset_bits) & (self.num_sets - 1)
        tag = address >> (self.offset_bits + self.index_bits)
        return tag, index, word

    def wrap(self, address):
        address &= 0xFFFFFFFF
        if self.address_space:
            address %= self.address_space
        return address

    def _block_base(self, tag, index):
        return (tag << (self.offset_bits + self.index_bits)) | (index << self.offset_bits)

    def lookup(self, tag, index):
        for way, block in enumerate(self.cache[index]):
            if block["valid"] and block["tag"] == tag:
                return way
        return None

    def victim(self, index):
        """Prefer an invalid way (way 0 first), otherwise the not-most-recently-used one."""
        for way, block in enumerate(self.cache[index]):
            if not block["valid"]:
                return way
        return 1 - self.mru[index]

    def _same_request(self, req):
        miss = self.miss
        return (req is not None
                and req["address"] >> 2 == miss["address"] >> 2
                and req["write"] == miss["write"]
                and req["wdata"] == miss["wdata"]
                and req["mask"] == miss["mask"])

    #======================
    # Combinational side
    #======================
    def access(self, address=None, read=False, write=False, wdata=0, mask=0xF):
        """
        Present this cycle's request.

        Returns:
            dict: {"busy": bool, "rdata": int}. Read data is only meaningful
            for a read that is not busy.
        """
        if read and write:
            raise CacheProtocolError(f"{self.name}: simultaneous read and write request")

        if not (read or write):
            self.req = None
            self.resp = {"busy": self.state is CacheState.ALLOCATE, "rdata": 0}
            return self.resp

        address = self.wrap(address)
        tag, index, word = self._split_address(address)
        req = {
            "address": address,
            "write":   write,
            "wdata":   wdata,
            "mask":    mask,
            "tag":     tag,
            "index":   index,
            "word":    word,
            "way":     None,
            "served":  False,
        }
        resp = {"busy": True, "rdata": 0}

        if self.state is CacheState.COMPARE:
            way = self.lookup(tag, index)
            req["way"] = way
            if way is not None:
                if not write:
                    resp = {"busy": False, "rdata": self.cache[index][way]["data"][word]}
                elif self.port.ready:
                    # The write-through can be handed to memory this cycle.
                    resp = {"busy": False, "rdata": 0}

        else:  # ALLOCATE
            last = self.fill_count == self.words_per_block - 1
            if self.port.valid and last and self._same_request(req):
                if write:
                    rdata = 0
                elif word == self.words_per_block - 1:
                    rdata = self.port.rdata
                else:
                    rdata = self.cache[index][self.miss["way"]]["data"][word]
                resp = {"busy": False, "rdata": rdata}

        req["served"] = not resp["busy"]
        self.req = req
        self.resp = resp
        return resp

    #======================
    # Clock edge
    #======================
    def tick(self):
        req = self.req

        if self.state is CacheState.COMPARE:
            if req is None:
                return
            if req["way"] is not None:
                if not req["served"]:
                    return
                self._hit(req)
                return
            self._start_allocate(req)

        elif self.port.valid:
            block = self.cache[self.miss["index"]][self.miss["way"]]
            block["data"][self.fill_count] = self.port.recv()
            block["valid"] = True
            self.fill_count += 1
            self.fill_issued = False
            if self.fill_count == self.words_per_block:
                self._finish_allocate(req is not None and req["served"])
                return

        if self.state is CacheState.ALLOCATE and not self.fill_issued and self.port.ready:
            base = self._block_base(self.miss["tag"], self.miss["index"])
            self.port.send(base + 4 * self.fill_count, read=True)
            self.fill_issued = True

    def _hit(self, req):
        index, way = req["index"], req["way"]
        block = self.cache[index][way]
        self.mru[index] = way
        self.hits += 1
        if req["write"]:
            block["data"][req["word"]] = merge(block["data"][req["word"]], req["wdata"], req["mask"])
            self.port.send(req["address"], write=True, wdata=req["wdata"], mask=req["mask"])
            log.debug("%s: write hit at set %d, tag %d, word %d", self.name, index, req["tag"], req["word"])
        else:
            log.debug("%s: read hit at set %d, tag %d, word %d", self.name, index, req["tag"], req["word"])

    def _start_allocate(self, req):
        index = req["index"]
        way = self.victim(index)
        block = self.cache[index][way]
        if block["valid"]:
            self.evictions += 1
            log.debug("%s: evicting set %d way %d (tag %d)", self.name, index, way, block["tag"])

        # Tag written once, valid only after the first word lands
        block["tag"] = req["tag"]
        block["valid"] = False

        self.miss = dict(req, way=way)
        self.fill_count = 0
        self.fill_issued = False
        self.state = CacheState.ALLOCATE
        self.misses += 1
        log.debug("%s: %s miss at set %d, tag %d -> way %d", self.name,
                  "write" if req["write"] else "read", index, req["tag"], way)

    def _finish_allocate(self, served):
        miss = self.miss
        index, way = miss["index"], miss["way"]
        block = self.cache[index][way]
        if served and miss["write"]:
            block["data"][miss["word"]] = merge(block["data"][miss["word"]], miss["wdata"], miss["mask"])
            self.port.send(miss["address"], write=True, wdata=miss["wdata"], mask=miss["mask"])
        self.mru[index] = way
        self.state = CacheState.COMPARE
        self.miss = None
        log.debug("%s: refill of set %d way %d complete", self.name, index, way)

    def read_block(self, address):
        """Resident line data for `address`, or None. Does not touch LRU state."""
        tag, index, _ = self._split_address(self.wrap(address))
        way = self.lookup(tag, index)
        if way is None:
            return None
        return list(self.cache[index][way]["data"])

    def stats(self):
        return {"hits": self.hits, "misses": self.misses, "evictions": self.evictions}
