import pytest

from Cache import CacheProtocolError, CacheState, CacheWithNMRU
from Memory import Memory, MemoryPort, MemoryPortError
from Storage import CacheAndMemory, load_config

SET_STRIDE = 32 * 16  # addresses this far apart share a set


@pytest.fixture
def system():
    memory = Memory(64 * 1024)
    port = MemoryPort(memory, "dmem", latency=2)
    cache = CacheWithNMRU(port, name="L1D")
    return memory, port, cache


def request(cache, port, address, write=False, wdata=0, mask=0xF, limit=200):
    """Hold a request until the cache accepts it; returns (response, cycles busy)."""
    for cycle in range(limit):
        resp = cache.access(address, read=not write, write=write, wdata=wdata, mask=mask)
        cache.tick()
        port.tick()
        if not resp["busy"]:
            return resp, cycle
    raise AssertionError(f"request to {address:#x} never completed")


def settle(cache, port, limit=50):
    for _ in range(limit):
        if cache.state is CacheState.COMPARE and port.inflight is None:
            return
        cache.access()
        cache.tick()
        port.tick()
    raise AssertionError("cache never went idle")


def test_read_miss_then_hit(system):
    memory, port, cache = system
    memory.load_words([0x11, 0x22, 0x33, 0x44], base=0x40)

    resp, busy_cycles = request(cache, port, 0x48)
    assert resp["rdata"] == 0x33
    assert busy_cycles > 0
    assert cache.misses == 1

    resp, busy_cycles = request(cache, port, 0x4C)
    assert resp["rdata"] == 0x44
    assert busy_cycles == 0
    assert cache.hits == 1
    assert cache.read_block(0x40) == [0x11, 0x22, 0x33, 0x44]


def test_refill_takes_four_memory_reads(system):
    _, port, cache = system
    request(cache, port, 0x100)
    assert port.reads == 4


def test_last_word_served_from_port(system):
    memory, port, cache = system
    memory.load_words([1, 2, 3, 4], base=0x200)
    resp, _ = request(cache, port, 0x20C)
    assert resp["rdata"] == 4


def test_nmru_replacement(system):
    _, port, cache = system
    a, b, c = 0x0, SET_STRIDE, 2 * SET_STRIDE

    request(cache, port, a)
    request(cache, port, b)
    assert cache.evictions == 0

    request(cache, port, a)          # a becomes most recently used
    request(cache, port, c)          # evicts b
    assert cache.evictions == 1
    assert cache.read_block(b) is None
    assert cache.read_block(a) is not None

    misses = cache.misses
    request(cache, port, a)
    assert cache.misses == misses


def test_victim_prefers_invalid_way(system):
    _, port, cache = system
    request(cache, port, 0x0)
    assert cache.victim(0) == 1


def test_write_through_survives_eviction(system):
    memory, port, cache = system
    a = 0x4
    request(cache, port, a, write=True, wdata=0xDEADBEEF)
    settle(cache, port)
    assert memory.load_word(a) == 0xDEADBEEF

    request(cache, port, SET_STRIDE)
    request(cache, port, 2 * SET_STRIDE)
    assert cache.read_block(a) is None

    resp, busy_cycles = request(cache, port, a)
    assert busy_cycles > 0
    assert resp["rdata"] == 0xDEADBEEF


def test_partial_write_hit(system):
    memory, port, cache = system
    memory.store_word(0x80, 0x11223344)
    request(cache, port, 0x80)
    request(cache, port, 0x80, write=True, wdata=0x0000AA00, mask=0b0010)
    resp, _ = request(cache, port, 0x80)
    assert resp["rdata"] == 0x1122AA44
    settle(cache, port)
    assert memory.load_word(0x80) == 0x1122AA44


def test_write_hit_waits_for_port(system):
    _, port, cache = system
    request(cache, port, 0x0)
    request(cache, port, 0x0, write=True, wdata=1)
    # The first write-through is still in flight
    resp = cache.access(0x0, write=True, wdata=2)
    assert resp["busy"]


def test_busy_while_allocating(system):
    _, port, cache = system
    assert cache.access(0x0, read=True)["busy"]
    cache.tick()
    port.tick()
    assert cache.state is CacheState.ALLOCATE
    assert cache.access()["busy"]


def test_read_and_write_together_is_an_error(system):
    _, _, cache = system
    with pytest.raises(CacheProtocolError):
        cache.access(0x0, read=True, write=True)


def test_only_two_way_geometry(system):
    _, port, _ = system
    with pytest.raises(ValueError):
        CacheWithNMRU(port, associativity=4)
    with pytest.raises(ValueError):
        CacheWithNMRU(port, num_sets=24)


def test_port_rejects_second_request():
    port = MemoryPort(Memory(1024), latency=3)
    port.send(0x0, read=True)
    with pytest.raises(MemoryPortError):
        port.send(0x4, read=True)


def test_port_latency_and_jitter():
    memory = Memory(1024)
    memory.store_word(0x10, 77)
    port = MemoryPort(memory, latency=2, latency_jitter=3)
    port.send(0x10, read=True)
    cycles = 0
    while not port.valid:
        port.tick()
        cycles += 1
    assert 2 <= cycles <= 5
    assert port.recv() == 77
    assert port.ready


def test_memory_wraps():
    memory = Memory(1024)
    memory.store_word(1024 + 8, 5)
    assert memory.load_word(8) == 5


class TestCacheAndMemory:
    def test_shared_backing_store(self):
        candm = CacheAndMemory(config=load_config())
        assert candm.iport.memory is candm.dport.memory
        assert candm.l1i.num_sets == 32 and candm.l1d.block_size == 16

    def test_warm_reset_keeps_lines(self):
        candm = CacheAndMemory(config=load_config())
        while candm.l1d.access(0x40, read=True)["busy"]:
            candm.tick()
        candm.tick()
        candm.reset(keep_caches=True)
        assert candm.l1d.read_block(0x40) is not None
        candm.reset(keep_caches=False)
        assert candm.l1d.read_block(0x40) is None

    def test_config_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("memory:\n  latency: 5\nl1d_config:\n  num_sets: 16\n")
        config = load_config(str(path))
        assert config["memory"]["latency"] == 5
        assert config["memory"]["size"] == 64 * 1024
        candm = CacheAndMemory(config=config)
        assert candm.l1d.num_sets == 16
        assert candm.dport.latency == 5

    def test_unknown_config_key(self):
        with pytest.raises(ValueError):
            load_config(overrides={"l2_config": {}})
        with pytest.raises(ValueError):
            load_config(overrides={"memory": {"banks": 4}})


def test_aliases_share_a_line():
    memory = Memory(1024)
    port = MemoryPort(memory, "dmem", latency=2)
    cache = CacheWithNMRU(port, name="L1D", address_space=memory.size)
    request(cache, port, 0x404, write=True, wdata=7)
    resp, busy_cycles = request(cache, port, 0x4)
    assert busy_cycles == 0
    assert resp["rdata"] == 7
    assert cache.misses == 1
    assert cache.read_block(0x404) == cache.read_block(0x4)


def test_hierarchy_wraps_to_memory_size():
    candm = CacheAndMemory(config=load_config())
    assert candm.l1i.address_space == candm.memory.size
    assert candm.l1d.wrap(0x13000) == 0x3000
