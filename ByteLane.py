# Byte-lane steering between the pipeline and the word-only caches.
# funct3 of a load/store: 0 byte, 1 half, 2 word, 4 byte unsigned, 5 half unsigned.

from Decoder import sign_extend


def access_size(funct3):
    return 1 << (funct3 & 0x3)


def is_aligned(addr, funct3):
    return (addr & (access_size(funct3) - 1)) == 0


def word_address(addr):
    return addr & ~0x3 & 0xFFFFFFFF


def byte_mask(addr, funct3):
    """4-bit byte-enable for the lanes touched by the access."""
    size = access_size(funct3)
    if size == 4:
        return 0xF
    lanes = (1 << size) - 1
    return (lanes << (addr & 0x3)) & 0xF


def store_lanes(value, addr, funct3):
    """Shift store data into its byte lanes."""
    size = access_size(funct3)
    if size == 4:
        return value & 0xFFFFFFFF
    value &= (1 << (8 * size)) - 1
    return (value << (8 * (addr & 0x3))) & 0xFFFFFFFF


def load_value(word, addr, funct3):
    """Extract the addressed lanes from a full word and extend them."""
    size = access_size(funct3)
    if size == 4:
        return word & 0xFFFFFFFF
    value = (word >> (8 * (addr & 0x3))) & ((1 << (8 * size)) - 1)
    if funct3 & 0x4:
        return value
    return sign_extend(value, 8 * size)


def merge(old, new, mask):
    """Write the enabled byte lanes of `new` over `old`."""
    for lane in range(4):
        if (mask >> lane) & 1:
            sel = 0xFF << (8 * lane)
            old = (old & ~sel) | (new & sel)
    return old & 0xFFFFFFFF
