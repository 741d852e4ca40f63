import logging
from enum import IntEnum

log = logging.getLogger(__name__)

MASK32 = 0xFFFFFFFF


class BranchKind(IntEnum):
    NONE = 0
    BRANCH = 1  # conditional, pc-relative
    JAL = 2     # unconditional, pc-relative
    JALR = 3    # indirect, register + offset


def branch_taken(funct3, eq, lt):
    """Combine the ALU comparison flags with the branch funct code."""
    if funct3 == 0:        # beq
        return eq
    if funct3 == 1:        # bne
        return not eq
    if funct3 in (4, 6):   # blt / bltu (the ALU already picked signedness)
        return lt
    if funct3 in (5, 7):   # bge / bgeu
        return not lt
    return False


def resolve(kind, funct3, pc, imm, rs1_value, eq, lt):
    """
    Resolve a control-flow instruction in Execute.

    Returns:
        tuple: (taken, target, misaligned). `target` is only meaningful when
        `taken`; a misaligned target must not redirect fetch.
    """
    if kind == BranchKind.BRANCH:
        taken = branch_taken(funct3, eq, lt)
        target = (pc + imm) & MASK32
    elif kind == BranchKind.JAL:
        taken = True
        target = (pc + imm) & MASK32
    elif kind == BranchKind.JALR:
        taken = True
        target = (rs1_value + imm) & MASK32 & ~1
    else:
        return False, (pc + 4) & MASK32, False

    misaligned = taken and (target & 0x3) != 0
    return taken, target, misaligned


class ProgramCounter:
    """
    Fetch-address register.

    Fetch is always sequential; a taken branch or jump resolved in Execute
    overrides the sequential address through `redirect`.
    """

    def __init__(self, entry_point=0):
        self.entry_point = entry_point & MASK32
        self.pc = self.entry_point

    def reset(self):
        self.pc = self.entry_point

    def next_address(self, hold=False, redirect=None):
        if redirect is not None:
            return redirect & MASK32
        if hold:
            return self.pc
        return (self.pc + 4) & MASK32

    def update(self, hold=False, redirect=None):
        """Clock edge: hold, redirect, or step to pc + 4."""
        npc = self.next_address(hold, redirect)
        if redirect is not None:
            log.debug("Redirecting fetch from %#010x to %#010x", self.pc, npc)
        self.pc = npc
        return npc
