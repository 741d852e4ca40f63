from dataclasses import dataclass
from enum import IntFlag

from Alu import AluOp, MASK32
from Branch import BranchKind

# Major opcodes (insn[6:0])
OP_LUI    = 0x37
OP_AUIPC  = 0x17
OP_JAL    = 0x6F
OP_JALR   = 0x67
OP_BRANCH = 0x63
OP_LOAD   = 0x03
OP_STORE  = 0x23
OP_IMM    = 0x13
OP_REG    = 0x33
OP_FENCE  = 0x0F
OP_SYSTEM = 0x73

INSN_ECALL  = 0x00000073
INSN_EBREAK = 0x00100073
INSN_NOP    = 0x00000013  # addi x0, x0, 0


class ImmFormat(IntFlag):
    """One-hot immediate format selector."""
    NONE = 0
    I = 1
    S = 2
    B = 4
    U = 8
    J = 16


BRANCH_NAMES = {0: "beq", 1: "bne", 4: "blt", 5: "bge", 6: "bltu", 7: "bgeu"}
LOAD_NAMES   = {0: "lb", 1: "lh", 2: "lw", 4: "lbu", 5: "lhu"}
STORE_NAMES  = {0: "sb", 1: "sh", 2: "sw"}
IMM_NAMES    = {0: "addi", 1: "slli", 2: "slti", 3: "sltiu", 4: "xori", 5: "srli", 6: "ori", 7: "andi"}
REG_NAMES    = {0: "add", 1: "sll", 2: "slt", 3: "sltu", 4: "xor", 5: "srl", 6: "or", 7: "and"}


def fields(insn):
    """Split an instruction word into its fixed RV32 fields."""
    return {
        "opcode": insn & 0x7F,
        "rd":     (insn >> 7) & 0x1F,
        "funct3": (insn >> 12) & 0x7,
        "rs1":    (insn >> 15) & 0x1F,
        "rs2":    (insn >> 20) & 0x1F,
        "funct7": (insn >> 25) & 0x7F,
    }


def sign_extend(value, bits):
    value &= (1 << bits) - 1
    if value & (1 << (bits - 1)):
        value -= 1 << bits
    return value & MASK32


def decode_imm(insn, fmt):
    """Sign-extended 32-bit immediate for the selected format."""
    if fmt == ImmFormat.I:
        return sign_extend(insn >> 20, 12)
    if fmt == ImmFormat.S:
        return sign_extend(((insn >> 25) << 5) | ((insn >> 7) & 0x1F), 12)
    if fmt == ImmFormat.B:
        imm = (((insn >> 31) & 0x1) << 12) \
            | (((insn >> 7) & 0x1) << 11) \
            | (((insn >> 25) & 0x3F) << 5) \
            | (((insn >> 8) & 0xF) << 1)
        return sign_extend(imm, 13)
    if fmt == ImmFormat.U:
        return insn & 0xFFFFF000
    if fmt == ImmFormat.J:
        imm = (((insn >> 31) & 0x1) << 20) \
            | (((insn >> 12) & 0xFF) << 12) \
            | (((insn >> 20) & 0x1) << 11) \
            | (((insn >> 21) & 0x3FF) << 1)
        return sign_extend(imm, 21)
    return 0


@dataclass(frozen=True)
class Control:
    """Decoded control bits. Never mutated once an instruction leaves Decode."""
    insn: int = INSN_NOP
    mnemonic: str = "nop"
    rd: int = 0
    rs1: int = 0
    rs2: int = 0
    funct3: int = 0
    uses_rs1: bool = False
    uses_rs2: bool = False
    reg_write: bool = False
    mem_read: bool = False
    mem_write: bool = False
    alu_op: AluOp = AluOp.ADD
    alu_sub: bool = False
    alu_unsigned: bool = False
    alu_arith: bool = False
    alu_pass: bool = False
    use_imm: bool = False
    imm_fmt: ImmFormat = ImmFormat.NONE
    imm: int = 0
    is_auipc: bool = False
    branch: BranchKind = BranchKind.NONE
    illegal: bool = False
    halt: bool = False

    @property
    def is_load(self):
        return self.mem_read

    @property
    def is_jump(self):
        return self.branch in (BranchKind.JAL, BranchKind.JALR)


def _illegal(insn):
    return Control(insn=insn, mnemonic="illegal", illegal=True)


def _control(insn, f, fmt=ImmFormat.NONE, **kwargs):
    # rd == 0 never produces a register write
    if kwargs.get("reg_write") and f["rd"] == 0:
        kwargs["reg_write"] = False
    return Control(insn=insn,
                   rd=f["rd"] if kwargs.get("reg_write") else 0,
                   rs1=f["rs1"] if kwargs.get("uses_rs1") else 0,
                   rs2=f["rs2"] if kwargs.get("uses_rs2") else 0,
                   funct3=f["funct3"],
                   imm_fmt=fmt,
                   imm=decode_imm(insn, fmt),
                   **kwargs)


def decode(insn):
    """
    Decode a 32-bit instruction word into control bits.

    Unsupported opcode/funct combinations come back as an illegal Control
    (no register, memory or control-flow effect) instead of raising.
    """
    insn &= MASK32
    f = fields(insn)
    opcode, funct3, funct7 = f["opcode"], f["funct3"], f["funct7"]

    if opcode == OP_LUI:
        return _control(insn, f, ImmFormat.U, mnemonic="lui", reg_write=True,
                        use_imm=True, alu_pass=True)

    if opcode == OP_AUIPC:
        return _control(insn, f, ImmFormat.U, mnemonic="auipc", reg_write=True,
                        use_imm=True, is_auipc=True)

    if opcode == OP_JAL:
        return _control(insn, f, ImmFormat.J, mnemonic="jal", reg_write=True,
                        branch=BranchKind.JAL)

    if opcode == OP_JALR:
        if funct3 != 0:
            return _illegal(insn)
        return _control(insn, f, ImmFormat.I, mnemonic="jalr", reg_write=True,
                        uses_rs1=True, branch=BranchKind.JALR)

    if opcode == OP_BRANCH:
        if funct3 not in BRANCH_NAMES:
            return _illegal(insn)
        return _control(insn, f, ImmFormat.B, mnemonic=BRANCH_NAMES[funct3],
                        uses_rs1=True, uses_rs2=True, alu_op=AluOp.SLT,
                        alu_unsigned=funct3 in (6, 7), branch=BranchKind.BRANCH)

    if opcode == OP_LOAD:
        if funct3 not in LOAD_NAMES:
            return _illegal(insn)
        return _control(insn, f, ImmFormat.I, mnemonic=LOAD_NAMES[funct3],
                        reg_write=True, uses_rs1=True, mem_read=True, use_imm=True)

    if opcode == OP_STORE:
        if funct3 not in STORE_NAMES:
            return _illegal(insn)
        return _control(insn, f, ImmFormat.S, mnemonic=STORE_NAMES[funct3],
                        uses_rs1=True, uses_rs2=True, mem_write=True, use_imm=True)

    if opcode == OP_IMM:
        mnemonic = IMM_NAMES[funct3]
        arith = False
        if funct3 == 1 and funct7 != 0:
            return _illegal(insn)
        if funct3 == 5:
            if funct7 == 0x20:
                mnemonic, arith = "srai", True
            elif funct7 != 0:
                return _illegal(insn)
        return _control(insn, f, ImmFormat.I, mnemonic=mnemonic, reg_write=True,
                        uses_rs1=True, use_imm=True,
                        alu_op=AluOp.SLT if funct3 == 3 else AluOp(funct3),
                        alu_unsigned=funct3 == 3, alu_arith=arith)

    if opcode == OP_REG:
        mnemonic = REG_NAMES[funct3]
        sub = arith = False
        if funct7 == 0x20:
            if funct3 == 0:
                mnemonic, sub = "sub", True
            elif funct3 == 5:
                mnemonic, arith = "sra", True
            else:
                return _illegal(insn)
        elif funct7 != 0:
            return _illegal(insn)
        return _control(insn, f, mnemonic=mnemonic, reg_write=True,
                        uses_rs1=True, uses_rs2=True,
                        alu_op=AluOp.SLT if funct3 == 3 else AluOp(funct3),
                        alu_sub=sub, alu_unsigned=funct3 == 3, alu_arith=arith)

    if opcode == OP_FENCE:
        if funct3 != 0:
            return _illegal(insn)
        return _control(insn, f, mnemonic="fence")

    if opcode == OP_SYSTEM:
        # No Zicsr: only ecall/ebreak, both halt-class
        if insn == INSN_ECALL:
            return _control(insn, f, mnemonic="ecall", halt=True)
        if insn == INSN_EBREAK:
            return _control(insn, f, mnemonic="ebreak", halt=True)
        return _illegal(insn)

    return _illegal(insn)
