import logging
import re
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


class AssemblerError(ValueError):
    def __init__(self, message, lineno=None):
        if lineno is not None:
            message = f"line {lineno}: {message}"
        super().__init__(message)
        self.lineno = lineno


ABI_NAMES = {
    "zero": 0, "ra": 1, "sp": 2, "gp": 3, "tp": 4,
    "t0": 5, "t1": 6, "t2": 7, "s0": 8, "fp": 8, "s1": 9,
    "a0": 10, "a1": 11, "a2": 12, "a3": 13, "a4": 14, "a5": 15, "a6": 16, "a7": 17,
    "s2": 18, "s3": 19, "s4": 20, "s5": 21, "s6": 22, "s7": 23,
    "s8": 24, "s9": 25, "s10": 26, "s11": 27,
    "t3": 28, "t4": 29, "t5": 30, "t6": 31,
}

# mnemonic: (opcode, funct3, funct7)
R_TYPE = {
    "add":  (0x33, 0, 0x00), "sub":  (0x33, 0, 0x20),
    "sll":  (0x33, 1, 0x00), "slt":  (0x33, 2, 0x00),
    "sltu": (0x33, 3, 0x00), "xor":  (0x33, 4, 0x00),
    "srl":  (0x33, 5, 0x00), "sra":  (0x33, 5, 0x20),
    "or":   (0x33, 6, 0x00), "and":  (0x33, 7, 0x00),
}
I_ALU = {
    "addi": 0, "slti": 2, "sltiu": 3, "xori": 4, "ori": 6, "andi": 7,
}
SHIFT_IMM = {"slli": (1, 0x00), "srli": (5, 0x00), "srai": (5, 0x20)}
LOADS = {"lb": 0, "lh": 1, "lw": 2, "lbu": 4, "lhu": 5}
STORES = {"sb": 0, "sh": 1, "sw": 2}
BRANCHES = {"beq": 0, "bne": 1, "blt": 4, "bge": 5, "bltu": 6, "bgeu": 7}
# Pseudo branches with swapped operands
SWAPPED_BRANCHES = {"bgt": "blt", "ble": "bge", "bgtu": "bltu", "bleu": "bgeu"}

MEM_OPERAND = re.compile(r"^(.*)\((\w+)\)$")


@dataclass
class Program:
    """An assembled memory image, text first and data after it."""
    base: int = 0
    words: list = field(default_factory=list)
    labels: dict = field(default_factory=dict)
    text_words: int = 0


def preprocess(program):
    """
    Split a program into its text and data segments.

    Returns:
        tuple: (text_lines, data_lines), each a list of (lineno, line) with
        comments and blank lines removed
    """
    text, data = [], []
    segment = text
    for lineno, line in enumerate(program.split("\n"), start=1):
        line = line.split("#", 1)[0].split("//", 1)[0].strip().lower()
        if not line:
            continue
        if line == ".text":
            segment = text
            continue
        if line == ".data":
            segment = data
            continue
        if line.startswith((".globl", ".global", ".section")):
            continue
        segment.append((lineno, line))
    log.debug("Text segment: %d lines, data segment: %d lines", len(text), len(data))
    return text, data


def parse_register(token, lineno=None):
    token = token.strip()
    if token in ABI_NAMES:
        return ABI_NAMES[token]
    if token.startswith("x") and token[1:].isdigit():
        num = int(token[1:])
        if num < 32:
            return num
    raise AssemblerError(f"bad register '{token}'", lineno)


def parse_int(token, lineno=None):
    try:
        return int(token.strip(), 0)
    except ValueError:
        raise AssemblerError(f"bad immediate '{token}'", lineno) from None


def split_label(line):
    """Peel leading `label:` definitions off a line."""
    labels = []
    while True:
        m = re.match(r"^([a-z_.$][\w.$]*)\s*:\s*(.*)$", line)
        if not m:
            return labels, line
        labels.append(m.group(1))
        line = m.group(2)


def split_statement(line):
    parts = line.split(None, 1)
    return parts[0], parts[1] if len(parts) > 1 else ""


def split_operands(rest):
    return [tok for tok in re.split(r"[,\s]+", rest.strip()) if tok]


def fits_signed(value, bits):
    return -(1 << (bits - 1)) <= value < (1 << (bits - 1))


def hi_lo(value):
    """Split a 32-bit constant for lui/auipc + addi."""
    value &= 0xFFFFFFFF
    hi = ((value + 0x800) >> 12) & 0xFFFFF
    lo = value & 0xFFF
    if lo & 0x800:
        lo -= 0x1000
    return hi, lo


#======================
# Encoders
#======================
def encode_r(opcode, funct3, funct7, rd, rs1, rs2):
    return (funct7 << 25) | (rs2 << 20) | (rs1 << 15) | (funct3 << 12) | (rd << 7) | opcode


def encode_i(opcode, funct3, rd, rs1, imm):
    return ((imm & 0xFFF) << 20) | (rs1 << 15) | (funct3 << 12) | (rd << 7) | opcode


def encode_s(opcode, funct3, rs1, rs2, imm):
    return (((imm >> 5) & 0x7F) << 25) | (rs2 << 20) | (rs1 << 15) | (funct3 << 12) \
        | ((imm & 0x1F) << 7) | opcode


def encode_b(funct3, rs1, rs2, imm):
    return (((imm >> 12) & 0x1) << 31) | (((imm >> 5) & 0x3F) << 25) | (rs2 << 20) \
        | (rs1 << 15) | (funct3 << 12) | (((imm >> 1) & 0xF) << 8) \
        | (((imm >> 11) & 0x1) << 7) | 0x63


def encode_u(opcode, rd, imm20):
    return ((imm20 & 0xFFFFF) << 12) | (rd << 7) | opcode


def encode_j(rd, imm):
    return (((imm >> 20) & 0x1) << 31) | (((imm >> 1) & 0x3FF) << 21) \
        | (((imm >> 11) & 0x1) << 20) | (((imm >> 12) & 0xFF) << 12) | (rd << 7) | 0x6F


class Assembler:
    """
    Two-pass RV32I assembler. The first pass sizes every statement and
    records label addresses; the second encodes.

    Branch and jump targets are labels or numeric pc-relative offsets.
    """

    def __init__(self, base=0):
        self.base = base
        self.labels = {}

    #======================
    # Pass 1
    #======================
    def _size(self, mnemonic, operands, lineno):
        if mnemonic == "li":
            if len(operands) != 2:
                raise AssemblerError("li takes rd, imm", lineno)
            value = parse_int(operands[1], lineno)
            return 1 if fits_signed(value, 12) else 2
        if mnemonic == "la":
            return 2
        return 1

    def _data_size(self, directive, operands, lineno):
        if directive == ".word":
            return 4 * len(operands)
        if directive == ".space":
            size = parse_int(operands[0], lineno)
            return (size + 3) & ~0x3
        raise AssemblerError(f"unsupported data directive '{directive}'", lineno)

    def _define(self, name, address, lineno):
        if name in self.labels:
            raise AssemblerError(f"duplicate label '{name}'", lineno)
        self.labels[name] = address

    def first_pass(self, text, data):
        statements = []
        address = self.base
        for lineno, line in text:
            names, line = split_label(line)
            for name in names:
                self._define(name, address, lineno)
            if not line:
                continue
            mnemonic, rest = split_statement(line)
            operands = split_operands(rest)
            if mnemonic == ".word":
                size = len(operands)
            else:
                size = self._size(mnemonic, operands, lineno)
            statements.append((lineno, address, mnemonic, operands))
            address += 4 * size
        text_end = address

        data_items = []
        for lineno, line in data:
            names, line = split_label(line)
            for name in names:
                self._define(name, address, lineno)
            if not line:
                continue
            directive, rest = split_statement(line)
            operands = split_operands(rest)
            data_items.append((lineno, address, directive, operands))
            address += self._data_size(directive, operands, lineno)

        return statements, data_items, text_end, address

    #======================
    # Pass 2
    #======================
    def _target(self, token, pc, lineno):
        if token in self.labels:
            return self.labels[token] - pc
        try:
            return int(token, 0)
        except ValueError:
            raise AssemblerError(f"undefined label '{token}'", lineno) from None

    def _value(self, token, lineno):
        if token in self.labels:
            return self.labels[token]
        return parse_int(token, lineno)

    def _expect(self, operands, count, mnemonic, lineno):
        if len(operands) != count:
            raise AssemblerError(f"{mnemonic} expects {count} operand(s), got {len(operands)}", lineno)

    def _mem_operand(self, token, lineno):
        m = MEM_OPERAND.match(token)
        if not m:
            raise AssemblerError(f"bad memory operand '{token}'", lineno)
        offset = m.group(1).strip()
        imm = parse_int(offset, lineno) if offset else 0
        if not fits_signed(imm, 12):
            raise AssemblerError(f"offset {imm} out of range", lineno)
        return imm, parse_register(m.group(2), lineno)

    def encode(self, mnemonic, ops, pc, lineno):
        """Encode one statement into a list of instruction words."""
        reg = lambda tok: parse_register(tok, lineno)
        expect = lambda n: self._expect(ops, n, mnemonic, lineno)

        if mnemonic in R_TYPE:
            expect(3)
            opcode, funct3, funct7 = R_TYPE[mnemonic]
            return [encode_r(opcode, funct3, funct7, reg(ops[0]), reg(ops[1]), reg(ops[2]))]

        if mnemonic in I_ALU:
            expect(3)
            imm = parse_int(ops[2], lineno)
            if not fits_signed(imm, 12):
                raise AssemblerError(f"immediate {imm} out of range", lineno)
            return [encode_i(0x13, I_ALU[mnemonic], reg(ops[0]), reg(ops[1]), imm)]

        if mnemonic in SHIFT_IMM:
            expect(3)
            funct3, funct7 = SHIFT_IMM[mnemonic]
            shamt = parse_int(ops[2], lineno)
            if not 0 <= shamt < 32:
                raise AssemblerError(f"shift amount {shamt} out of range", lineno)
            return [encode_i(0x13, funct3, reg(ops[0]), reg(ops[1]), (funct7 << 5) | shamt)]

        if mnemonic in LOADS:
            expect(2)
            imm, rs1 = self._mem_operand(ops[1], lineno)
            return [encode_i(0x03, LOADS[mnemonic], reg(ops[0]), rs1, imm)]

        if mnemonic in STORES:
            expect(2)
            imm, rs1 = self._mem_operand(ops[1], lineno)
            return [encode_s(0x23, STORES[mnemonic], rs1, reg(ops[0]), imm)]

        if mnemonic in BRANCHES or mnemonic in SWAPPED_BRANCHES:
            expect(3)
            rs1, rs2 = reg(ops[0]), reg(ops[1])
            if mnemonic in SWAPPED_BRANCHES:
                mnemonic = SWAPPED_BRANCHES[mnemonic]
                rs1, rs2 = rs2, rs1
            offset = self._target(ops[2], pc, lineno)
            if not fits_signed(offset, 13) or offset & 1:
                raise AssemblerError(f"branch offset {offset} out of range", lineno)
            return [encode_b(BRANCHES[mnemonic], rs1, rs2, offset)]

        if mnemonic in ("beqz", "bnez"):
            expect(2)
            offset = self._target(ops[1], pc, lineno)
            funct3 = BRANCHES["beq" if mnemonic == "beqz" else "bne"]
            return [encode_b(funct3, reg(ops[0]), 0, offset)]

        if mnemonic == "lui" or mnemonic == "auipc":
            expect(2)
            imm = parse_int(ops[1], lineno)
            return [encode_u(0x37 if mnemonic == "lui" else 0x17, reg(ops[0]), imm)]

        if mnemonic == "jal":
            if len(ops) == 1:
                ops = ["ra"] + ops
            expect(2)
            offset = self._target(ops[1], pc, lineno)
            if not fits_signed(offset, 21) or offset & 1:
                raise AssemblerError(f"jump offset {offset} out of range", lineno)
            return [encode_j(reg(ops[0]), offset)]

        if mnemonic == "jalr":
            if len(ops) == 1:
                return [encode_i(0x67, 0, 1, reg(ops[0]), 0)]
            if len(ops) == 2:
                imm, rs1 = self._mem_operand(ops[1], lineno)
                return [encode_i(0x67, 0, reg(ops[0]), rs1, imm)]
            expect(3)
            return [encode_i(0x67, 0, reg(ops[0]), reg(ops[1]), parse_int(ops[2], lineno))]

        # Pseudo-instructions
        if mnemonic == "nop":
            expect(0)
            return [encode_i(0x13, 0, 0, 0, 0)]
        if mnemonic == "mv":
            expect(2)
            return [encode_i(0x13, 0, reg(ops[0]), reg(ops[1]), 0)]
        if mnemonic == "not":
            expect(2)
            return [encode_i(0x13, 4, reg(ops[0]), reg(ops[1]), -1)]
        if mnemonic == "neg":
            expect(2)
            return [encode_r(0x33, 0, 0x20, reg(ops[0]), 0, reg(ops[1]))]
        if mnemonic == "li":
            expect(2)
            rd, value = reg(ops[0]), parse_int(ops[1], lineno)
            if fits_signed(value, 12):
                return [encode_i(0x13, 0, rd, 0, value)]
            hi, lo = hi_lo(value)
            return [encode_u(0x37, rd, hi), encode_i(0x13, 0, rd, rd, lo)]
        if mnemonic == "la":
            expect(2)
            rd = reg(ops[0])
            hi, lo = hi_lo(self._value(ops[1], lineno) - pc)
            return [encode_u(0x17, rd, hi), encode_i(0x13, 0, rd, rd, lo)]
        if mnemonic == "j":
            expect(1)
            return [encode_j(0, self._target(ops[0], pc, lineno))]
        if mnemonic == "jr":
            expect(1)
            return [encode_i(0x67, 0, 0, reg(ops[0]), 0)]
        if mnemonic == "ret":
            expect(0)
            return [encode_i(0x67, 0, 0, 1, 0)]

        if mnemonic == "ecall":
            return [0x00000073]
        if mnemonic == "ebreak":
            return [0x00100073]
        if mnemonic == "fence":
            return [0x0FF0000F]

        raise AssemblerError(f"unknown instruction '{mnemonic}'", lineno)

    def assemble(self, program):
        text, data = preprocess(program)
        self.labels = {}
        statements, data_items, text_end, end = self.first_pass(text, data)

        words = []
        for lineno, address, mnemonic, operands in statements:
            if mnemonic == ".word":
                words.extend(self._value(tok, lineno) & 0xFFFFFFFF for tok in operands)
            else:
                words.extend(self.encode(mnemonic, operands, address, lineno))
        text_words = len(words)

        for lineno, address, directive, operands in data_items:
            if directive == ".word":
                words.extend(self._value(tok, lineno) & 0xFFFFFFFF for tok in operands)
            else:
                words.extend([0] * (self._data_size(directive, operands, lineno) // 4))

        assert len(words) * 4 == end - self.base
        log.info("Assembled %d text words, %d data words", text_words, len(words) - text_words)
        log.debug("Label map: %s", self.labels)
        return Program(base=self.base, words=words, labels=dict(self.labels), text_words=text_words)


def assemble(program, base=0):
    """Assemble RV32I source text into a Program image."""
    return Assembler(base).assemble(program)
