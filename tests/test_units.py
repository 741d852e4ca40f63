import pytest

import ByteLane
from Alu import AluOp, alu
from Branch import BranchKind, ProgramCounter, branch_taken, resolve
from Decoder import ImmFormat, decode, decode_imm
from RegisterFile import RegisterFile
from conftest import encode


class TestAlu:
    def test_add_wraps(self):
        assert alu(AluOp.ADD, 0xFFFFFFFF, 1)[0] == 0

    def test_sub(self):
        assert alu(AluOp.ADD, 3, 5, sub=True)[0] == 0xFFFFFFFE

    def test_signed_and_unsigned_compare(self):
        assert alu(AluOp.SLT, 0xFFFFFFFF, 1)[0] == 1
        assert alu(AluOp.SLT, 0xFFFFFFFF, 1, unsigned=True)[0] == 0

    def test_shifts_use_low_five_bits(self):
        assert alu(AluOp.SLL, 1, 33)[0] == 2
        assert alu(AluOp.SR, 0x80000000, 4)[0] == 0x08000000
        assert alu(AluOp.SR, 0x80000000, 4, arith=True)[0] == 0xF8000000

    def test_flags(self):
        _, eq, lt = alu(AluOp.SLT, 7, 7)
        assert eq and not lt

    def test_passthrough(self):
        assert alu(AluOp.ADD, 99, 0x12345000, passthrough=True)[0] == 0x12345000


class TestDecoder:
    def test_addi(self):
        ctrl = decode(0x00500093)
        assert ctrl.mnemonic == "addi"
        assert (ctrl.rd, ctrl.rs1, ctrl.imm) == (1, 0, 5)
        assert ctrl.reg_write and ctrl.use_imm and not ctrl.uses_rs2
        assert ctrl.rs2 == 0

    def test_rd_zero_never_writes(self):
        ctrl = decode(encode("addi x0, x1, 1"))
        assert not ctrl.reg_write
        assert ctrl.rd == 0

    def test_load_and_store(self):
        lw = decode(0x00002083)
        assert lw.mem_read and lw.is_load and lw.funct3 == 2
        sw = decode(0x0020A223)
        assert sw.mem_write and not sw.reg_write
        assert (sw.rs1, sw.rs2, sw.imm) == (1, 2, 4)

    def test_branch_and_jumps(self):
        beq = decode(0x00000463)
        assert beq.branch == BranchKind.BRANCH and beq.imm == 8
        jal = decode(0x008000EF)
        assert jal.branch == BranchKind.JAL and jal.is_jump and jal.rd == 1
        jalr = decode(encode("jalr x0, 0(x1)"))
        assert jalr.branch == BranchKind.JALR and jalr.uses_rs1

    def test_negative_immediates(self):
        assert decode(encode("addi x1, x1, -1")).imm == 0xFFFFFFFF
        assert decode(encode("sw x1, -4(x2)")).imm == 0xFFFFFFFC

    def test_b_and_j_immediates(self):
        insn = encode("beq x1, x2, -16")
        assert decode_imm(insn, ImmFormat.B) == (-16) & 0xFFFFFFFF
        insn = encode("jal x0, 2048")
        assert decode_imm(insn, ImmFormat.J) == 2048

    def test_lui(self):
        ctrl = decode(0x123452B7)
        assert ctrl.mnemonic == "lui" and ctrl.imm == 0x12345000 and ctrl.rd == 5

    @pytest.mark.parametrize("insn", [
        0x00000000,  # all zeros
        0xFFFFFFFF,
        0x00001073,  # csrrw
        0x40001013,  # slli with funct7 set
        0x02000033,  # mul (M extension)
    ])
    def test_illegal(self, insn):
        ctrl = decode(insn)
        assert ctrl.illegal
        assert not (ctrl.reg_write or ctrl.mem_read or ctrl.mem_write)
        assert ctrl.branch == BranchKind.NONE

    def test_halt_class(self):
        assert decode(0x00000073).halt
        assert decode(0x00100073).halt
        assert not decode(0x0FF0000F).halt


class TestByteLane:
    def test_masks(self):
        assert ByteLane.byte_mask(0x101, 0) == 0b0010
        assert ByteLane.byte_mask(0x102, 1) == 0b1100
        assert ByteLane.byte_mask(0x100, 2) == 0b1111

    def test_alignment(self):
        assert ByteLane.is_aligned(0x103, 0)
        assert not ByteLane.is_aligned(0x101, 1)
        assert not ByteLane.is_aligned(0x102, 2)

    def test_store_lanes(self):
        assert ByteLane.store_lanes(0x12345678, 0x3, 0) == 0x78000000
        assert ByteLane.store_lanes(0x12345678, 0x2, 1) == 0x56780000

    def test_load_extension(self):
        word = 0x80FF7F01
        assert ByteLane.load_value(word, 1, 0) == 0x7F
        assert ByteLane.load_value(word, 2, 0) == 0xFFFFFFFF
        assert ByteLane.load_value(word, 2, 4) == 0xFF
        assert ByteLane.load_value(word, 2, 1) == 0xFFFF80FF
        assert ByteLane.load_value(word, 2, 5) == 0x80FF

    def test_merge(self):
        assert ByteLane.merge(0x11223344, 0xAABBCCDD, 0b0101) == 0x11BB33DD


class TestRegisterFile:
    def test_x0_is_zero(self):
        rf = RegisterFile()
        rf.write(0, 123)
        assert rf.read(0) == 0

    def test_write_masks(self):
        rf = RegisterFile()
        rf.write(5, -1)
        assert rf.read(5) == 0xFFFFFFFF


class TestBranch:
    @pytest.mark.parametrize("funct3, eq, lt, taken", [
        (0, True, False, True), (0, False, False, False),
        (1, False, True, True), (4, False, True, True),
        (5, False, True, False), (7, True, False, True),
    ])
    def test_branch_taken(self, funct3, eq, lt, taken):
        assert branch_taken(funct3, eq, lt) == taken

    def test_jalr_clears_low_bit(self):
        taken, target, misaligned = resolve(BranchKind.JALR, 0, 0x40, 5, 0x100, False, False)
        assert taken and target == 0x104 and not misaligned

    def test_misaligned_target(self):
        taken, target, misaligned = resolve(BranchKind.BRANCH, 0, 0x40, 6, 0, True, False)
        assert taken and misaligned and target == 0x46

    def test_not_taken_is_never_misaligned(self):
        _, _, misaligned = resolve(BranchKind.BRANCH, 0, 0x40, 6, 0, False, False)
        assert not misaligned

    def test_program_counter(self):
        pc = ProgramCounter(0x80)
        pc.update()
        assert pc.pc == 0x84
        pc.update(hold=True)
        assert pc.pc == 0x84
        pc.update(redirect=0x10)
        assert pc.pc == 0x10
        pc.reset()
        assert pc.pc == 0x80
