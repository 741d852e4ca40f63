import logging

import ByteLane
from Alu import MASK32, alu
from Branch import BranchKind, resolve
from Decoder import decode
from Forwarding import select_operands
from RegisterFile import RegisterFile
from Trace import RetireRecord

log = logging.getLogger(__name__)


class ReferenceModel:
    """
    Instruction-at-a-time model of the same machine: no pipeline, no caches,
    every instruction completes before the next one is fetched. The record it
    produces for each instruction is what the pipeline has to retire.

    It works on its own copy of memory so that it can run beside the
    pipeline without either one seeing the other's stores.
    """

    def __init__(self, memory, entry_point=0):
        self.memory = memory
        self.entry_point = entry_point & MASK32
        self.rf = RegisterFile()
        self.reset()

    def reset(self):
        self.pc = self.entry_point
        self.rf.reset()
        self.order = 0
        self.halted = False

    @property
    def registers(self):
        return self.rf.snapshot()

    def step(self):
        """Execute one instruction and return its RetireRecord."""
        pc = self.pc
        insn = self.memory.load_word(pc)
        ctrl = decode(insn)

        rs1_data = self.rf.read(ctrl.rs1)
        rs2_data = self.rf.read(ctrl.rs2)

        a, b = select_operands(ctrl, pc, rs1_data, rs2_data)
        result, eq, lt = alu(ctrl.alu_op, a, b,
                             sub=ctrl.alu_sub,
                             unsigned=ctrl.alu_unsigned,
                             arith=ctrl.alu_arith,
                             passthrough=ctrl.alu_pass)

        npc = (pc + 4) & MASK32
        trap = ctrl.illegal
        rd_wdata = result
        mem = {"mem_addr": 0, "mem_rmask": 0, "mem_wmask": 0, "mem_rdata": 0, "mem_wdata": 0}

        if not trap and ctrl.branch != BranchKind.NONE:
            taken, target, misaligned = resolve(ctrl.branch, ctrl.funct3, pc, ctrl.imm,
                                                rs1_data, eq, lt)
            if misaligned:
                trap = True
            elif taken:
                npc = target

        if not trap and (ctrl.mem_read or ctrl.mem_write):
            addr = result
            if not ByteLane.is_aligned(addr, ctrl.funct3):
                trap = True
            else:
                mask = ByteLane.byte_mask(addr, ctrl.funct3)
                mem["mem_addr"] = ByteLane.word_address(addr)
                if ctrl.mem_read:
                    word = self.memory.load_word(addr)
                    mem["mem_rmask"] = mask
                    mem["mem_rdata"] = word
                    rd_wdata = ByteLane.load_value(word, addr, ctrl.funct3)
                else:
                    wdata = ByteLane.store_lanes(rs2_data, addr, ctrl.funct3)
                    mem["mem_wmask"] = mask
                    mem["mem_wdata"] = wdata
                    self.memory.store_word(addr, wdata, mask)

        writes = ctrl.reg_write and not trap
        if writes:
            self.rf.write(ctrl.rd, rd_wdata)

        rec = RetireRecord(
            order=self.order,
            insn=insn,
            trap=trap,
            halt=ctrl.halt,
            pc_rdata=pc,
            pc_wdata=npc,
            rs1_addr=ctrl.rs1,
            rs2_addr=ctrl.rs2,
            rs1_rdata=rs1_data,
            rs2_rdata=rs2_data,
            rd_addr=ctrl.rd if writes else 0,
            rd_wdata=rd_wdata if writes else 0,
            **mem,
        )

        self.pc = npc
        self.order += 1
        if ctrl.halt:
            self.halted = True
        return rec

    def run(self, max_steps=100000, stop_on_trap=True):
        records = []
        while len(records) < max_steps:
            rec = self.step()
            records.append(rec)
            if rec.halt or (rec.trap and stop_on_trap):
                break
        else:
            log.warning("Reference model stopped after %d instructions without halting", max_steps)
        return records
