import logging

import ByteLane
from Alu import MASK32, alu
from Branch import BranchKind, ProgramCounter, resolve
from Decoder import Control, decode
from Forwarding import forward_value, select_operands
from Hazard import HazardUnit
from RegisterFile import RegisterFile
from Trace import RetireRecord

log = logging.getLogger(__name__)

STAGES = ("IF/ID", "ID/EX", "EX/MEM", "MEM/WB")

NOP = Control()


def make_slot():
    """An invalid slot: a bubble with every side-effect enable deasserted."""
    return {
        "valid":     False,
        "pc":        0,
        "npc":       0,
        "insn":      0,
        "ctrl":      NOP,
        "rs1_data":  0,
        "rs2_data":  0,
        "result":    0,
        "rd_wdata":  0,
        "mem_addr":  0,
        "mem_rmask": 0,
        "mem_wmask": 0,
        "mem_rdata": 0,
        "mem_wdata": 0,
        "trap":      False,
        "halt":      False,
    }


class Core:
    """
    Five-stage in-order RV32I pipeline: Fetch, Decode, Execute, Memory,
    Writeback.

    Each call to `pipeline_cycle` evaluates the stages from Writeback back to
    Fetch against the current latch contents, then applies one clock edge:
    every latch either advances, holds (stall) or is replaced by a bubble
    (flush / inserted no-op). The caches in `candm` are ticked by the owner
    of the core after the cycle.
    """

    def __init__(self, candm, entry_point=0, forwarding=True):
        if entry_point & 0x3:
            raise ValueError(f"entry point {entry_point:#x} is not word aligned")
        self.candm = candm
        self.icache = candm.l1i
        self.dcache = candm.l1d
        self.forwarding = forwarding

        self.pc = ProgramCounter(entry_point)
        self.rf = RegisterFile()
        self.hazard = HazardUnit(forwarding)

        self.reset()

    def reset(self):
        self.pc.reset()
        self.rf.reset()
        self.hazard.reset()

        # Pipeline registers.
        self.pipeline_reg = {stage: make_slot() for stage in STAGES}

        # Set once a halt-class instruction leaves Decode; Fetch stops.
        self.draining = False

        self.cycle = 0
        self.inst_executed = 0
        self.stall_count = 0           # load-use / RAW bubbles
        self.fetch_stall_count = 0     # instruction cache busy
        self.mem_stall_count = 0       # data cache busy
        self.pipeline_flush_count = 0
        self.squashed_count = 0

        # Combinational outputs of the current cycle
        self.if_out = make_slot()
        self.id_out = make_slot()
        self.ex_out = make_slot()
        self.mem_out = make_slot()
        self.fetch_busy = False
        self.id_stall = False
        self.mem_stall = False
        self.redirect = None

    @property
    def registers(self):
        return self.rf.snapshot()

    def get_ipc(self):
        if self.cycle == 0:
            return 0.0
        return self.inst_executed / self.cycle

    def pipeline_empty(self):
        return not any(slot["valid"] for slot in self.pipeline_reg.values())

    #=====================================================================
    # Writeback
    #=====================================================================
    def WB(self):
        slot = self.pipeline_reg["MEM/WB"]
        if not slot["valid"]:
            return None

        ctrl = slot["ctrl"]
        writes = ctrl.reg_write and not slot["trap"]
        if writes:
            # Written in the first half of the cycle, so Decode sees it now.
            self.rf.write(ctrl.rd, slot["rd_wdata"])

        rec = RetireRecord(
            order=self.inst_executed,
            insn=slot["insn"],
            trap=slot["trap"],
            halt=slot["halt"],
            pc_rdata=slot["pc"],
            pc_wdata=slot["npc"],
            rs1_addr=ctrl.rs1,
            rs2_addr=ctrl.rs2,
            rs1_rdata=slot["rs1_data"],
            rs2_rdata=slot["rs2_data"],
            rd_addr=ctrl.rd if writes else 0,
            rd_wdata=slot["rd_wdata"] if writes else 0,
            mem_addr=slot["mem_addr"],
            mem_rmask=slot["mem_rmask"],
            mem_wmask=slot["mem_wmask"],
            mem_rdata=slot["mem_rdata"],
            mem_wdata=slot["mem_wdata"],
        )
        self.inst_executed += 1

        if slot["trap"]:
            log.info("Trap retired: %s at pc %#010x", ctrl.mnemonic, slot["pc"])
        if slot["halt"]:
            log.info("Halt retired: %s at pc %#010x", ctrl.mnemonic, slot["pc"])
        return rec

    #=====================================================================
    # Memory
    #=====================================================================
    def MEM(self):
        slot = self.pipeline_reg["EX/MEM"]
        out = dict(slot)
        self.mem_stall = False

        ctrl = slot["ctrl"]
        if slot["valid"] and not slot["trap"] and (ctrl.mem_read or ctrl.mem_write):
            addr = slot["result"]
            if ctrl.mem_read:
                resp = self.dcache.access(addr, read=True)
            else:
                resp = self.dcache.access(addr, write=True,
                                          wdata=slot["mem_wdata"],
                                          mask=slot["mem_wmask"])
            if resp["busy"]:
                self.mem_stall = True
            elif ctrl.mem_read:
                out["mem_rdata"] = resp["rdata"]
                out["rd_wdata"] = ByteLane.load_value(resp["rdata"], addr, ctrl.funct3)
        else:
            self.dcache.access()

        self.mem_out = out

    #=====================================================================
    # Execute
    #=====================================================================
    def EX(self):
        slot = self.pipeline_reg["ID/EX"]
        out = dict(slot)
        self.redirect = None

        if not slot["valid"]:
            self.ex_out = out
            return

        ctrl = slot["ctrl"]
        pc = slot["pc"]

        a, b = select_operands(ctrl, pc, slot["rs1_data"], slot["rs2_data"])
        result, eq, lt = alu(ctrl.alu_op, a, b,
                             sub=ctrl.alu_sub,
                             unsigned=ctrl.alu_unsigned,
                             arith=ctrl.alu_arith,
                             passthrough=ctrl.alu_pass)
        out["result"] = result
        out["rd_wdata"] = result if ctrl.reg_write else 0
        out["npc"] = (pc + 4) & MASK32

        trap = ctrl.illegal

        if ctrl.branch != BranchKind.NONE:
            taken, target, misaligned = resolve(ctrl.branch, ctrl.funct3, pc, ctrl.imm,
                                                slot["rs1_data"], eq, lt)
            if misaligned:
                log.debug("Misaligned target %#010x for %s at pc %#010x", target, ctrl.mnemonic, pc)
                trap = True
            elif taken:
                log.debug("Branch taken in EX for %s at pc %#010x -> %#010x", ctrl.mnemonic, pc, target)
                out["npc"] = target
                self.redirect = target

        if ctrl.mem_read or ctrl.mem_write:
            if not ByteLane.is_aligned(result, ctrl.funct3):
                log.debug("Misaligned access %#010x for %s at pc %#010x", result, ctrl.mnemonic, pc)
                trap = True
            else:
                mask = ByteLane.byte_mask(result, ctrl.funct3)
                out["mem_addr"] = ByteLane.word_address(result)
                if ctrl.mem_read:
                    out["mem_rmask"] = mask
                else:
                    out["mem_wmask"] = mask
                    out["mem_wdata"] = ByteLane.store_lanes(slot["rs2_data"], result, ctrl.funct3)

        if trap:
            out["trap"] = True
            out["rd_wdata"] = 0

        self.ex_out = out

    #=====================================================================
    # Decode
    #=====================================================================
    def ID(self):
        slot = self.pipeline_reg["IF/ID"]
        self.id_stall = False

        if not slot["valid"]:
            self.id_out = make_slot()
            return

        ctrl = decode(slot["insn"])
        signals = self.hazard.detect(ctrl, ex_trap=self.ex_out["trap"])
        if signals["stall"]:
            self.id_stall = True
            self.id_out = make_slot()
            return

        ex_result = self.ex_out["rd_wdata"]
        mem_result = self.pipeline_reg["EX/MEM"]["rd_wdata"]
        load_result = self.mem_out["rd_wdata"]

        out = dict(slot)
        out["ctrl"] = ctrl
        out["rs1_data"] = forward_value(signals["fwd_a"], self.rf.read(ctrl.rs1),
                                        ex_result, mem_result, load_result)
        out["rs2_data"] = forward_value(signals["fwd_b"], self.rf.read(ctrl.rs2),
                                        ex_result, mem_result, load_result)
        out["halt"] = ctrl.halt
        self.id_out = out

    #=====================================================================
    # Fetch
    #=====================================================================
    def IF(self):
        self.if_out = make_slot()
        self.fetch_busy = False

        if self.draining:
            self.icache.access()
            return

        pc = self.pc.pc
        resp = self.icache.access(pc, read=True)
        if resp["busy"]:
            self.fetch_busy = True
            return

        self.if_out.update(valid=True, pc=pc, npc=(pc + 4) & MASK32, insn=resp["rdata"])

    #=====================================================================
    # Clock edge
    #=====================================================================
    def flush_pipeline(self):
        """Squash the wrong-path instructions in Decode and Fetch."""
        self.pipeline_flush_count += 1
        squashed = int(self.pipeline_reg["IF/ID"]["valid"]) + int(self.if_out["valid"])
        self.squashed_count += squashed
        self.pipeline_reg["ID/EX"] = make_slot()
        self.pipeline_reg["IF/ID"] = make_slot()
        log.debug("Flushing %d wrong-path instruction(s)", squashed)

    def clock_edge(self):
        ex_trap = self.ex_out["valid"] and self.ex_out["trap"]

        if self.mem_stall:
            # Memory holds, and so does everything in front of it.
            self.mem_stall_count += 1
            self.pipeline_reg["MEM/WB"] = make_slot()
            self.hazard.advance(hold=True)
            self.pc.update(hold=True)
            return

        self.pipeline_reg["MEM/WB"] = self.mem_out
        self.pipeline_reg["EX/MEM"] = self.ex_out

        if self.redirect is not None:
            self.flush_pipeline()
            self.hazard.advance(None, ex_trap=ex_trap)
            self.pc.update(redirect=self.redirect)
            return

        if self.id_stall:
            # Bubble into Execute; Decode and Fetch keep their instruction.
            self.stall_count += 1
            self.pipeline_reg["ID/EX"] = make_slot()
            self.hazard.advance(None, ex_trap=ex_trap)
            self.pc.update(hold=True)
            return

        id_out = self.id_out
        self.pipeline_reg["ID/EX"] = id_out
        self.hazard.advance(id_out["ctrl"] if id_out["valid"] else None, ex_trap=ex_trap)
        if id_out["valid"] and id_out["halt"]:
            self.draining = True

        if self.draining or self.fetch_busy:
            # A fetch past a halt is discarded, not waited for
            if not self.draining:
                self.fetch_stall_count += 1
            self.pipeline_reg["IF/ID"] = make_slot()
            self.pc.update(hold=True)
            return

        self.pipeline_reg["IF/ID"] = self.if_out
        self.pc.update()

    def pipeline_cycle(self):
        """
        Execute one full pipeline cycle.
        Stages are evaluated in reverse order so that each one sees the
        previous cycle's latch contents plus the bypass values produced
        downstream this cycle.

        Returns:
            RetireRecord or None
        """
        retired = self.WB()
        self.MEM()
        self.EX()
        self.ID()
        self.IF()
        log.debug("cycle %d | %s", self.cycle, self.linetrace())
        self.clock_edge()
        self.cycle += 1
        return retired

    def linetrace(self):
        parts = []
        if self.fetch_busy:
            parts.append(f"{'S imem':<10}")
        elif self.if_out["valid"]:
            parts.append(f"{self.if_out['pc']:08x}  ")
        else:
            parts.append(" " * 10)
        for stage in ("IF/ID", "ID/EX", "EX/MEM", "MEM/WB"):
            slot = self.pipeline_reg[stage]
            if not slot["valid"]:
                name = ""
            elif stage == "IF/ID":
                name = decode(slot["insn"]).mnemonic
            else:
                name = slot["ctrl"].mnemonic
            if stage == "IF/ID" and self.id_stall:
                name = "S raw"
            if stage == "EX/MEM" and self.mem_stall:
                name = "S dmem"
            parts.append(f"{name:<8}")
        return " | ".join(parts)

    def stats(self):
        return {
            "cycles": self.cycle,
            "retired": self.inst_executed,
            "ipc": self.get_ipc(),
            "stalls": self.stall_count,
            "fetch_stalls": self.fetch_stall_count,
            "mem_stalls": self.mem_stall_count,
            "flushes": self.pipeline_flush_count,
            "squashed": self.squashed_count,
        }
