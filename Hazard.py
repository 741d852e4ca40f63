import logging
from enum import IntEnum

log = logging.getLogger(__name__)


class ForwardSel(IntEnum):
    """Where an operand read in Decode comes from, in priority order."""
    REGFILE = 0
    EX_ALU = 1
    MEM_ALU = 2
    MEM_LOAD = 3


class HazardUnit:
    """
    Tracks the destination registers of the producers sitting in Execute and
    Memory and decides, for the instruction in Decode, whether it must stall
    and where each source operand has to be taken from.

    The tracker is a two-entry shift register that moves in step with the
    ID/EX and EX/MEM latches.
    """

    def __init__(self, forwarding=True):
        self.forwarding = forwarding
        self.ex = self.entry()
        self.mem = self.entry()

    @staticmethod
    def entry(ctrl=None):
        if ctrl is None:
            return {"rd": 0, "reg_write": False, "is_load": False}
        return {"rd": ctrl.rd, "reg_write": ctrl.reg_write, "is_load": ctrl.is_load}

    def reset(self):
        self.ex = self.entry()
        self.mem = self.entry()

    def select(self, src, ex_trap=False):
        """
        Forward select for one source register.

        Returns None when the operand cannot be produced this cycle and
        Decode has to stall.
        """
        # x0 is always zero, never a hazard
        if src == 0:
            return ForwardSel.REGFILE

        # Execute holds the most recent producer, so it is checked first.
        ex = self.ex
        if ex["reg_write"] and not ex_trap and ex["rd"] == src:
            if ex["is_load"] or not self.forwarding:
                return None
            return ForwardSel.EX_ALU

        mem = self.mem
        if mem["reg_write"] and mem["rd"] == src:
            if not self.forwarding:
                return None
            if mem["is_load"]:
                return ForwardSel.MEM_LOAD
            return ForwardSel.MEM_ALU

        return ForwardSel.REGFILE

    def detect(self, ctrl, ex_trap=False):
        """
        Stall and forward-select signals for the instruction in Decode.

        Args:
            ctrl (Control): decoded control bits of the consumer
            ex_trap (bool): the producer in Execute trapped this cycle and
                will not write its destination

        Returns:
            dict: {"stall", "fwd_a", "fwd_b"}
        """
        fwd_a = self.select(ctrl.rs1, ex_trap) if ctrl.uses_rs1 else ForwardSel.REGFILE
        fwd_b = self.select(ctrl.rs2, ex_trap) if ctrl.uses_rs2 else ForwardSel.REGFILE
        stall = fwd_a is None or fwd_b is None
        if stall:
            log.debug("Stalling in ID due to data hazard for %s (rs1=x%d rs2=x%d)",
                      ctrl.mnemonic, ctrl.rs1, ctrl.rs2)
        return {"stall": stall, "fwd_a": fwd_a, "fwd_b": fwd_b}

    def advance(self, ctrl=None, hold=False, ex_trap=False):
        """
        Clock edge. `ctrl` is the instruction leaving Decode (None for a
        bubble). With `hold` set both entries keep their contents.
        """
        if hold:
            return
        self.mem = dict(self.ex)
        if ex_trap:
            self.mem["reg_write"] = False
        self.ex = self.entry(ctrl)
