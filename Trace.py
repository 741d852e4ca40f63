from dataclasses import asdict, dataclass, fields


@dataclass(frozen=True)
class RetireRecord:
    """Architectural side effects of one committed instruction."""
    order: int = 0
    insn: int = 0
    trap: bool = False
    halt: bool = False
    pc_rdata: int = 0
    pc_wdata: int = 0
    rs1_addr: int = 0
    rs2_addr: int = 0
    rs1_rdata: int = 0
    rs2_rdata: int = 0
    rd_addr: int = 0
    rd_wdata: int = 0
    mem_addr: int = 0
    mem_rmask: int = 0
    mem_wmask: int = 0
    mem_rdata: int = 0
    mem_wdata: int = 0

    def to_dict(self):
        return asdict(self)

    def diff(self, other):
        """Names of the fields that differ from `other`."""
        return [f.name for f in fields(self) if getattr(self, f.name) != getattr(other, f.name)]


def format_record(rec):
    line = (f"{rec.order:6d} pc={rec.pc_rdata:08x} npc={rec.pc_wdata:08x} insn={rec.insn:08x}"
            f" rs1=x{rec.rs1_addr:<2d}:{rec.rs1_rdata:08x}"
            f" rs2=x{rec.rs2_addr:<2d}:{rec.rs2_rdata:08x}"
            f" rd=x{rec.rd_addr:<2d}:{rec.rd_wdata:08x}")
    if rec.mem_rmask or rec.mem_wmask:
        line += (f" mem={rec.mem_addr:08x} rmask={rec.mem_rmask:x} wmask={rec.mem_wmask:x}"
                 f" rdata={rec.mem_rdata:08x} wdata={rec.mem_wdata:08x}")
    if rec.trap:
        line += " TRAP"
    if rec.halt:
        line += " HALT"
    return line


def write_trace(records, path):
    with open(path, "w") as file:
        for rec in records:
            file.write(format_record(rec) + "\n")
    return len(records)
