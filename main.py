import argparse
import logging
import sys

from Assembler import AssemblerError
from Simulator import Simulator, VerificationError

log = logging.getLogger(__name__)


# Define test programs
# control hazards
program_control_hazards = '''
.text
addi x1, x0, 2
addi x10, x0, 4
loop: beq x10, x1, exit
addi x10, x10, -1
j loop
exit: ebreak
'''

# data hazards
program_data_hazards = '''
.text
addi x3, x0, 3
addi x4, x0, 4
add x2, x3, x4
beq x2, x3, label
addi x5, x4, 4
label: ebreak
'''

#bubble sort
program_bubble_sort = '''
.data
arr: .word 0x144 0x3 0x9 0x8 0x1 0x100

.text
la x3, arr
addi x4, x0, 6
addi x7, x0, 0
outer_loop: addi x11, x4, -1
beq x7, x11, exit
addi x10, x3, 0
addi x8, x0, 0
inner_loop: sub x12, x4, x7
addi x12, x12, -1
beq x8, x12, inner_exit
lw x5, 0(x10)
lw x6, 4(x10)
slt x11, x6, x5
beq x11, x0, no_swap
sw x5, 4(x10)
sw x6, 0(x10)
no_swap: addi x10, x10, 4
addi x8, x8, 1
j inner_loop
inner_exit: addi x7, x7, 1
j outer_loop
exit: ebreak
'''


def main(program, forwarding=True, config_path=None, verify=False):
    """
    Assemble and run `program`.

    Args:
        program (str): assembly source
        forwarding (bool): bypass results instead of stalling on RAW hazards
        config_path (str): YAML configuration file
        verify (bool): check every retirement against the reference model

    Returns:
        Simulator: the simulator after the run
    """
    sim = Simulator(config_path=config_path, forwarding=forwarding)
    sim.load_assembly(program)
    sim.run(verify=verify)
    return sim


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Cycle-level RV32I five-stage pipeline simulator")
    parser.add_argument("program", nargs="?",
                        help="assembly (.s) or $readmemh image (.mem); defaults to a bubble sort")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--no-forwarding", action="store_true",
                        help="stall on every RAW hazard instead of bypassing")
    parser.add_argument("--max-cycles", type=int, help="cycle limit")
    parser.add_argument("--trace", help="write retirement records to this file")
    parser.add_argument("--verify", action="store_true",
                        help="check retirements against the reference model")
    parser.add_argument("--plot", help="save a register heat map to this file")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    return parser.parse_args(argv)


def cli(argv=None):
    args = parse_args(argv)
    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    sim = Simulator(config_path=args.config, forwarding=False if args.no_forwarding else None)
    try:
        if args.program:
            sim.load_file(args.program)
        else:
            sim.load_assembly(program_bubble_sort)
        sim.run(max_cycles=args.max_cycles, verify=args.verify)
    except (OSError, AssemblerError) as e:
        print(f"Error loading program: {e}", file=sys.stderr)
        return 2
    except VerificationError as e:
        print(f"Verification failed: {e}", file=sys.stderr)
        return 1

    print("\n=== Simulation Results ===")
    sim.display()
    if args.verify:
        print(f"\nVerified {len(sim.records)} retirements against the reference model")
    if args.trace:
        sim.write_trace(args.trace)
    if args.plot:
        sim.plot_registers(args.plot)
    return 0


if __name__ == "__main__":
    sys.exit(cli())
