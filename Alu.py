from enum import IntEnum

MASK32 = 0xFFFFFFFF


class AluOp(IntEnum):
    # Encoded like funct3 so the decoder can pass it straight through.
    ADD = 0
    SLL = 1
    SLT = 2
    XOR = 4
    SR = 5
    OR = 6
    AND = 7


def to_signed(value):
    value &= MASK32
    return value - (1 << 32) if value & 0x80000000 else value


def alu(op, a, b, sub=False, unsigned=False, arith=False, passthrough=False):
    """
    Purely combinational arithmetic unit.

    Args:
        op (AluOp): operation select
        a, b (int): 32-bit operands
        sub: subtract instead of add (ADD only)
        unsigned: unsigned less-than (SLT and the lt flag)
        arith: arithmetic instead of logical right shift (SR only)
        passthrough: result is operand b unchanged (lui)

    Returns:
        tuple: (32-bit result, equality flag, less-than flag)
    """
    a &= MASK32
    b &= MASK32

    eq = a == b
    if unsigned:
        lt = a < b
    else:
        lt = to_signed(a) < to_signed(b)

    shamt = b & 0x1F

    if passthrough:
        result = b
    elif op == AluOp.ADD:
        result = a - b if sub else a + b
    elif op == AluOp.SLL:
        result = a << shamt
    elif op == AluOp.SLT:
        result = 1 if lt else 0
    elif op == AluOp.XOR:
        result = a ^ b
    elif op == AluOp.SR:
        if arith:
            result = to_signed(a) >> shamt
        else:
            result = a >> shamt
    elif op == AluOp.OR:
        result = a | b
    elif op == AluOp.AND:
        result = a & b
    else:
        raise ValueError(f"unknown ALU op {op}")

    return result & MASK32, eq, lt
