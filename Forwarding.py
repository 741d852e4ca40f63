from Hazard import ForwardSel


def forward_value(sel, regfile_value, ex_result=0, mem_result=0, load_result=0):
    """Resolve one forward select to a value; the register file is the default."""
    if sel == ForwardSel.EX_ALU:
        return ex_result
    if sel == ForwardSel.MEM_ALU:
        return mem_result
    if sel == ForwardSel.MEM_LOAD:
        return load_result
    return regfile_value


def select_operands(ctrl, pc, rs1_value, rs2_value):
    """
    ALU operands for an instruction in Execute.

    auipc and jumps take the program counter as operand 1; jumps take the
    constant 4 as operand 2 so the ALU produces the return address.
    """
    if ctrl.is_auipc or ctrl.is_jump:
        a = pc
    else:
        a = rs1_value

    if ctrl.is_jump:
        b = 4
    elif ctrl.use_imm:
        b = ctrl.imm
    else:
        b = rs2_value

    return a, b
