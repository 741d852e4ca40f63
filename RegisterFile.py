class RegisterFile:
    """32 x 32-bit registers, x0 hardwired to zero."""

    def __init__(self):
        self.registers = [0] * 32

    def reset(self):
        self.registers = [0] * 32

    def read(self, addr):
        if addr == 0:
            return 0
        return self.registers[addr]

    def write(self, addr, value):
        if addr != 0:
            self.registers[addr] = value & 0xFFFFFFFF

    def snapshot(self):
        return list(self.registers)
