import struct
import logging
import asm
from mmap import mmap
from enum import IntEnum, unique
from asm import Instr, Label, Mem, STACK_BASE


logger = logging.getLogger(__name__)

# The machine only backs a window of the address space with memory,
# large enough to hold both the operand stack and the heap.
MEM_BASE = 0x10000000
MEM_SIZE = 0x100000

WORD_SIZE = 4


@unique
class ErrorCodes(IntEnum):
    INVALID_ADDRESS = 1
    MISALIGNED_ACCESS = 2
    UNKNOWN_LABEL = 3
    STEP_LIMIT_EXCEEDED = 4


    def __str__(self):
        return {
            self.INVALID_ADDRESS:
            'Invalid address',

            self.MISALIGNED_ACCESS:
            'Misaligned memory access',

            self.UNKNOWN_LABEL:
            'Unknown label',

            self.STEP_LIMIT_EXCEEDED:
            'Step limit exceeded',
        }.get(int(self), super().__str__())


RE = ErrorCodes


class MachineRuntimeError(Exception):
    def __init__(self, code, msg=None):
        assert isinstance(code, ErrorCodes)

        if not msg:
            msg = str(code)

        self.code = code

        super().__init__(msg)


class Jump:
    def __init__(self, target):
        self.target = target


def to_int32(value):
    return (value + 2**31) % 2**32 - 2**31


class Machine:
    def __init__(self, code, mem, *, step_limit=1000000):
        self.code = [i for i in code if isinstance(i, Instr)]
        self.labels = {}
        idx = 0
        for i in code:
            if isinstance(i, Label):
                self.labels[i.value] = idx
            else:
                idx += 1

        self.mem = mem
        self.regs = {r: 0 for r in asm.registers}
        self.ip = 0
        self.steps = 0
        self.step_limit = step_limit
        self.stopped = False

        self.event_handler = self.event_handler_routine


    def event_handler_routine(self, event):
        event_name, *args = event
        if event_name == 'error':
            code, = args
            msg = str(ErrorCodes(code))
            logger.error(f'Machine error: {msg}')
        else:
            logger.error(f'Unknown machine event: {event_name}')


    def launch(self):
        self.stopped = False
        while not self.stopped:
            self.step()


    def step(self):
        if self.ip >= len(self.code):
            self.stopped = True
            return

        instr = self.code[self.ip]
        try:
            if self.step_limit is not None and self.steps >= self.step_limit:
                raise MachineRuntimeError(RE.STEP_LIMIT_EXCEEDED)
            self.steps += 1
            n = getattr(self, f'exec_{instr.name}')(*instr.operands)
        except MachineRuntimeError as e:
            self.event_handler(('error', e.code))
            self.stopped = True
        else:
            logger.debug('EXEC: %s', instr)
            if isinstance(n, Jump):
                self.ip = n.target
            else:
                self.ip += 1


    def get_reg(self, reg):
        if reg == 'zero':
            return 0
        return self.regs[reg]


    def set_reg(self, reg, value):
        if reg != 'zero':
            self.regs[reg] = to_int32(value)


    def jump(self, label):
        try:
            return Jump(self.labels[label])
        except KeyError:
            raise MachineRuntimeError(RE.UNKNOWN_LABEL,
                                      f'Unknown label: {label}')


    def address(self, mem):
        assert isinstance(mem, Mem)
        return (self.get_reg(mem.reg) + mem.offset) % 2**32


    def check_address(self, addr):
        if addr % WORD_SIZE != 0:
            raise MachineRuntimeError(RE.MISALIGNED_ACCESS,
                                      f'Misaligned access: {addr:#x}')
        if not MEM_BASE <= addr <= MEM_BASE + MEM_SIZE - WORD_SIZE:
            raise MachineRuntimeError(RE.INVALID_ADDRESS,
                                      f'Invalid address: {addr:#x}')


    def read_word(self, addr):
        self.check_address(addr)
        self.mem.seek(addr - MEM_BASE)
        value, = struct.unpack('<i', self.mem.read(WORD_SIZE))
        return value


    def write_word(self, addr, value):
        self.check_address(addr)
        self.mem.seek(addr - MEM_BASE)
        self.mem.write(struct.pack('<i', to_int32(value)))


    def get_stack(self, base=STACK_BASE):
        "Returns the contents of the operand stack, bottom first."
        sp = self.get_reg('sp') % 2**32
        return [self.read_word(addr)
                for addr in range(base, sp, WORD_SIZE)]


    def exec_li(self, rd, imm):
        self.set_reg(rd, imm)


    def exec_addi(self, rd, rs, imm):
        self.set_reg(rd, self.get_reg(rs) + imm)


    def exec_add(self, rd, rs1, rs2):
        self.set_reg(rd, self.get_reg(rs1) + self.get_reg(rs2))


    def exec_sub(self, rd, rs1, rs2):
        self.set_reg(rd, self.get_reg(rs1) - self.get_reg(rs2))


    def exec_mul(self, rd, rs1, rs2):
        self.set_reg(rd, self.get_reg(rs1) * self.get_reg(rs2))


    def exec_div(self, rd, rs1, rs2):
        x = self.get_reg(rs1)
        y = self.get_reg(rs2)
        if y == 0:
            result = -1
        else:
            # rounds towards zero; the -2**31 / -1 overflow wraps back
            # to -2**31 in set_reg.
            result = abs(x) // abs(y)
            if (x < 0) != (y < 0):
                result = -result
        self.set_reg(rd, result)


    def exec_slt(self, rd, rs1, rs2):
        self.set_reg(rd, int(self.get_reg(rs1) < self.get_reg(rs2)))


    def exec_neg(self, rd, rs):
        self.set_reg(rd, -self.get_reg(rs))


    def exec_lw(self, rd, mem):
        self.set_reg(rd, self.read_word(self.address(mem)))


    def exec_sw(self, rs, mem):
        self.write_word(self.address(mem), self.get_reg(rs))


    def exec_beq(self, rs1, rs2, label):
        if self.get_reg(rs1) == self.get_reg(rs2):
            return self.jump(label)


    def exec_bne(self, rs1, rs2, label):
        if self.get_reg(rs1) != self.get_reg(rs2):
            return self.jump(label)


    def exec_beqz(self, rs, label):
        if self.get_reg(rs) == 0:
            return self.jump(label)


    def exec_bnez(self, rs, label):
        if self.get_reg(rs) != 0:
            return self.jump(label)


    def exec_j(self, label):
        return self.jump(label)


    def shutdown(self):
        self.stopped = True
        self.mem.close()


    @staticmethod
    def load(listing, **kwargs):
        if hasattr(listing, 'read'):
            logger.info('Reading assembly file...')
            listing = listing.read()

        logger.info('Parsing assembly...')
        code = asm.parse_listing(listing)

        logger.info('Mapping machine memory...')
        mem = mmap(-1, MEM_SIZE)

        return Machine(code, mem, **kwargs)
