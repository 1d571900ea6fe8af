#!/usr/bin/env python3

import re
import argparse

instr_name_to_instr = {}

# Memory map of the target machine. The operand stack grows upwards
# from STACK_BASE and variables are laid out from HEAP_BASE in 4-byte
# cells.
STACK_BASE = 0x10010000
HEAP_BASE = 0x10040000

# The address the first instruction is considered to be at. Only used
# for listings; the code itself never refers to absolute addresses.
TEXT_ADDR = 0x00400000
INSTR_SIZE = 4

registers = [
    'zero', 'ra', 'sp', 'gp', 'tp',
    't0', 't1', 't2',
    's0', 's1',
    'a0', 'a1', 'a2', 'a3', 'a4', 'a5', 'a6', 'a7',
    's2', 's3', 's4', 's5', 's6', 's7', 's8', 's9', 's10', 's11',
    't3', 't4', 't5', 't6',
]

mem_operand_re = re.compile(r'^(-?(?:0x[0-9a-fA-F]+|[0-9]+))\((\w+)\)$')
label_re = re.compile(r'^\.?[A-Za-z_][A-Za-z_0-9]*$')


class AsmError(Exception):
    def __init__(self, msg, lineno=None):
        self.lineno = lineno
        if lineno is not None:
            msg = f'line {lineno}: {msg}'
        super().__init__(msg)


class Mem:
    """A memory operand, i.e. a base register plus a constant byte
offset, written as `offset(reg)`.

    """
    def __init__(self, offset, reg):
        self.offset = offset
        self.reg = reg


    def __eq__(self, other):
        return isinstance(other, Mem) and \
            (self.offset, self.reg) == (other.offset, other.reg)


    def __repr__(self):
        return f'<Mem {self}>'


    def __str__(self):
        return f'{self.offset}({self.reg})'


class Operand:
    def __init__(self, name, parse_func, format_func):
        self.name = name
        self.parse = parse_func
        self.format = format_func


def format_imm(value):
    assert isinstance(value, int)
    if value < 0:
        return f'-{-value:#x}'
    return f'{value:#x}'


def parse_reg(text):
    if text not in registers:
        raise AsmError(f'Unknown register: {text}')
    return text


def parse_imm(text):
    try:
        return int(text, 0)
    except ValueError:
        raise AsmError(f'Invalid immediate value: {text}')


def parse_mem(text):
    m = mem_operand_re.match(text)
    if not m:
        raise AsmError(f'Invalid memory operand: {text}')
    offset, reg = m.groups()
    return Mem(int(offset, 0), parse_reg(reg))


def parse_label(text):
    if not label_re.match(text):
        raise AsmError(f'Invalid label: {text}')
    return text


# The different kinds of operands an instruction can take. Each one
# knows how to read itself from assembly text and how to write itself
# back.

# A register name, e.g. t0 or sp.
REG = Operand('reg', parse_reg, str)

# A signed immediate value, written in hex.
IMM = Operand('imm', parse_imm, format_imm)

# A memory location relative to a register, e.g. 0(sp).
MEM = Operand('mem', parse_mem, str)

# A branch target.
LABEL = Operand('label', parse_label, str)


class Instruction:
    """An instance of this class represents an instruction in the
abstract, e.g. the 'addi' instruction in general and not a particular
usage of it.

    """
    def __init__(self, name, operands):
        assert isinstance(name, str)
        assert all(isinstance(i, Operand) for i in operands)

        self.name = name
        self.operands = operands


    @property
    def is_branch(self):
        return bool(self.operands) and self.operands[-1] is LABEL


    @staticmethod
    def from_name(name):
        try:
            return instr_name_to_instr[name]
        except KeyError:
            raise AsmError(f'Unknown instruction: {name}')


class Instr:
    """An instance of this class, is a representation of an instruction in
use, i.e. the instruction itself, plus the values of its arguments.

    """

    def __init__(self, name, *args):
        self.name = name
        self.operands = args
        self.abstract_instruction = Instruction.from_name(name)
        assert len(args) == len(self.abstract_instruction.operands)


    def __eq__(self, other):
        return isinstance(other, Instr) and \
            (self.name, self.operands) == (other.name, other.operands)


    def __repr__(self):
        return f'<Instr {self.name} {self.operands}>'


    def __str__(self):
        args = ', '.join(
            o.format(v)
            for o, v in zip(self.abstract_instruction.operands, self.operands))
        return f'{self.name} {args}'


class Label:
    def __init__(self, value):
        assert isinstance(value, str)
        self.value = value


    def __eq__(self, other):
        return isinstance(other, Label) and self.value == other.value


    def __repr__(self):
        return f'<Label "{self.value}">'


    def __str__(self):
        return '{}:'.format(self.value)


def parse_line(line, lineno=None):
    """Parses one line of assembly text. Returns an Instr, a Label or
None for a blank line.

    """
    line = line.split('#', 1)[0].strip()
    if not line:
        return None

    try:
        if line.endswith(':'):
            return Label(parse_label(line[:-1]))

        name, _, rest = line.partition(' ')
        instruction = Instruction.from_name(name)
        args = [a.strip() for a in rest.split(',')] if rest.strip() else []
        if len(args) != len(instruction.operands):
            raise AsmError(
                f'{name} expects {len(instruction.operands)} operand(s), '
                f'got {len(args)}')

        operands = [o.parse(a) for o, a in zip(instruction.operands, args)]
        return Instr(name, *operands)
    except AsmError as e:
        if e.lineno is None:
            raise AsmError(str(e), lineno)
        raise


def parse_listing(text):
    result = []
    for lineno, line in enumerate(text.splitlines(), 1):
        item = parse_line(line, lineno)
        if item is not None:
            result.append(item)
    return result


def format_listing(items):
    """Formats parsed assembly as a listing, with the address of each
instruction in front of it. Labels get their own lines.

    """
    lines = []
    addr = TEXT_ADDR
    for item in items:
        if isinstance(item, Label):
            lines.append(f'{"":8}  {item}')
        else:
            lines.append(f'{addr:08x}    {item}')
            addr += INSTR_SIZE
    return '\n'.join(lines)


def main():
    parser = argparse.ArgumentParser(
        description='Validates an assembly file generated by forthc and '
        'prints it as a numbered listing.')

    parser.add_argument(
        'asm_file',
        help='The assembly file to list.')

    args = parser.parse_args()

    with open(args.asm_file) as f:
        text = f.read()

    try:
        items = parse_listing(text)
    except AsmError as e:
        print('ASSEMBLY ERROR:', e)
        exit(1)

    print(format_listing(items))


def def_instr(name, *operands):
    if name in instr_name_to_instr:
        raise RuntimeError('Duplicate instruction definition.')
    instr = Instruction(name, operands)
    instr_name_to_instr[name] = instr


def_instr('li', REG, IMM)
def_instr('addi', REG, REG, IMM)
def_instr('add', REG, REG, REG)
def_instr('sub', REG, REG, REG)
def_instr('mul', REG, REG, REG)
def_instr('div', REG, REG, REG)
def_instr('slt', REG, REG, REG)
def_instr('neg', REG, REG)
def_instr('lw', REG, MEM)
def_instr('sw', REG, MEM)
def_instr('beq', REG, REG, LABEL)
def_instr('bne', REG, REG, LABEL)
def_instr('beqz', REG, LABEL)
def_instr('bnez', REG, LABEL)
def_instr('j', LABEL)

if __name__ == '__main__':
    main()
