import io
import logging
from contextlib import contextmanager
from enum import IntEnum, unique
from lark import Lark, Transformer, v_args
from lark.exceptions import (UnexpectedCharacters, UnexpectedEOF,
                             UnexpectedToken, VisitError)
import nodes
from asm import Instr, Label, Mem, STACK_BASE, HEAP_BASE


logger = logging.getLogger(__name__)

WORD_SIZE = 4

INT_MIN = -2**31
INT_MAX = 2**31 - 1

# Definitions may only appear at the top level, while control flow,
# variables and memory access may only appear inside definitions. The
# two expression rules below must never be mixed.
grammar = r"""
program: expr+

?expr: integer
     | symbol
     | binary_op
     | unary_op
     | word_definition

?def_expr: integer
         | symbol
         | binary_op
         | unary_op
         | conditional
         | counted_loop
         | indefinite_loop
         | variable_declaration
         | address_receive
         | address_assign
         | block_copy

word_definition: ":" SYMBOL def_expr+ ";"

conditional: "if" def_expr+ else_clause? "then"
else_clause: "else" def_expr+

counted_loop: "do" def_expr+ "loop"
indefinite_loop: "begin" def_expr+ "until"

variable_declaration: "variable" SYMBOL
address_receive: SYMBOL "@"
address_assign: SYMBOL "!"
block_copy: "cmove"

integer: INTEGER
symbol: SYMBOL

!binary_op: "+" | "-" | "*" | "/"
          | "<" | ">" | LE | GE | "=" | NE
          | "and" | "or"

!unary_op: "invert"

SYMBOL: /[a-zA-Z_][a-zA-Z_0-9]*(?:<=|>=|<>|[?<>=])?/
INTEGER: /[+-]?[0-9]+/

// named so that syntax errors can list them as expected tokens
LE: "<="
GE: ">="
NE: "<>"

LINE_COMMENT: /\\[^\n]*/
PAREN_COMMENT: /\([^)]*\)/
WS: /[ \t\r\n]+/

%ignore WS
%ignore LINE_COMMENT
%ignore PAREN_COMMENT
"""

# Register pairs used by nested counted loops, outermost first: the
# name the index is visible as, the index register and the limit
# register.
loop_registers = [
    ('i', 't6', 't5'),
    ('j', 't4', 't3'),
]


@unique
class ErrorCodes(IntEnum):
    UNRECOGNIZED_INPUT = 1
    INT_OUT_OF_RANGE = 2
    SYNTAX_ERROR = 3
    UNEXPECTED_END = 4
    UNDEFINED_SYMBOL = 5
    UNDEFINED_VARIABLE = 6
    UNKNOWN_OPERATOR = 7
    UNKNOWN_NODE = 8
    LOOP_NESTING_TOO_DEEP = 9
    LOOP_REGISTER_CONFLICT = 10


    def __str__(self):
        return {
            self.UNRECOGNIZED_INPUT:
            'Unrecognized input',

            self.INT_OUT_OF_RANGE:
            'Integer literal out of range',

            self.SYNTAX_ERROR:
            'Syntax error',

            self.UNEXPECTED_END:
            'Unexpected end of input',

            self.UNDEFINED_SYMBOL:
            'Undefined symbol',

            self.UNDEFINED_VARIABLE:
            'Undefined variable',

            self.UNKNOWN_OPERATOR:
            'Unknown operator',

            self.UNKNOWN_NODE:
            'Unexpected node',

            self.LOOP_NESTING_TOO_DEEP:
            'Counted loops nested too deep',

            self.LOOP_REGISTER_CONFLICT:
            'Word using counted loops inlined inside a counted loop',
        }.get(int(self), super().__str__())


# alias for easier typing
EC = ErrorCodes


class CompileError(Exception):
    def __init__(self, code, msg=None):
        assert isinstance(code, ErrorCodes)

        if not msg:
            msg = str(code)

        self.code = code

        super().__init__(msg)


    @property
    def details(self):
        "The context of the error, in the form it is reported in."
        return ()


class LexicalError(CompileError):
    def __init__(self, code, msg=None, *, line=None, column=None):
        self.line = line
        self.column = column
        msg = f'{msg or str(code)} at line {line}, column {column}'
        super().__init__(code, msg)


    @property
    def details(self):
        return (self.line, self.column)


class ParseError(CompileError):
    def __init__(self, code, msg=None, *, line=None, column=None,
                 token=None, expected=()):
        self.line = line
        self.column = column
        self.token = token
        self.expected = sorted(expected)

        msg = f'{msg or str(code)} at line {line}, column {column}'
        if self.expected:
            msg += ' (expected one of: {})'.format(', '.join(self.expected))
        super().__init__(code, msg)


    @property
    def details(self):
        return (self.line, self.column)


class SemanticError(CompileError):
    def __init__(self, code, name, msg=None):
        self.name = name
        super().__init__(code, f'{msg or str(code)}: {name}')


    @property
    def details(self):
        return (self.name,)


def push(reg):
    return [Instr('sw', reg, Mem(0, 'sp')),
            Instr('addi', 'sp', 'sp', WORD_SIZE)]


def pop(reg):
    return [Instr('addi', 'sp', 'sp', -WORD_SIZE),
            Instr('lw', reg, Mem(0, 'sp'))]


def end_position(code):
    "Line and column of the last non-blank character of `code`."
    code = code.rstrip()
    if not code:
        return 1, 1
    lines = code.split('\n')
    return len(lines), len(lines[-1])


class AstBuilder(Transformer):
    def program(self, children):
        return nodes.Program(children)


    def integer(self, children):
        token, = children
        value = int(token)
        if not INT_MIN <= value <= INT_MAX:
            raise LexicalError(EC.INT_OUT_OF_RANGE,
                               f'Integer literal out of range: {token}',
                               line=token.line, column=token.column)
        return nodes.IntegerLiteral(value,
                                    line=token.line, column=token.column)


    def symbol(self, children):
        token, = children
        return nodes.SymbolReference(str(token),
                                     line=token.line, column=token.column)


    def binary_op(self, children):
        token, = children
        return nodes.BinaryOp(str(token),
                              line=token.line, column=token.column)


    def unary_op(self, children):
        token, = children
        return nodes.UnaryOp(str(token),
                             line=token.line, column=token.column)


    @v_args(meta=True)
    def word_definition(self, meta, children):
        name, *body = children
        return nodes.WordDefinition(str(name), body, **self.position(meta))


    def else_clause(self, children):
        return children


    @v_args(meta=True)
    def conditional(self, meta, children):
        else_body = []
        if children and isinstance(children[-1], list):
            else_body = children.pop()
        return nodes.Conditional(children, else_body, **self.position(meta))


    @v_args(meta=True)
    def counted_loop(self, meta, children):
        return nodes.CountedLoop(children, **self.position(meta))


    @v_args(meta=True)
    def indefinite_loop(self, meta, children):
        return nodes.IndefiniteLoop(children, **self.position(meta))


    @v_args(meta=True)
    def variable_declaration(self, meta, children):
        name, = children
        return nodes.VariableDeclaration(str(name), **self.position(meta))


    def address_receive(self, children):
        name, = children
        return nodes.AddressReceive(str(name),
                                    line=name.line, column=name.column)


    def address_assign(self, children):
        name, = children
        return nodes.AddressAssign(str(name),
                                   line=name.line, column=name.column)


    @v_args(meta=True)
    def block_copy(self, meta, children):
        return nodes.BlockCopy(**self.position(meta))


    @staticmethod
    def position(meta):
        return {
            'line': getattr(meta, 'line', None),
            'column': getattr(meta, 'column', None),
        }


class Binding:
    """What a name in the environment stands for. `instrs` is the code
emitted wherever the name is referenced (see Compiler.relabel).
`loop_depth` is the number of nested counted loops the code uses, i.e.
how many loop register pairs it clobbers.

    """
    def __init__(self, kind, instrs, *, loop_depth=0):
        assert kind in ('word', 'variable', 'loop_index')
        self.kind = kind
        self.instrs = list(instrs)
        self.loop_depth = loop_depth


    def __repr__(self):
        return f'<Binding {self.kind} ({len(self.instrs)} instrs)>'


class Environment:
    def __init__(self, bindings=None):
        self.bindings = dict(bindings or {})

        # Stack of (name, binding) overrides. These shadow the normal
        # bindings for as long as they are on the stack.
        self.frames = []


    def bind(self, name, binding):
        self.bindings[name] = binding


    def lookup(self, name):
        for frame_name, binding in reversed(self.frames):
            if frame_name == name:
                return binding
        return self.bindings.get(name)


    @contextmanager
    def scoped(self, name, binding):
        self.frames.append((name, binding))
        try:
            yield binding
        finally:
            self.frames.pop()


def builtin_words():
    return {
        'dup': Binding('word', pop('t0') + push('t0') + push('t0')),
        'drop': Binding('word', [Instr('addi', 'sp', 'sp', -WORD_SIZE)]),
        'swap': Binding('word',
                        pop('t0') + pop('t1') + push('t0') + push('t1')),
        'over': Binding('word',
                        pop('t1') + pop('t0') +
                        push('t0') + push('t1') + push('t0')),
        'rot': Binding('word',
                       pop('t2') + pop('t1') + pop('t0') +
                       push('t1') + push('t2') + push('t0')),
    }


class Compiler:
    def __init__(self, *, stack_base=STACK_BASE, heap_base=HEAP_BASE):
        self.parser = Lark(grammar,
                           parser='lalr',
                           lexer='basic',
                           propagate_positions=True,
                           start='program')

        self.stack_base = stack_base
        self.heap_base = heap_base
        self.reset()


    def reset(self):
        self.instrs = []
        self.env = Environment(builtin_words())
        self.heap_offset = 0
        self.gen_labels = {}

        # number of counted loops currently being generated, and the
        # deepest loop nesting seen in the current definition.
        self.loop_depth = 0
        self.loop_usage = 0


    def compile(self, code):
        out = io.StringIO()
        self.generate(self.parse(code), out)
        return out.getvalue()


    def parse(self, code):
        logger.info('Parsing source...')
        try:
            tree = self.parser.parse(code)
        except UnexpectedCharacters as e:
            raise LexicalError(EC.UNRECOGNIZED_INPUT,
                               f'Unrecognized input {e.char!r}',
                               line=e.line, column=e.column)
        except UnexpectedToken as e:
            if e.token.type == '$END':
                raise ParseError(EC.UNEXPECTED_END,
                                 line=e.line, column=e.column,
                                 token=e.token, expected=e.expected)
            raise ParseError(EC.SYNTAX_ERROR,
                             f'Unexpected token {str(e.token)!r}',
                             line=e.line, column=e.column,
                             token=e.token, expected=e.expected)
        except UnexpectedEOF as e:
            line, column = end_position(code)
            raise ParseError(EC.UNEXPECTED_END,
                             line=line, column=column, expected=e.expected)

        logger.debug('Parse tree:\n%s', tree.pretty())

        try:
            return AstBuilder().transform(tree)
        except VisitError as e:
            raise e.orig_exc


    def generate(self, program, out):
        """Generates code for the given program, writing the preamble
and then the code of each top-level expression to `out` as soon as
it is generated. Raises CompileError on the first error; whatever was
already written to `out` is then not a valid program.

        """
        if not isinstance(program, nodes.Program):
            raise SemanticError(EC.UNKNOWN_NODE, type(program).__name__)

        self.reset()
        logger.info('Generating code...')

        self.instrs = self.gen_preamble()
        self.write_instrs(out)
        for node in program.expressions:
            self.instrs = []
            self.compile_node(node)
            self.write_instrs(out)


    def write_instrs(self, out):
        for i in self.instrs:
            out.write(f'{i}\n')


    def gen_preamble(self):
        return [Instr('j', '.init'),
                Label('.init'),
                Instr('li', 'sp', self.stack_base),
                Instr('li', 'gp', self.heap_base),
                Instr('j', '.main'),
                Label('.main')]


    def compile_node(self, node):
        func = None
        if isinstance(node, nodes.Node) and node.kind:
            func = getattr(self, 'process_' + node.kind, None)
        if func is None:
            raise SemanticError(EC.UNKNOWN_NODE, type(node).__name__)
        func(node)


    def compile_body(self, body):
        """Generates the given expressions into a separate buffer and
returns the generated instructions.

        """
        saved_instrs = self.instrs
        self.instrs = []
        try:
            for node in body:
                self.compile_node(node)
            return self.instrs
        finally:
            self.instrs = saved_instrs


    def process_integer_literal(self, node):
        self.instrs += [Instr('li', 't0', node.value)]
        self.instrs += push('t0')


    def process_binary_op(self, node):
        # the right operand was pushed last, so it is popped first.
        self.instrs += pop('t2')
        self.instrs += pop('t1')

        op = node.op
        if op in ('+', '-', '*', '/'):
            name = {'+': 'add', '-': 'sub', '*': 'mul', '/': 'div'}[op]
            self.instrs += [Instr(name, 't0', 't1', 't2')]
        elif op == '<':
            self.instrs += [Instr('slt', 't0', 't1', 't2'),
                            Instr('neg', 't0', 't0')]
        elif op == '>':
            self.instrs += [Instr('slt', 't0', 't2', 't1'),
                            Instr('neg', 't0', 't0')]
        elif op in ('<=', '>=', '=', '<>', 'and', 'or'):
            self.instrs += self.gen_compare(op)
        else:
            raise SemanticError(EC.UNKNOWN_OPERATOR, op)

        self.instrs += push('t0')


    def gen_compare(self, op):
        """Generates code for the binary operators that need a branch.
Operands are expected in t1 and t2; the result is left in t0 as 0 or
-1.

        """
        label = self.gen_label('cmp')
        if op == '<=':
            instrs = [Instr('li', 't0', 1),
                      Instr('beq', 't1', 't2', label),
                      Instr('slt', 't0', 't1', 't2')]
        elif op == '>=':
            instrs = [Instr('li', 't0', 1),
                      Instr('beq', 't1', 't2', label),
                      Instr('slt', 't0', 't2', 't1')]
        elif op == '=':
            instrs = [Instr('li', 't0', 1),
                      Instr('beq', 't1', 't2', label),
                      Instr('li', 't0', 0)]
        elif op == '<>':
            instrs = [Instr('li', 't0', 1),
                      Instr('bne', 't1', 't2', label),
                      Instr('li', 't0', 0)]
        elif op == 'and':
            instrs = [Instr('li', 't0', 0),
                      Instr('beqz', 't1', label),
                      Instr('beqz', 't2', label),
                      Instr('li', 't0', 1)]
        elif op == 'or':
            instrs = [Instr('li', 't0', 1),
                      Instr('bnez', 't1', label),
                      Instr('bnez', 't2', label),
                      Instr('li', 't0', 0)]
        else:
            raise SemanticError(EC.UNKNOWN_OPERATOR, op)

        return instrs + [Label(label), Instr('neg', 't0', 't0')]


    def process_unary_op(self, node):
        self.instrs += pop('t1')
        if node.op == 'invert':
            label = self.gen_label('cmp')
            self.instrs += [Instr('li', 't0', 1),
                            Instr('beqz', 't1', label),
                            Instr('li', 't0', 0),
                            Label(label),
                            Instr('neg', 't0', 't0')]
        else:
            raise SemanticError(EC.UNKNOWN_OPERATOR, node.op)
        self.instrs += push('t0')


    def process_symbol_reference(self, node):
        binding = self.env.lookup(node.name)
        if binding is None:
            raise SemanticError(EC.UNDEFINED_SYMBOL, node.name)

        # the word's loops were allocated the outermost loop registers
        # when it was defined, so they would clobber any loop that is
        # active here.
        if binding.loop_depth and self.loop_depth:
            raise SemanticError(EC.LOOP_REGISTER_CONFLICT, node.name)
        self.loop_usage = max(self.loop_usage, binding.loop_depth)

        self.instrs += self.relabel(binding.instrs)


    def relabel(self, instrs):
        """Returns a copy of `instrs` in which every label defined inside
it is given a new name, so that a word can be inlined any number of
times without duplicating labels.

        """
        labels = {i.value for i in instrs if isinstance(i, Label)}
        if not labels:
            return list(instrs)

        n = self.next_id('inline')
        mapping = {label: f'{label}_{n}' for label in labels}
        result = []
        for i in instrs:
            if isinstance(i, Label):
                result.append(Label(mapping[i.value]))
            elif i.abstract_instruction.is_branch and i.operands[-1] in mapping:
                *operands, target = i.operands
                result.append(Instr(i.name, *operands, mapping[target]))
            else:
                result.append(i)
        return result


    def process_word_definition(self, node):
        self.loop_usage = 0
        body = self.compile_body(node.body)
        self.env.bind(node.name,
                      Binding('word', body, loop_depth=self.loop_usage))
        self.loop_usage = 0
        logger.debug(f'Defined word {node.name} ({len(body)} instructions)')


    def process_variable_declaration(self, node):
        offset = self.heap_offset
        accessor = [Instr('addi', 't0', 'gp', offset)] + push('t0')
        self.env.bind(node.name, Binding('variable', accessor))
        self.heap_offset += WORD_SIZE
        logger.debug(f'Declared variable {node.name} at offset {offset}')


    def lookup_variable(self, name):
        binding = self.env.lookup(name)
        if binding is None or binding.kind != 'variable':
            raise SemanticError(EC.UNDEFINED_VARIABLE, name)
        return binding


    def process_address_receive(self, node):
        binding = self.lookup_variable(node.name)
        self.instrs += binding.instrs
        self.instrs += pop('t0')
        self.instrs += [Instr('lw', 't1', Mem(0, 't0'))]
        self.instrs += push('t1')


    def process_address_assign(self, node):
        binding = self.lookup_variable(node.name)
        self.instrs += binding.instrs
        self.instrs += pop('t0')
        self.instrs += pop('t1')
        self.instrs += [Instr('sw', 't1', Mem(0, 't0'))]


    def process_block_copy(self, node):
        # stack, top to bottom: count, destination, source
        self.instrs += pop('t2')
        self.instrs += pop('t1')
        self.instrs += pop('t0')

        top_label = self.gen_label('cmove')
        end_label = top_label + '_end'
        self.instrs += [Label(top_label),
                        Instr('beqz', 't2', end_label),
                        Instr('lw', 'a0', Mem(0, 't0')),
                        Instr('sw', 'a0', Mem(0, 't1')),
                        Instr('addi', 't2', 't2', -1),
                        Instr('addi', 't0', 't0', WORD_SIZE),
                        Instr('addi', 't1', 't1', WORD_SIZE),
                        Instr('j', top_label),
                        Label(end_label)]


    def process_conditional(self, node):
        then_body = self.compile_body(node.then_body)
        else_body = self.compile_body(node.else_body)

        label = self.gen_label('if')
        else_label = label + '_else'
        end_label = label + '_end'

        self.instrs += pop('t0')
        self.instrs += [Instr('beq', 't0', 'zero', else_label)]
        self.instrs += then_body
        self.instrs += [Instr('j', end_label),
                        Label(else_label)]
        self.instrs += else_body
        self.instrs += [Label(end_label)]


    def process_counted_loop(self, node):
        if self.loop_depth >= len(loop_registers):
            raise SemanticError(EC.LOOP_NESTING_TOO_DEEP, 'do',
                                f'At most {len(loop_registers)} counted '
                                f'loops can be nested')

        name, index, limit = loop_registers[self.loop_depth]
        self.loop_depth += 1
        self.loop_usage = max(self.loop_usage, self.loop_depth)
        try:
            with self.env.scoped(name, Binding('loop_index', push(index))):
                body = self.compile_body(node.body)
        finally:
            self.loop_depth -= 1

        label = self.gen_label('do')

        # the index is on top of the stack with the limit below it.
        self.instrs += pop(index)
        self.instrs += pop(limit)
        self.instrs += [Label(label)]
        self.instrs += body
        self.instrs += [Instr('addi', index, index, 1),
                        Instr('bne', limit, index, label)]


    def process_indefinite_loop(self, node):
        body = self.compile_body(node.body)

        label = self.gen_label('begin')
        self.instrs += [Label(label)]
        self.instrs += body
        self.instrs += pop('t0')
        self.instrs += [Instr('beqz', 't0', label)]


    def next_id(self, prefix):
        if prefix not in self.gen_labels:
            self.gen_labels[prefix] = 1
        else:
            self.gen_labels[prefix] += 1
        return self.gen_labels[prefix]


    def gen_label(self, prefix):
        return '.{}_{}'.format(prefix, self.next_id(prefix))
