#!/usr/bin/env python3

import io
import logging
import traceback
import unittest
import sys
import argparse
from compiler import Compiler, CompileError, ParseError, EC
from nodes import (Program, IntegerLiteral, SymbolReference, BinaryOp,
                   UnaryOp, WordDefinition, VariableDeclaration,
                   AddressAssign, AddressReceive, BlockCopy, Conditional,
                   CountedLoop, IndefiniteLoop)
from asm import parse_listing
from vm import Machine, RE

logger = logging.getLogger(__name__)

# we are going to create this phony test case, so that we can use its
# assert* methods, which are much nicer than the vanilla assert
# statement.
tc = unittest.TestCase()

PREAMBLE = """\
j .init
.init:
li sp, 0x10010000
li gp, 0x10040000
j .main
.main:
"""

HEAP_BASE = 0x10040000


class Case:
    """Base class of all test cases. `code` is compiled (or `program`
generated, if given) and the resulting compile errors are compared
with `cevents`. If compilation succeeds, the output is compared with
`asm` (the part after the preamble) when given, and then run on the
machine; machine errors are compared with `vevents` and the final
operand stack with `stack`.

    """
    code = ''
    program = None
    parsed = None
    expected = None
    asm = None
    run = True
    step_limit = 100000

    cevents = []
    vevents = []
    stack = []

    def test_case(self):
        run_test_case(type(self).__name__, self)


class TestInteger1(Case):
    code = '5'
    stack = [5]


class TestInteger2(Case):
    code = '0 -1 123456 +42'
    stack = [0, -1, 123456, 42]


class TestInteger3(Case):
    code = '2147483647 -2147483648'
    stack = [2147483647, -2147483648]


class TestIntegerNegative(Case):
    code = '-7'
    asm = """\
li t0, -0x7
sw t0, 0(sp)
addi sp, sp, 0x4
"""
    stack = [-7]


class TestIntegerOutOfRange1(Case):
    code = '2147483648'
    cevents = [
        ('error', EC.INT_OUT_OF_RANGE, 1, 1),
    ]


class TestIntegerOutOfRange2(Case):
    code = '1 -2147483649'
    cevents = [
        ('error', EC.INT_OUT_OF_RANGE, 1, 3),
    ]


class TestArith1(Case):
    code = '5 10 +'
    asm = """\
li t0, 0x5
sw t0, 0(sp)
addi sp, sp, 0x4
li t0, 0xa
sw t0, 0(sp)
addi sp, sp, 0x4
addi sp, sp, -0x4
lw t2, 0(sp)
addi sp, sp, -0x4
lw t1, 0(sp)
add t0, t1, t2
sw t0, 0(sp)
addi sp, sp, 0x4
"""
    stack = [15]


class TestArith2(Case):
    code = '10 3 - 6 7 * 7 2 /'
    stack = [7, 42, 3]


class TestArith3(Case):
    code = '-7 2 / 7 -2 / 5 -3 -'
    stack = [-3, -3, 8]


class TestArithDivByZero(Case):
    code = '1 0 /'
    stack = [-1]


class TestArithOverflow(Case):
    code = '2147483647 1 + 65536 65536 * -2147483648 -1 /'
    stack = [-2147483648, 0, -2147483648]


class TestCompare1(Case):
    code = '1 2 < 2 1 < 2 1 > 1 2 >'
    stack = [-1, 0, -1, 0]


class TestCompare2(Case):
    code = '2 2 <= 1 2 <= 3 2 <='
    stack = [-1, -1, 0]


class TestCompare3(Case):
    code = '2 2 >= 1 2 >= 3 2 >='
    stack = [-1, 0, -1]


class TestCompare4(Case):
    code = '3 3 = 3 4 = 3 4 <> 4 4 <>'
    stack = [-1, 0, -1, 0]


class TestLogical1(Case):
    code = '5 7 and 5 0 and 0 0 and'
    stack = [-1, 0, 0]


class TestLogical2(Case):
    code = '0 0 or 0 -3 or 4 0 or'
    stack = [0, -1, -1]


class TestInvert(Case):
    code = '0 invert 5 invert -1 invert 1 2 < invert'
    stack = [-1, 0, 0, 0]


class TestBuiltinDup(Case):
    code = '1 dup'
    stack = [1, 1]


class TestBuiltinSwap(Case):
    code = '1 2 swap'
    stack = [2, 1]


class TestBuiltinDrop(Case):
    code = '1 2 drop'
    stack = [1]


class TestBuiltinOver(Case):
    code = '1 2 over'
    stack = [1, 2, 1]


class TestBuiltinRot(Case):
    code = '1 2 3 rot'
    stack = [2, 3, 1]


class TestBuiltinRedefine(Case):
    code = ': dup 7 ; 1 dup'
    stack = [1, 7]


class TestComments(Case):
    code = r"""
\ a line comment
1 ( a comment
spanning lines ) 2 +  \ trailing comment
"""
    stack = [3]


class TestKeywordPrefix(Case):
    code = ': iffy 4 ; : do_it 5 ; : thenx 6 ; iffy do_it thenx'
    stack = [4, 5, 6]


class TestSymbolSuffix1(Case):
    code = ': even? dup 2 / 2 * = ; 4 even? 5 even?'
    stack = [-1, 0]


class TestSymbolSuffix2(Case):
    code = ': x<> <> ; : ge>= >= ; 1 2 x<> 3 2 ge>='
    stack = [-1, -1]


class TestWordDefinition1(Case):
    code = """
: add3 + + ;
: add3_mul2 add3 2 * ;
1 2 3 add3_mul2
"""
    stack = [12]


class TestWordRedefinition1(Case):
    code = ': w 1 ; : w 2 ; w'
    stack = [2]


class TestWordRedefinition2(Case):
    code = ': w 1 ; : v w ; : w 2 ; v w'
    stack = [1, 2]


class TestWordEmitsNothing(Case):
    code = ': w 1 2 + ;'
    asm = ''
    stack = []


class TestUndefinedSymbol1(Case):
    code = '1 foo'
    cevents = [
        ('error', EC.UNDEFINED_SYMBOL, 'foo'),
    ]


class TestUndefinedSymbol2(Case):
    code = ': f 1 if bar then ;'
    cevents = [
        ('error', EC.UNDEFINED_SYMBOL, 'bar'),
    ]


class TestRecursiveDefinition(Case):
    code = ': f f ;'
    cevents = [
        ('error', EC.UNDEFINED_SYMBOL, 'f'),
    ]


class TestForwardReference(Case):
    code = ': a b ; : b 1 ; a'
    cevents = [
        ('error', EC.UNDEFINED_SYMBOL, 'b'),
    ]


class TestIf1(Case):
    code = ': abs dup 0 < if -1 * then ; -5 abs 6 abs'
    stack = [5, 6]


class TestIf2(Case):
    code = ': sign 0 < if 1 else 2 then ; -3 sign 3 sign'
    stack = [1, 2]


class TestIf3(Case):
    code = """
: cls dup 0 < if drop -1 else 0 > if 1 else 0 then then ;
-9 cls 0 cls 9 cls
"""
    stack = [-1, 0, 1]


class TestIf4(Case):
    code = ': f if 1 else 2 then ; 0 f'
    asm = """\
li t0, 0x0
sw t0, 0(sp)
addi sp, sp, 0x4
addi sp, sp, -0x4
lw t0, 0(sp)
beq t0, zero, .if_1_else_1
li t0, 0x1
sw t0, 0(sp)
addi sp, sp, 0x4
j .if_1_end_1
.if_1_else_1:
li t0, 0x2
sw t0, 0(sp)
addi sp, sp, 0x4
.if_1_end_1:
"""
    stack = [2]


class TestIfInlinedTwice(Case):
    code = ': f if 1 else 2 then ; : g f f ; 0 g 0 g'
    stack = [1, 1]


class TestDoLoop1(Case):
    code = ': sum 0 swap 0 do i + loop ; 5 sum'
    stack = [10]


class TestDoLoop2(Case):
    code = ': f 0 3 0 do 1 + loop ; f'
    stack = [3]


class TestDoLoop3(Case):
    code = ': f 3 0 do i drop loop ; f'
    asm = """\
li t0, 0x3
sw t0, 0(sp)
addi sp, sp, 0x4
li t0, 0x0
sw t0, 0(sp)
addi sp, sp, 0x4
addi sp, sp, -0x4
lw t6, 0(sp)
addi sp, sp, -0x4
lw t5, 0(sp)
.do_1_1:
sw t6, 0(sp)
addi sp, sp, 0x4
addi sp, sp, -0x4
addi t6, t6, 0x1
bne t5, t6, .do_1_1
"""
    stack = []


class TestDoLoopNested(Case):
    code = ': grid 0 3 0 do 2 0 do i 10 * j + + loop loop ; grid'
    stack = [63]


class TestDoLoopTooDeep(Case):
    code = ': deep 1 0 do 1 0 do 1 0 do 1 drop loop loop loop ;'
    cevents = [
        ('error', EC.LOOP_NESTING_TOO_DEEP, 'do'),
    ]


class TestDoLoopWordConflict(Case):
    code = ': inner 2 0 do 1 drop loop ; : outer 2 0 do inner loop ;'
    cevents = [
        ('error', EC.LOOP_REGISTER_CONFLICT, 'inner'),
    ]


class TestDoLoopWordInlined(Case):
    code = """
: tri 0 swap 0 do i + loop ;
: twice dup tri swap tri + ;
4 twice
"""
    stack = [12]


class TestLoopIndexShadowsWord(Case):
    code = ': i 100 ; : f 0 3 0 do i + loop i + ; f'
    stack = [103]


class TestLoopIndexOutsideLoop(Case):
    code = ': f i ;'
    cevents = [
        ('error', EC.UNDEFINED_SYMBOL, 'i'),
    ]


class TestLoopIndexAfterLoop(Case):
    code = ': f 1 0 do 1 drop loop i ;'
    cevents = [
        ('error', EC.UNDEFINED_SYMBOL, 'i'),
    ]


class TestBeginUntil1(Case):
    code = ': f begin 1 until ; f'
    stack = []


class TestBeginUntil2(Case):
    code = ': f variable n 0 n ! begin n @ 1 + n ! 1 until n @ ; f'
    stack = [1]


class TestBeginUntil3(Case):
    code = ': count 0 begin 1 + dup 5 = until ; count'
    stack = [5]


class TestBeginUntil4(Case):
    code = ': once begin 7 -1 until ; once'
    stack = [7]


class TestVariable1(Case):
    code = ': f variable x 42 x ! x @ x @ + ; f'
    stack = [84]


class TestVariable2(Case):
    code = ': f variable a variable b 1 a ! 2 b ! a @ b @ ; f'
    stack = [1, 2]


class TestVariable3(Case):
    code = ': f variable a variable b a b ; f'
    stack = [HEAP_BASE, HEAP_BASE + 4]


class TestVariable4(Case):
    code = ': f variable x x @ ; f'
    asm = """\
addi t0, gp, 0x0
sw t0, 0(sp)
addi sp, sp, 0x4
addi sp, sp, -0x4
lw t0, 0(sp)
lw t1, 0(t0)
sw t1, 0(sp)
addi sp, sp, 0x4
"""
    stack = [0]


class TestVariableGlobal(Case):
    code = """
: decl variable v ;
: setv 9 v ! ;
: getv v @ ;
setv getv
"""
    stack = [9]


class TestVariableSharedCell(Case):
    code = ': bump variable c c @ 1 + dup c ! ; bump drop bump'
    stack = [2]


class TestUndefinedVariable1(Case):
    code = ': f 1 y ! ;'
    cevents = [
        ('error', EC.UNDEFINED_VARIABLE, 'y'),
    ]


class TestUndefinedVariable2(Case):
    code = ': w 1 ; : f w @ ;'
    cevents = [
        ('error', EC.UNDEFINED_VARIABLE, 'w'),
    ]


CMOVE_SETUP = """
: setup
  variable a0 variable a1 variable a2
  variable b0 variable b1 variable b2
  1 a0 ! 2 a1 ! 3 a2 ! ;
: showa a0 @ a1 @ a2 @ ;
: showb b0 @ b1 @ b2 @ ;
"""


class TestCmove1(Case):
    code = CMOVE_SETUP + ': copy a0 b0 3 cmove ; setup copy showb'
    stack = [1, 2, 3]


class TestCmove2(Case):
    code = CMOVE_SETUP + ': copy a0 b0 2 cmove ; setup copy showb'
    stack = [1, 2, 0]


class TestCmove3(Case):
    code = CMOVE_SETUP + \
        ': copy 9 b0 ! a0 b0 0 cmove ; setup copy showb'
    stack = [9, 0, 0]


class TestCmoveOverlap(Case):
    code = CMOVE_SETUP + ': shift a0 a1 2 cmove ; setup shift showa'
    stack = [1, 1, 1]


class TestMachineFault(Case):
    code = ': f 0 0 1 cmove ; f'
    vevents = [
        ('error', RE.INVALID_ADDRESS),
    ]
    stack = []


class TestStepLimit(Case):
    code = ': f begin 0 until ; f'
    step_limit = 1000
    vevents = [
        ('error', RE.STEP_LIMIT_EXCEEDED),
    ]
    stack = []


class TestParse1(Case):
    code = '1 +2 -3 - <= >= <> = < > and or invert * /'
    parsed = [
        IntegerLiteral(1), IntegerLiteral(2), IntegerLiteral(-3),
        BinaryOp('-'), BinaryOp('<='), BinaryOp('>='), BinaryOp('<>'),
        BinaryOp('='), BinaryOp('<'), BinaryOp('>'), BinaryOp('and'),
        BinaryOp('or'), UnaryOp('invert'), BinaryOp('*'), BinaryOp('/'),
    ]
    run = False


class TestParse2(Case):
    code = """
: f 1 if 2 else 3 then 4 0 do i drop loop begin 0 until
    variable x x @ x ! cmove ;
"""
    parsed = [
        WordDefinition('f', [
            IntegerLiteral(1),
            Conditional([IntegerLiteral(2)], [IntegerLiteral(3)]),
            IntegerLiteral(4),
            IntegerLiteral(0),
            CountedLoop([SymbolReference('i'), SymbolReference('drop')]),
            IndefiniteLoop([IntegerLiteral(0)]),
            VariableDeclaration('x'),
            AddressReceive('x'),
            AddressAssign('x'),
            BlockCopy(),
        ]),
    ]


class TestParse3(Case):
    code = ': f if 1 then ; f'
    parsed = [
        WordDefinition('f', [Conditional([IntegerLiteral(1)])]),
        SymbolReference('f'),
    ]
    run = False


class TestSyntaxError1(Case):
    code = ': f 1 if 2 ;'
    cevents = [
        ('error', EC.SYNTAX_ERROR, 1, 12),
    ]


class TestSyntaxError2(Case):
    code = '1 if 2 then'
    cevents = [
        ('error', EC.SYNTAX_ERROR, 1, 3),
    ]


class TestSyntaxError3(Case):
    code = ': f : g 1 ; ;'
    cevents = [
        ('error', EC.SYNTAX_ERROR, 1, 5),
    ]


class TestSyntaxError4(Case):
    code = ': f ;'
    cevents = [
        ('error', EC.SYNTAX_ERROR, 1, 5),
    ]


class TestSyntaxError5(Case):
    code = ': f do loop ;'
    cevents = [
        ('error', EC.SYNTAX_ERROR, 1, 8),
    ]


class TestSyntaxError6(Case):
    code = 'variable x'
    cevents = [
        ('error', EC.SYNTAX_ERROR, 1, 1),
    ]


class TestSyntaxError7(Case):
    code = '1\n2\n: f if ;'
    cevents = [
        ('error', EC.SYNTAX_ERROR, 3, 8),
    ]


class TestUnexpectedEnd1(Case):
    code = ': f 1 if 2'
    cevents = [
        ('error', EC.UNEXPECTED_END, 1, 10),
    ]


class TestUnexpectedEndExpected(Case):
    code = ': f 1 if 2'
    expected = {'THEN', 'ELSE', 'LE', 'GE', 'NE'}
    cevents = [
        ('error', EC.UNEXPECTED_END, 1, 10),
    ]


class TestSyntaxErrorExpected(Case):
    code = ': f ;'
    expected = {'SYMBOL', 'INTEGER', 'LE', 'GE', 'NE'}
    cevents = [
        ('error', EC.SYNTAX_ERROR, 1, 5),
    ]


class TestUnexpectedEnd2(Case):
    code = ': f 1'
    cevents = [
        ('error', EC.UNEXPECTED_END, 1, 5),
    ]


class TestUnexpectedEnd3(Case):
    code = ''
    cevents = [
        ('error', EC.UNEXPECTED_END, 1, 1),
    ]


class TestLexicalError1(Case):
    code = '1 2 $'
    cevents = [
        ('error', EC.UNRECOGNIZED_INPUT, 1, 5),
    ]


class TestLexicalError2(Case):
    code = '1\n2 #'
    cevents = [
        ('error', EC.UNRECOGNIZED_INPUT, 2, 3),
    ]


class TestLexicalError3(Case):
    code = '( unterminated comment'
    cevents = [
        ('error', EC.UNRECOGNIZED_INPUT, 1, 1),
    ]


class TestGenerateAst(Case):
    program = Program([
        WordDefinition('w', [IntegerLiteral(3)]),
        SymbolReference('w'),
        SymbolReference('w'),
    ])
    stack = [3, 3]


class TestUnknownOperator1(Case):
    program = Program([IntegerLiteral(1), IntegerLiteral(2), BinaryOp('%')])
    cevents = [
        ('error', EC.UNKNOWN_OPERATOR, '%'),
    ]


class TestUnknownOperator2(Case):
    program = Program([IntegerLiteral(1), UnaryOp('negate')])
    cevents = [
        ('error', EC.UNKNOWN_OPERATOR, 'negate'),
    ]


class TestUnknownNode1(Case):
    program = Program([IntegerLiteral(1), 'dup'])
    cevents = [
        ('error', EC.UNKNOWN_NODE, 'str'),
    ]


class TestUnknownNode2(Case):
    program = Program([Program([])])
    cevents = [
        ('error', EC.UNKNOWN_NODE, 'Program'),
    ]


class TestUnknownNode3(Case):
    program = IntegerLiteral(1)
    cevents = [
        ('error', EC.UNKNOWN_NODE, 'IntegerLiteral'),
    ]


def run_test_case(name, case):
    events = []
    def event_handler(event):
        events.append(event)

    logger.info(f'Running test case: {name}')

    c = Compiler()
    try:
        if case.program is not None:
            out = io.StringIO()
            c.generate(case.program, out)
            output = out.getvalue()
        else:
            if case.parsed is not None:
                tc.assertEqual(c.parse(case.code).expressions, case.parsed)
            output = c.compile(case.code)
    except CompileError as e:
        event_handler(('error', e.code, *e.details))
        if isinstance(e, ParseError):
            for name in e.expected:
                tc.assertFalse(name.startswith('__'), name)
        if case.expected is not None:
            tc.assertTrue(case.expected <= set(e.expected), e.expected)
        output = None
    tc.assertEqual(events, case.cevents)

    if output is None:
        return

    tc.assertTrue(output.startswith(PREAMBLE))
    if case.asm is not None:
        tc.assertEqual(output[len(PREAMBLE):], case.asm)

    # the output must read back as the same assembly
    tc.assertEqual(''.join(f'{i}\n' for i in parse_listing(output)), output)

    labels = [line for line in output.splitlines() if line.endswith(':')]
    tc.assertEqual(len(labels), len(set(labels)))

    if case.run:
        events = []
        machine = Machine.load(output, step_limit=case.step_limit)
        machine.event_handler = event_handler
        machine.launch()
        stack = machine.get_stack()
        machine.shutdown()

        tc.assertEqual(events, case.vevents)
        tc.assertEqual(stack, case.stack)


def get_all_tests():
    return {
        name: value
        for name, value in globals().items()
        if name.startswith('Test') and isinstance(value, type) and
        issubclass(value, Case)
    }


def main():
    parser = argparse.ArgumentParser(
        description='Run forthc tests.')

    parser.add_argument(
        'test_case', nargs='*',
        help='The test case(s) to run. Any number of test cases can be '
        'passed. Defaults to running all tests.')

    args = parser.parse_args()

    test_cases = get_all_tests()
    if args.test_case != []:
        test_cases = {
            name: value
            for name, value in test_cases.items()
            if name in args.test_case
        }

        if len(test_cases) != len(args.test_case):
            not_found = set(args.test_case) - set(get_all_tests())
            print('The following test case(s) not found:')
            for i in not_found:
                print(f'    {i}')
            exit(1)

    failed = []
    success = []

    print(f'Running {len(test_cases)} test case(s)...')
    for name, value in test_cases.items():
        try:
            run_test_case(name, value)
        except Exception as e:
            failed.append((name, e))
            if isinstance(e, AssertionError):
                print('F', end='')
            else:
                print('E', end='')
        else:
            success.append(name)
            print('.', end='')
        sys.stdout.flush()

    print()

    if len(failed) == 0:
        print(f'All {len(success)} test case(s) ran successfully.')
    else:
        print('Failures:\n')
        for name, exc in failed:
            print(f'Failed test case: {name}')
            print('Exception:')
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        print('---\n')
        total = len(failed) + len(success)
        print(f'{len(failed)} out of {total} test case(s) failed.')
        exit(1)


if __name__ == '__main__':
    main()
