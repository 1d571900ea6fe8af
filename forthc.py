#!/usr/bin/env python3

import argparse
import codecs
import logging.config
from compiler import Compiler, CompileError


def configure_logging(log_file=None, verbose=False):
    handlers = {
        'console': {
            'level': 'DEBUG' if verbose else 'WARNING',
            'formatter': 'standard',
            'class': 'logging.StreamHandler',
            'stream': 'ext://sys.stderr',
        },
    }

    # the log file receives everything, including the parse trace.
    if log_file:
        handlers['file'] = {
            'level': 'DEBUG',
            'formatter': 'standard',
            'class': 'logging.FileHandler',
            'filename': log_file,
            'mode': 'w',
        }

    logging.config.dictConfig({
        'version': 1,
        'formatters': {
            'standard': {
                'format': '%(asctime)s %(name)s [%(levelname)s]: %(message)s',
            },
        },
        'handlers': handlers,
        'loggers': {
            'compiler': {
                'handlers': list(handlers),
                'level': 'DEBUG',
                'propagate': False,
            },
        },
    })


def main():
    parser = argparse.ArgumentParser(
        description='forthc: compiles a small Forth dialect to RISC-V '
        'assembly.')

    parser.add_argument('input_file', help='Input source code.')
    parser.add_argument(
        '--encoding', '-e', default='utf-8',
        help='The encoding of the input file. Defaults to utf-8.')
    parser.add_argument(
        '--output', '-o', default='main.asm', metavar='OUTPUT_FILE',
        help='The output file. Defaults to "main.asm".')
    parser.add_argument(
        '--dump-asm', '-d', action='store_true', default=False,
        help='Dump assembly output to stdout.')
    parser.add_argument(
        '--print-ast', '-p', action='store_true', default=False,
        help='Just parses the input and displays the AST.')
    parser.add_argument(
        '--log-file', metavar='LOG_FILE',
        help='Write the parse trace and debug log to the given file.')
    parser.add_argument(
        '--verbose', '-v', action='store_true', default=False,
        help='Print debug output to stderr.')

    args = parser.parse_args()

    configure_logging(args.log_file, args.verbose)

    with codecs.open(args.input_file, encoding=args.encoding) as f:
        source = f.read()

    c = Compiler()
    if args.print_ast:
        try:
            program = c.parse(source)
        except CompileError as e:
            print('COMPILE ERROR:', e)
            exit(1)
        for node in program.expressions:
            print(node)
        exit(0)

    try:
        output = c.compile(source)
    except CompileError as e:
        print('COMPILE ERROR:', e)
        exit(1)

    if args.dump_asm:
        print(output, end='')

    with open(args.output, 'w') as f:
        f.write(output)


if __name__ == '__main__':
    main()
