class Node:
    """Base class of all AST nodes.

Every node has a `kind` tag, which the code generator uses to pick the
method that handles it, and a list of `fields` which define structural
equality. The source position (`line` and `column`) is kept for error
reporting but does not take part in comparisons.

    """
    kind = None
    fields = ()

    def __init__(self, *, line=None, column=None):
        self.line = line
        self.column = column


    def __eq__(self, other):
        if type(self) != type(other):
            return False
        return all(getattr(self, f) == getattr(other, f) for f in self.fields)


    def __repr__(self):
        args = ', '.join(repr(getattr(self, f)) for f in self.fields)
        return f'{type(self).__name__}({args})'


class Program(Node):
    kind = 'program'
    fields = ('expressions',)

    def __init__(self, expressions, **kwargs):
        super().__init__(**kwargs)
        self.expressions = list(expressions)


class IntegerLiteral(Node):
    kind = 'integer_literal'
    fields = ('value',)

    def __init__(self, value, **kwargs):
        super().__init__(**kwargs)
        self.value = value


class SymbolReference(Node):
    kind = 'symbol_reference'
    fields = ('name',)

    def __init__(self, name, **kwargs):
        super().__init__(**kwargs)
        self.name = name


class BinaryOp(Node):
    kind = 'binary_op'
    fields = ('op',)

    def __init__(self, op, **kwargs):
        super().__init__(**kwargs)
        self.op = op


class UnaryOp(Node):
    kind = 'unary_op'
    fields = ('op',)

    def __init__(self, op, **kwargs):
        super().__init__(**kwargs)
        self.op = op


class WordDefinition(Node):
    kind = 'word_definition'
    fields = ('name', 'body')

    def __init__(self, name, body, **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.body = list(body)


class VariableDeclaration(Node):
    kind = 'variable_declaration'
    fields = ('name',)

    def __init__(self, name, **kwargs):
        super().__init__(**kwargs)
        self.name = name


class AddressAssign(Node):
    "NAME ! -- stores the value below the address into the variable."
    kind = 'address_assign'
    fields = ('name',)

    def __init__(self, name, **kwargs):
        super().__init__(**kwargs)
        self.name = name


class AddressReceive(Node):
    "NAME @ -- pushes the value stored in the variable."
    kind = 'address_receive'
    fields = ('name',)

    def __init__(self, name, **kwargs):
        super().__init__(**kwargs)
        self.name = name


class BlockCopy(Node):
    kind = 'block_copy'


class Conditional(Node):
    kind = 'conditional'
    fields = ('then_body', 'else_body')

    def __init__(self, then_body, else_body=(), **kwargs):
        super().__init__(**kwargs)
        self.then_body = list(then_body)
        self.else_body = list(else_body)


class CountedLoop(Node):
    kind = 'counted_loop'
    fields = ('body',)

    def __init__(self, body, **kwargs):
        super().__init__(**kwargs)
        self.body = list(body)


class IndefiniteLoop(Node):
    kind = 'indefinite_loop'
    fields = ('body',)

    def __init__(self, body, **kwargs):
        super().__init__(**kwargs)
        self.body = list(body)
