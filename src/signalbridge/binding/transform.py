"""
Transform Expressions

Bindings may carry a small expression that maps the raw signal value to the
bound property, e.g.::

    value ? 'running' : 'stopped'
    value * 100 / 25
    value > 80 ? 'high' : value < 20 ? 'low' : 'normal'
    round(value, 1) + ' ft'
    value.toFixed(2)

The language is closed and interpreted here; nothing is ever handed to
``eval``. Grammar (lowest precedence first)::

    expr        := or ('?' expr ':' expr)?
    or          := and ('||' and)*
    and         := equality ('&&' equality)*
    equality    := comparison (('==' | '!=' | '===' | '!==') comparison)*
    comparison  := additive (('<' | '<=' | '>' | '>=') additive)*
    additive    := term (('+' | '-') term)*
    term        := unary (('*' | '/' | '%') unary)*
    unary       := ('!' | '-' | '+') unary | postfix
    postfix     := primary ('.' NAME '(' args? ')')*
    primary     := NUMBER | STRING | 'true' | 'false' | 'null' | 'value'
                 | NAME '(' args? ')' | '(' expr ')'

Operators follow JavaScript semantics where the designer's users expect them
(truthiness, ``+`` concatenating strings, ``&&``/``||`` returning operands),
except that ``==`` is always strict and arithmetic on non-numbers, or division
by zero, is an error instead of producing NaN/Infinity.
"""

import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import TransformError

MAX_EXPRESSION_LENGTH = 1000
# Parenthesis/unary nesting; each level costs about 16 parser frames
MAX_DEPTH = 20
MAX_TREE_DEPTH = 100
MAX_ROUND_DIGITS = 20

# ----------------------------------------------------------------- tokenizer

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[-+*/%<>!?:(),.])
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"'}


@dataclass(frozen=True)
class Token:
    kind: str  # number | string | name | op | end
    text: str
    pos: int


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise TransformError(f"Unexpected character {source[pos]!r} at {pos}", source, pos)
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(Token("end", "", len(source)))
    return tokens


def _unescape(literal: str) -> str:
    body = literal[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


# ------------------------------------------------------------ value helpers

def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def truthy(v: Any) -> bool:
    """JavaScript truthiness"""
    if v is None or v is False:
        return False
    if _is_number(v):
        return v != 0 and not math.isnan(v)
    if isinstance(v, str):
        return v != ""
    return bool(v)


def to_js_string(v: Any) -> str:
    if v is None:
        return "null"
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, float):
        if v.is_integer():
            return str(int(v))
        return repr(v)
    return str(v)


def _to_number(v: Any, op: str) -> float:
    if isinstance(v, bool):
        return int(v)
    if _is_number(v):
        return v
    raise TransformError(f"Operator {op!r} needs a number, got {to_js_string(v)!r}")


def _strict_equal(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return a == b
    if type(a) is not type(b):
        return False
    return a == b


def _compare(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        left, right = a, b
    else:
        left, right = _to_number(a, op), _to_number(b, op)
    match op:
        case "<":
            return left < right
        case "<=":
            return left <= right
        case ">":
            return left > right
        case ">=":
            return left >= right
    raise TransformError(f"Unknown comparison {op!r}")


def _arith(op: str, a: Any, b: Any) -> Any:
    if op == "+" and (isinstance(a, str) or isinstance(b, str)):
        return to_js_string(a) + to_js_string(b)
    left, right = _to_number(a, op), _to_number(b, op)
    match op:
        case "+":
            return left + right
        case "-":
            return left - right
        case "*":
            return left * right
        case "/":
            if right == 0:
                raise TransformError("Division by zero")
            result = left / right
            return int(result) if isinstance(left, int) and isinstance(right, int) and result.is_integer() else result
        case "%":
            if right == 0:
                raise TransformError("Modulo by zero")
            return math.fmod(left, right) if isinstance(left, float) or isinstance(right, float) else int(math.fmod(left, right))
    raise TransformError(f"Unknown operator {op!r}")


# ------------------------------------------------------------------ builtins

def _round(x, digits=0):
    x = _to_number(x, "round")
    digits = int(_to_number(digits, "round"))
    if not -MAX_ROUND_DIGITS <= digits <= MAX_ROUND_DIGITS:
        raise TransformError(f"round() digits must be between -{MAX_ROUND_DIGITS} and {MAX_ROUND_DIGITS}")
    if digits == 0:
        # JavaScript Math.round: halves round up
        return int(math.floor(x + 0.5))
    factor = 10 ** digits
    return math.floor(x * factor + 0.5) / factor


def _clamp(x, lo, hi):
    return max(_to_number(lo, "clamp"), min(_to_number(hi, "clamp"), _to_number(x, "clamp")))


def _min(*args):
    if not args:
        raise TransformError("min() needs at least one argument")
    return min(_to_number(a, "min") for a in args)


def _max(*args):
    if not args:
        raise TransformError("max() needs at least one argument")
    return max(_to_number(a, "max") for a in args)


def _to_fixed(x, digits=0):
    x = _to_number(x, "toFixed")
    digits = int(_to_number(digits, "toFixed"))
    if not 0 <= digits <= 20:
        raise TransformError("toFixed() digits must be between 0 and 20")
    return f"{x:.{digits}f}"


def _number(x):
    if _is_number(x):
        return x
    if isinstance(x, bool):
        return int(x)
    if x is None:
        return 0
    try:
        parsed = float(str(x).strip())
    except ValueError as e:
        raise TransformError(f"Cannot convert {x!r} to a number") from e
    return int(parsed) if parsed.is_integer() else parsed


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "round": _round,
    "floor": lambda x: math.floor(_to_number(x, "floor")),
    "ceil": lambda x: math.ceil(_to_number(x, "ceil")),
    "abs": lambda x: abs(_to_number(x, "abs")),
    "min": _min,
    "max": _max,
    "clamp": _clamp,
    "Number": _number,
    "String": to_js_string,
    "Boolean": truthy,
}
# Math.* spellings used in existing displays
FUNCTIONS.update({
    "Math.round": lambda x: _round(x),
    "Math.floor": FUNCTIONS["floor"],
    "Math.ceil": FUNCTIONS["ceil"],
    "Math.abs": FUNCTIONS["abs"],
    "Math.min": _min,
    "Math.max": _max,
})

METHODS: Dict[str, Callable[..., Any]] = {
    "toFixed": _to_fixed,
    "toString": lambda x: to_js_string(x),
    "toUpperCase": lambda x: to_js_string(x).upper(),
    "toLowerCase": lambda x: to_js_string(x).lower(),
    "trim": lambda x: to_js_string(x).strip(),
}

CONSTANTS = {"true": True, "false": False, "null": None}


# ---------------------------------------------------------------------- AST

class Node:
    __slots__ = ("depth",)

    def __init__(self, *children: "Node"):
        self.depth = 1 + max((c.depth for c in children), default=0)

    def evaluate(self, value: Any) -> Any:
        raise NotImplementedError


class Literal(Node):
    __slots__ = ("constant",)

    def __init__(self, constant: Any):
        super().__init__()
        self.constant = constant

    def evaluate(self, value):
        return self.constant


class ValueRef(Node):
    __slots__ = ()

    def evaluate(self, value):
        return value


class Unary(Node):
    __slots__ = ("op", "operand")

    def __init__(self, op: str, operand: Node):
        super().__init__(operand)
        self.op = op
        self.operand = operand

    def evaluate(self, value):
        v = self.operand.evaluate(value)
        match self.op:
            case "!":
                return not truthy(v)
            case "-":
                return -_to_number(v, "-")
            case "+":
                return _to_number(v, "+")
        raise TransformError(f"Unknown unary operator {self.op!r}")


class Binary(Node):
    __slots__ = ("op", "left", "right")

    def __init__(self, op: str, left: Node, right: Node):
        super().__init__(left, right)
        self.op = op
        self.left = left
        self.right = right

    def evaluate(self, value):
        op = self.op
        left = self.left.evaluate(value)
        if op == "&&":
            return self.right.evaluate(value) if truthy(left) else left
        if op == "||":
            return left if truthy(left) else self.right.evaluate(value)

        right = self.right.evaluate(value)
        if op in ("==", "==="):
            return _strict_equal(left, right)
        if op in ("!=", "!=="):
            return not _strict_equal(left, right)
        if op in ("<", "<=", ">", ">="):
            return _compare(op, left, right)
        return _arith(op, left, right)


class Conditional(Node):
    __slots__ = ("test", "then", "otherwise")

    def __init__(self, test: Node, then: Node, otherwise: Node):
        super().__init__(test, then, otherwise)
        self.test = test
        self.then = then
        self.otherwise = otherwise

    def evaluate(self, value):
        if truthy(self.test.evaluate(value)):
            return self.then.evaluate(value)
        return self.otherwise.evaluate(value)


class Call(Node):
    __slots__ = ("name", "func", "args")

    def __init__(self, name: str, func: Callable[..., Any], args: Sequence[Node]):
        super().__init__(*args)
        self.name = name
        self.func = func
        self.args = tuple(args)

    def evaluate(self, value):
        args = [a.evaluate(value) for a in self.args]
        try:
            return self.func(*args)
        except TypeError as e:
            raise TransformError(f"Bad arguments for {self.name}(): {e}") from e


# ------------------------------------------------------------------- parser

_EQUALITY = ("==", "!=", "===", "!==")
_COMPARISON = ("<", "<=", ">", ">=")


class Parser:
    """Recursive-descent parser producing a Node tree."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def parse(self) -> Node:
        node = self.expression()
        if self.current.kind != "end":
            self.fail(f"Unexpected {self.current.text!r}")
        return node

    def fail(self, message: str, token: Optional[Token] = None):
        token = token or self.current
        raise TransformError(f"{message} at position {token.pos}", self.source, token.pos)

    def accept(self, *ops: str) -> Optional[Token]:
        token = self.current
        if token.kind == "op" and token.text in ops:
            self.index += 1
            return token
        return None

    def expect(self, op: str) -> Token:
        token = self.accept(op)
        if token is None:
            found = self.current.text or "end of expression"
            self.fail(f"Expected {op!r} but found {found!r}")
        return token

    def checked(self, node: Node) -> Node:
        if node.depth > MAX_TREE_DEPTH:
            self.fail("Expression nested too deeply")
        return node

    def expression(self) -> Node:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            self.fail("Expression nested too deeply")
        try:
            test = self.logical_or()
            if self.accept("?"):
                then = self.expression()
                self.expect(":")
                otherwise = self.expression()
                return Conditional(test, then, otherwise)
            return test
        finally:
            self.depth -= 1

    def _binary_level(self, ops: Tuple[str, ...], operand: Callable[[], Node]) -> Node:
        node = operand()
        while True:
            token = self.accept(*ops)
            if token is None:
                return node
            node = self.checked(Binary(token.text, node, operand()))

    def logical_or(self) -> Node:
        return self._binary_level(("||",), self.logical_and)

    def logical_and(self) -> Node:
        return self._binary_level(("&&",), self.equality)

    def equality(self) -> Node:
        return self._binary_level(_EQUALITY, self.comparison)

    def comparison(self) -> Node:
        return self._binary_level(_COMPARISON, self.additive)

    def additive(self) -> Node:
        return self._binary_level(("+", "-"), self.term)

    def term(self) -> Node:
        return self._binary_level(("*", "/", "%"), self.unary)

    def unary(self) -> Node:
        token = self.accept("!", "-", "+")
        if token is not None:
            self.depth += 1
            if self.depth > MAX_DEPTH:
                self.fail("Expression nested too deeply")
            try:
                return Unary(token.text, self.unary())
            finally:
                self.depth -= 1
        return self.postfix()

    def postfix(self) -> Node:
        node = self.primary()
        while self.accept("."):
            token = self.current
            if token.kind != "name" or token.text not in METHODS:
                self.fail(f"Unknown method {token.text!r}")
            self.index += 1
            args = self.arguments()
            node = self.checked(Call(token.text, METHODS[token.text], [node, *args]))
        return node

    def arguments(self) -> List[Node]:
        self.expect("(")
        args: List[Node] = []
        if self.accept(")"):
            return args
        while True:
            args.append(self.expression())
            if self.accept(")"):
                return args
            self.expect(",")

    def primary(self) -> Node:
        token = self.current
        match token.kind:
            case "number":
                self.index += 1
                number = float(token.text)
                return Literal(int(number) if number.is_integer() and "." not in token.text and "e" not in token.text.lower() else number)
            case "string":
                self.index += 1
                return Literal(_unescape(token.text))
            case "name":
                return self.name()
            case "op" if token.text == "(":
                self.index += 1
                node = self.expression()
                self.expect(")")
                return node
        found = token.text or "end of expression"
        self.fail(f"Unexpected {found!r}")

    def name(self) -> Node:
        token = self.current
        self.index += 1
        text = token.text

        # value.toFixed(1) tokenizes as one dotted name
        head, _, method = text.rpartition(".")
        if head == "value" and method in METHODS:
            return Call(method, METHODS[method], [ValueRef(), *self.arguments()])

        if text == "value":
            return ValueRef()
        if text in CONSTANTS:
            return Literal(CONSTANTS[text])
        if text in FUNCTIONS:
            return Call(text, FUNCTIONS[text], self.arguments())
        self.fail(f"Unknown identifier {text!r}", token)


# --------------------------------------------------------------- public API

class Transform:
    """
    A compiled transform expression.

    Construction parses the source and raises TransformError on syntax
    errors; calling it evaluates against one input value and raises
    TransformError on any runtime failure.
    """

    __slots__ = ("source", "_root")

    def __init__(self, source: str):
        if source is None or not source.strip():
            raise TransformError("Empty transform expression", source)
        if len(source) > MAX_EXPRESSION_LENGTH:
            raise TransformError(f"Transform longer than {MAX_EXPRESSION_LENGTH} characters", source)
        self.source = source
        try:
            self._root = Parser(source).parse()
        except RecursionError as e:
            raise TransformError("Expression nested too deeply", source) from e

    def __call__(self, value: Any) -> Any:
        try:
            return self._root.evaluate(value)
        except TransformError as e:
            if e.expression is None:
                e.expression = self.source
            raise
        except (ArithmeticError, TypeError, ValueError, RecursionError) as e:
            raise TransformError(f"Transform failed: {e}", self.source) from e

    def __repr__(self):
        return f"Transform({self.source!r})"


@lru_cache(maxsize=512)
def compile_transform(source: str) -> Transform:
    """Parse a transform, caching compiled expressions by source text."""
    return Transform(source)
