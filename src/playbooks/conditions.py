"""ConditionEvaluator - safe evaluation of condition step expressions.

Expressions are parsed by a small recursive-descent parser into a tree of
nodes and interpreted against the run's variables. Nothing is compiled or
executed by the host interpreter, and the grammar has no calls, assignments
or attribute access on arbitrary objects, so an expression can only read
the bindings it is given.

Supported:
    literals     1, 2.5, 'text', "text", true, false, null, [1, 2]
    lookup       name, a.b, a["key"], items[0], items.length
    arithmetic   + - * / %   (unary - and +)
    comparison   == != === !== < <= > >=  in  not in   (chainable)
    boolean      and &&  or ||  not !
    grouping     ( ... )
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, NoReturn, Optional, Tuple

from .config import EngineSettings, get_settings
from .errors import ConditionEvaluationError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<number>\d+\.\d+|\d+)
    | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    | (?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
    | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[-+*/%<>!()\[\].,])
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"'}

_LITERALS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
}

_COMPARISONS = {"==", "!=", "===", "!==", "<", "<=", ">", ">="}

_MAX_NESTING = 64


@dataclass(frozen=True)
class Token:
    kind: str
    value: Any
    pos: int


@dataclass(frozen=True)
class Const:
    value: Any


@dataclass(frozen=True)
class Var:
    name: str


@dataclass(frozen=True)
class Member:
    target: Any
    name: str


@dataclass(frozen=True)
class Index:
    target: Any
    key: Any


@dataclass(frozen=True)
class ListLiteral:
    items: Tuple[Any, ...]


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class BinOp:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class BoolOp:
    op: str
    operands: Tuple[Any, ...]


@dataclass(frozen=True)
class Compare:
    left: Any
    rest: Tuple[Tuple[str, Any], ...]


def tokenize(expression: str) -> List[Token]:
    """Split an expression into tokens, ending with an 'eof' token."""
    tokens: List[Token] = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise ConditionEvaluationError(
                expression, f"Unexpected character {expression[pos]!r}", pos
            )
        kind = match.lastgroup
        text = match.group()
        if kind == "number":
            tokens.append(Token("number", float(text) if "." in text else int(text), pos))
        elif kind == "string":
            body = re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), text[1:-1])
            tokens.append(Token("string", body, pos))
        elif kind == "name":
            tokens.append(Token("name", text, pos))
        elif kind == "op":
            tokens.append(Token("op", text, pos))
        pos = match.end()
    tokens.append(Token("eof", None, pos))
    return tokens


class _Parser:
    """Recursive-descent parser producing an expression tree."""

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.tokens = tokenize(expression)
        self.pos = 0
        self.depth = 0

    def parse(self) -> Any:
        node = self._or()
        token = self._peek()
        if token.kind != "eof":
            self._fail(f"Unexpected token {token.value!r}", token)
        return node

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _next(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _at(self, *values: str) -> bool:
        token = self._peek()
        return token.kind in ("op", "name") and token.value in values

    def _expect(self, value: str) -> Token:
        token = self._next()
        if token.kind not in ("op", "name") or token.value != value:
            found = "end of expression" if token.kind == "eof" else repr(token.value)
            self._fail(f"Expected {value!r} but found {found}", token)
        return token

    def _fail(self, reason: str, token: Token) -> NoReturn:
        raise ConditionEvaluationError(self.expression, reason, token.pos)

    def _or(self) -> Any:
        operands = [self._and()]
        while self._at("or", "||"):
            self._next()
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _and(self) -> Any:
        operands = [self._not()]
        while self._at("and", "&&"):
            self._next()
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _not(self) -> Any:
        if self._at("not"):
            self._next()
            return Unary("not", self._not())
        return self._comparison()

    def _comparison(self) -> Any:
        left = self._additive()
        rest: List[Tuple[str, Any]] = []
        while True:
            if self._at(*_COMPARISONS) or self._at("in"):
                op = self._next().value
            elif self._at("not") and self._lookahead_is("in"):
                self._next()
                self._next()
                op = "not in"
            else:
                break
            rest.append((op, self._additive()))
        return Compare(left, tuple(rest)) if rest else left

    def _lookahead_is(self, value: str) -> bool:
        token = self.tokens[self.pos + 1] if self.pos + 1 < len(self.tokens) else None
        return token is not None and token.kind == "name" and token.value == value

    def _additive(self) -> Any:
        node = self._term()
        while self._at("+", "-"):
            op = self._next().value
            node = BinOp(op, node, self._term())
        return node

    def _term(self) -> Any:
        node = self._unary()
        while self._at("*", "/", "%"):
            op = self._next().value
            node = BinOp(op, node, self._unary())
        return node

    def _unary(self) -> Any:
        if self._at("-", "+", "!"):
            op = self._next().value
            return Unary("not" if op == "!" else op, self._unary())
        return self._postfix()

    def _postfix(self) -> Any:
        node = self._primary()
        while True:
            if self._at("."):
                self._next()
                token = self._next()
                if token.kind != "name":
                    self._fail("Expected a name after '.'", token)
                node = Member(node, token.value)
            elif self._at("["):
                self._next()
                key = self._nested()
                self._expect("]")
                node = Index(node, key)
            else:
                return node

    def _nested(self) -> Any:
        self.depth += 1
        if self.depth > _MAX_NESTING:
            self._fail("Expression is nested too deeply", self._peek())
        node = self._or()
        self.depth -= 1
        return node

    def _primary(self) -> Any:
        token = self._next()
        if token.kind in ("number", "string"):
            return Const(token.value)
        if token.kind == "name":
            if token.value in _LITERALS:
                return Const(_LITERALS[token.value])
            if token.value in ("and", "or", "not", "in"):
                self._fail(f"Unexpected keyword {token.value!r}", token)
            return Var(token.value)
        if token.kind == "op" and token.value == "(":
            node = self._nested()
            self._expect(")")
            return node
        if token.kind == "op" and token.value == "[":
            items: List[Any] = []
            if not self._at("]"):
                items.append(self._nested())
                while self._at(","):
                    self._next()
                    items.append(self._nested())
            self._expect("]")
            return ListLiteral(tuple(items))
        if token.kind == "eof":
            self._fail("Unexpected end of expression", token)
        self._fail(f"Unexpected token {token.value!r}", token)


@lru_cache(maxsize=512)
def parse_expression(expression: str) -> Any:
    """Parse an expression into a tree. Successful parses are cached."""
    return _Parser(expression).parse()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class _Interpreter:
    """Evaluates a parsed tree against a read-only mapping of variables."""

    def __init__(self, expression: str, variables: Mapping) -> None:
        self.expression = expression
        self.variables = variables

    def error(self, reason: str) -> ConditionEvaluationError:
        return ConditionEvaluationError(self.expression, reason)

    def eval(self, node: Any) -> Any:
        if isinstance(node, Const):
            return node.value
        if isinstance(node, Var):
            if node.name not in self.variables:
                raise self.error(f"Undefined variable '{node.name}'")
            return self.variables[node.name]
        if isinstance(node, Member):
            return self._member(self.eval(node.target), node.name)
        if isinstance(node, Index):
            return self._index(self.eval(node.target), self.eval(node.key))
        if isinstance(node, ListLiteral):
            return [self.eval(item) for item in node.items]
        if isinstance(node, Unary):
            return self._unary(node.op, self.eval(node.operand))
        if isinstance(node, BinOp):
            return self._binop(node.op, self.eval(node.left), self.eval(node.right))
        if isinstance(node, BoolOp):
            return self._boolop(node)
        if isinstance(node, Compare):
            return self._compare(node)
        raise self.error(f"Unsupported expression node {type(node).__name__}")

    def _member(self, target: Any, name: str) -> Any:
        if isinstance(target, Mapping):
            return target.get(name)
        if name == "length" and isinstance(target, (str, list, tuple)):
            return len(target)
        raise self.error(f"Cannot read '{name}' of {type(target).__name__}")

    def _index(self, target: Any, key: Any) -> Any:
        if isinstance(target, Mapping):
            try:
                return target.get(key)
            except TypeError:
                raise self.error(f"Invalid key {key!r}")
        if isinstance(target, (str, list, tuple)):
            if not isinstance(key, int) or isinstance(key, bool):
                raise self.error(f"Index must be an integer, got {type(key).__name__}")
            if -len(target) <= key < len(target):
                return target[key]
            return None
        raise self.error(f"Cannot index {type(target).__name__}")

    def _unary(self, op: str, value: Any) -> Any:
        if op == "not":
            return not value
        if not _is_number(value):
            raise self.error(f"Unary '{op}' needs a number, got {type(value).__name__}")
        return -value if op == "-" else +value

    def _binop(self, op: str, left: Any, right: Any) -> Any:
        if op == "+":
            if _is_number(left) and _is_number(right):
                return left + right
            if isinstance(left, str) and isinstance(right, str):
                return left + right
            if isinstance(left, list) and isinstance(right, list):
                return left + right
            raise self.error(
                f"Cannot add {type(left).__name__} and {type(right).__name__}"
            )
        if not (_is_number(left) and _is_number(right)):
            raise self.error(
                f"Operator '{op}' needs numbers, got "
                f"{type(left).__name__} and {type(right).__name__}"
            )
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if right == 0:
            raise self.error("Division by zero")
        if op == "/":
            return left / right
        return left % right

    def _boolop(self, node: BoolOp) -> Any:
        value: Any = None
        for operand in node.operands:
            value = self.eval(operand)
            if node.op == "and" and not value:
                return value
            if node.op == "or" and value:
                return value
        return value

    def _compare(self, node: Compare) -> bool:
        left = self.eval(node.left)
        for op, right_node in node.rest:
            right = self.eval(right_node)
            if not self._compare_pair(op, left, right):
                return False
            left = right
        return True

    def _compare_pair(self, op: str, left: Any, right: Any) -> bool:
        if op == "==":
            return bool(left == right)
        if op == "!=":
            return bool(left != right)
        if op == "===":
            return self._strict_equal(left, right)
        if op == "!==":
            return not self._strict_equal(left, right)
        if op in ("in", "not in"):
            if not isinstance(right, (str, list, tuple, Mapping, set, frozenset)):
                raise self.error(f"'{op}' needs a container, got {type(right).__name__}")
            if isinstance(right, str) and not isinstance(left, str):
                raise self.error("'in' on a string needs a string")
            try:
                found = left in right
            except TypeError:
                raise self.error(f"Cannot test membership of {type(left).__name__}")
            return found if op == "in" else not found
        try:
            if op == "<":
                return bool(left < right)
            if op == "<=":
                return bool(left <= right)
            if op == ">":
                return bool(left > right)
            return bool(left >= right)
        except TypeError:
            raise self.error(
                f"Cannot compare {type(left).__name__} and {type(right).__name__}"
            )

    @staticmethod
    def _strict_equal(left: Any, right: Any) -> bool:
        if _is_number(left) and _is_number(right):
            return left == right
        return type(left) is type(right) and left == right


class ConditionEvaluator:
    """
    Evaluates condition expressions against variable bindings.

    Evaluation fails closed: any parse or evaluation error is logged and
    the expression is treated as False.

    Example:
        evaluator = ConditionEvaluator()
        evaluator.evaluate("severity >= 7 and alert.source == 'edr'", variables)
    """

    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self.settings = settings or get_settings()

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> bool:
        """Evaluate an expression, returning False on any error."""
        result, _ = self.evaluate_detailed(expression, variables)
        return result

    def evaluate_detailed(
        self, expression: str, variables: Mapping[str, Any]
    ) -> Tuple[bool, Optional[str]]:
        """
        Evaluate an expression and report why it failed, if it did.

        Args:
            expression: Condition expression
            variables: Current variable bindings (read only)

        Returns:
            Tuple of (result, error message or None)
        """
        try:
            node = self._parse(expression)
            value = _Interpreter(expression, variables).eval(node)
        except ConditionEvaluationError as e:
            logger.warning("Condition evaluated as false: %s", e)
            return False, str(e)
        except Exception as e:
            # Anything raised while reading bindings still fails closed.
            logger.warning(
                "Condition evaluated as false: %s: %s (condition: %s)",
                type(e).__name__,
                e,
                expression,
            )
            return False, f"{type(e).__name__}: {e}"
        return bool(value), None

    def check(self, expression: str) -> Optional[str]:
        """Return the syntax error of an expression, or None if it parses."""
        try:
            self._parse(expression)
        except ConditionEvaluationError as e:
            return str(e)
        except RecursionError:
            return f"Condition is nested too deeply: {expression[:40]}..."
        return None

    def _parse(self, expression: str) -> Any:
        if not isinstance(expression, str) or not expression.strip():
            raise ConditionEvaluationError(str(expression), "Empty condition")
        if len(expression) > self.settings.max_condition_length:
            raise ConditionEvaluationError(
                expression[:40] + "...",
                f"Condition longer than {self.settings.max_condition_length} characters",
            )
        return parse_expression(expression)
