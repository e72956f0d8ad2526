"""Boolean expression language used by condition and loop steps.

Grammar (lowest to highest precedence)::

    expression := or_expr
    or_expr    := and_expr ("||" and_expr)*
    and_expr   := comparison ("&&" comparison)*
    comparison := unary (("===" | "==" | "!==" | "!=" | ">=" | "<=" | ">" | "<") unary)?
    unary      := "!" unary | primary
    primary    := "(" expression ")" | "{{" path "}}" | number | string
                | "true" | "false" | "null" | bare-word

Bare words are string literals, so ``{{status}} == done`` compares against
``"done"``. Expressions compile to a small AST which is evaluated against
an :class:`~taskflow.contracts.ExecutionContext`; nothing is ever passed to
``eval``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, List, Mapping, Optional, Tuple

from .contracts import MISSING, ExecutionContext, resolve_path
from .errors import ExpressionError

Lookup = Callable[[str], Any]

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<ref>\{\{\s*[\w.\-]+\s*\}\})
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[><!()])
  | (?P<word>[A-Za-z_][\w.\-]*)
    """,
    re.VERBOSE,
)

_COMPARISON_OPS = ("===", "==", "!==", "!=", ">=", "<=", ">", "<")


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise ExpressionError(
                f"Unexpected character {source[pos]!r} at {pos} in {source!r}"
            )
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


# ----------------------------------------------------------------------
# AST


class Node:
    def evaluate(self, lookup: Lookup) -> Any:  # pragma: no cover - abstract
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Node):
    value: Any

    def evaluate(self, lookup: Lookup) -> Any:
        return self.value


@dataclass(frozen=True)
class Reference(Node):
    path: str

    def evaluate(self, lookup: Lookup) -> Any:
        value = lookup(self.path)
        return None if value is MISSING else value


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def evaluate(self, lookup: Lookup) -> Any:
        return not self.operand.evaluate(lookup)


@dataclass(frozen=True)
class Logical(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, lookup: Lookup) -> Any:
        left = bool(self.left.evaluate(lookup))
        if self.op == "&&":
            return left and bool(self.right.evaluate(lookup))
        return left or bool(self.right.evaluate(lookup))


@dataclass(frozen=True)
class Compare(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, lookup: Lookup) -> Any:
        return compare(self.op, self.left.evaluate(lookup), self.right.evaluate(lookup))


# ----------------------------------------------------------------------
# Comparison semantics


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """Turn a numeric string into a number when compared with a number."""
    if _is_number(left) and isinstance(right, str):
        try:
            return left, float(right)
        except ValueError:
            return left, right
    if isinstance(left, str) and _is_number(right):
        try:
            return float(left), right
        except ValueError:
            return left, right
    return left, right


def _strict_equal(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def compare(op: str, left: Any, right: Any) -> bool:
    if op == "===":
        return _strict_equal(left, right)
    if op == "!==":
        return not _strict_equal(left, right)
    left, right = _coerce_pair(left, right)
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    comparable = (_is_number(left) and _is_number(right)) or (
        isinstance(left, str) and isinstance(right, str)
    )
    if not comparable:
        return False
    if op == ">=":
        return left >= right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    raise ExpressionError(f"Unknown operator {op!r}")


# ----------------------------------------------------------------------
# Parser


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _accept(self, *values: str) -> Optional[Token]:
        token = self._peek()
        if token is not None and token.kind == "op" and token.value in values:
            self.index += 1
            return token
        return None

    def _error(self, message: str) -> ExpressionError:
        return ExpressionError(f"{message} in expression {self.source!r}")

    def parse(self) -> Node:
        if not self.tokens:
            raise self._error("Empty expression")
        node = self._or()
        token = self._peek()
        if token is not None:
            raise self._error(f"Unexpected token {token.value!r} at {token.pos}")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._comparison()
        while self._accept("&&"):
            node = Logical("&&", node, self._comparison())
        return node

    def _comparison(self) -> Node:
        node = self._unary()
        token = self._accept(*_COMPARISON_OPS)
        if token:
            node = Compare(token.value, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("!"):
            return Not(self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self._peek()
        if token is None:
            raise self._error("Unexpected end")
        if self._accept("("):
            node = self._or()
            if not self._accept(")"):
                raise self._error("Missing closing parenthesis")
            return node
        self.index += 1
        if token.kind == "ref":
            return Reference(token.value[2:-2].strip())
        if token.kind == "number":
            if "." in token.value:
                return Literal(float(token.value))
            return Literal(int(token.value))
        if token.kind == "string":
            body = token.value[1:-1]
            return Literal(re.sub(r"\\(.)", r"\1", body))
        if token.kind == "word":
            keywords = {"true": True, "false": False, "null": None}
            if token.value in keywords:
                return Literal(keywords[token.value])
            return Literal(token.value)
        raise self._error(f"Unexpected token {token.value!r} at {token.pos}")


@lru_cache(maxsize=256)
def compile_expression(source: str) -> Node:
    """Parse ``source`` into an AST. Raises :class:`ExpressionError`."""
    return _Parser(source).parse()


def evaluate(
    source: str,
    context: ExecutionContext,
    extra: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Evaluate ``source`` to a boolean.

    ``extra`` bindings shadow the context (loops use it for ``iteration``).
    """
    node = compile_expression(source)

    def lookup(path: str) -> Any:
        if extra:
            value = resolve_path(dict(extra), path)
            if value is not MISSING:
                return value
        return context.lookup(path)

    return bool(node.evaluate(lookup))
