"""Restricted condition language for workflow branches.

A condition compares field paths of a step's parsed response against
literals. Nothing in an expression is ever executed as code: the text is
tokenized, parsed into a small tree, and evaluated over plain JSON values.

Grammar::

    expr       := or_expr
    or_expr    := and_expr (("or" | "||") and_expr)*
    and_expr   := not_expr (("and" | "&&") not_expr)*
    not_expr   := ("not" | "!") not_expr | comparison
    comparison := operand [OP operand]
    operand    := "(" expr ")" | path | literal
    OP         := == | != | < | <= | > | >= | in | contains
    path       := ident ("." ident | "[" int "]")*
    literal    := string | number | true | false | null | "[" literal, ... "]"

A bare operand tests truthiness. Missing paths evaluate to ``null``.
Ordering comparisons between mismatched types are false rather than errors.

Example:
    >>> cond = parse_condition("available == false")
    >>> cond.evaluate({"available": False})
    True
    >>> parse_condition("slots[0].price <= 100 and 'am' in tags").evaluate(
    ...     {"slots": [{"price": 80}], "tags": ["am", "pm"]}
    ... )
    True
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Union

from atp.errors import ConditionSyntaxError

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||<|>|!)
  | (?P<punct>[()\[\],.])
  | (?P<ident>[A-Za-z_$][A-Za-z0-9_$-]*)
    """,
    re.VERBOSE,
)

_KEYWORD_LITERALS: dict[str, Any] = {"true": True, "false": False, "null": None}
_OP_ALIASES = {"===": "==", "!==": "!=", "&&": "and", "||": "or", "!": "not"}
_COMPARISON_OPS = frozenset({"==", "!=", "<", "<=", ">", ">=", "in", "contains"})
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}

MAX_EXPRESSION_LENGTH = 1024
MAX_NESTING_DEPTH = 32


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    position: int


def tokenize(expression: str) -> list[Token]:
    """Split an expression into tokens, rejecting anything unrecognized."""
    tokens: list[Token] = []
    position = 0
    while position < len(expression):
        match = _TOKEN_RE.match(expression, position)
        if match is None:
            raise ConditionSyntaxError(
                expression, f"unexpected character {expression[position]!r} at {position}"
            )
        kind = match.lastgroup or ""
        value = match.group()
        if kind == "op":
            value = _OP_ALIASES.get(value, value)
            if value in ("and", "or", "not"):
                kind = "ident"
        if kind != "ws":
            tokens.append(Token(kind, value, position))
        position = match.end()
    return tokens


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    out: list[str] = []
    chars = iter(body)
    for ch in chars:
        if ch == "\\":
            escaped = next(chars, "")
            out.append(_ESCAPES.get(escaped, escaped))
        else:
            out.append(ch)
    return "".join(out)


# --------------------------------------------------------------------------- #
# Tree
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class Literal:
    value: Any

    def resolve(self, data: Any) -> Any:
        return self.value


@dataclass(frozen=True)
class FieldPath:
    """Dotted/indexed path into the response, e.g. ``a.b[0].c``."""

    segments: tuple[Union[str, int], ...]

    def resolve(self, data: Any) -> Any:
        current = data
        segments = self.segments
        # "response.x" and "$.x" address the response root
        if segments and segments[0] in ("$", "response"):
            if not (isinstance(current, dict) and segments[0] in current):
                segments = segments[1:]
        for segment in segments:
            if isinstance(segment, int):
                if not isinstance(current, list) or not -len(current) <= segment < len(current):
                    return None
                current = current[segment]
            else:
                if not isinstance(current, dict) or segment not in current:
                    return None
                current = current[segment]
        return current

    def __str__(self) -> str:
        parts: list[str] = []
        for segment in self.segments:
            if isinstance(segment, int):
                parts.append(f"[{segment}]")
            else:
                parts.append(f".{segment}" if parts else segment)
        return "".join(parts)


Operand = Union[Literal, FieldPath, "Comparison", "BoolOp", "Not"]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equals(left: Any, right: Any) -> bool:
    # JSON booleans never equal numbers
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return bool(left == right)


def _ordered(left: Any, right: Any) -> bool:
    return (_is_number(left) and _is_number(right)) or (
        isinstance(left, str) and isinstance(right, str)
    )


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, list):
        return any(_equals(element, item) for element in container)
    if isinstance(container, dict):
        return isinstance(item, str) and item in container
    return False


@dataclass(frozen=True)
class Comparison:
    left: Operand
    op: str
    right: Operand

    def resolve(self, data: Any) -> bool:
        left = self.left.resolve(data)
        right = self.right.resolve(data)
        if self.op == "==":
            return _equals(left, right)
        if self.op == "!=":
            return not _equals(left, right)
        if self.op == "in":
            return _contains(right, left)
        if self.op == "contains":
            return _contains(left, right)
        if not _ordered(left, right):
            return False
        if self.op == "<":
            return bool(left < right)
        if self.op == "<=":
            return bool(left <= right)
        if self.op == ">":
            return bool(left > right)
        return bool(left >= right)


@dataclass(frozen=True)
class BoolOp:
    op: str
    operands: tuple[Operand, ...]

    def resolve(self, data: Any) -> bool:
        if self.op == "and":
            return all(_truthy(operand.resolve(data)) for operand in self.operands)
        return any(_truthy(operand.resolve(data)) for operand in self.operands)


@dataclass(frozen=True)
class Not:
    operand: Operand

    def resolve(self, data: Any) -> bool:
        return not _truthy(self.operand.resolve(data))


def _truthy(value: Any) -> bool:
    return bool(value)


# --------------------------------------------------------------------------- #
# Parser
# --------------------------------------------------------------------------- #


class _Parser:
    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0
        self.depth = 0

    def error(self, reason: str) -> ConditionSyntaxError:
        return ConditionSyntaxError(self.expression, reason)

    def peek(self) -> Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def next(self) -> Token:
        token = self.peek()
        if token is None:
            raise self.error("unexpected end of expression")
        self.index += 1
        return token

    def accept(self, value: str) -> bool:
        token = self.peek()
        if token is not None and token.value == value and token.kind in ("ident", "op", "punct"):
            self.index += 1
            return True
        return False

    def expect(self, value: str) -> None:
        if not self.accept(value):
            token = self.peek()
            found = repr(token.value) if token else "end of expression"
            raise self.error(f"expected {value!r}, found {found}")

    def enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise self.error(f"nesting deeper than {MAX_NESTING_DEPTH} levels")

    def parse(self) -> Operand:
        if not self.tokens:
            raise self.error("empty expression")
        node = self.parse_or()
        token = self.peek()
        if token is not None:
            raise self.error(f"unexpected {token.value!r} at {token.position}")
        return node

    def parse_or(self) -> Operand:
        operands = [self.parse_and()]
        while self.accept("or"):
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def parse_and(self) -> Operand:
        operands = [self.parse_not()]
        while self.accept("and"):
            operands.append(self.parse_not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def parse_not(self) -> Operand:
        if self.accept("not"):
            self.enter()
            node = Not(self.parse_not())
            self.depth -= 1
            return node
        return self.parse_comparison()

    def parse_comparison(self) -> Operand:
        left = self.parse_operand()
        token = self.peek()
        if token is not None and token.value in _COMPARISON_OPS:
            self.index += 1
            right = self.parse_operand()
            return Comparison(left, token.value, right)
        return left

    def parse_operand(self) -> Operand:
        token = self.peek()
        if token is None:
            raise self.error("expected a value, found end of expression")
        if token.kind == "punct" and token.value == "(":
            self.index += 1
            self.enter()
            node = self.parse_or()
            self.expect(")")
            self.depth -= 1
            return node
        if token.kind == "ident" and token.value not in _KEYWORD_LITERALS:
            if token.value in ("and", "or", "not", "in", "contains"):
                raise self.error(f"unexpected keyword {token.value!r} at {token.position}")
            return self.parse_path()
        return Literal(self.parse_literal())

    def parse_path(self) -> FieldPath:
        segments: list[Union[str, int]] = [self.next().value]
        while True:
            if self.accept("."):
                token = self.next()
                if token.kind != "ident":
                    raise self.error(f"expected a field name after '.', found {token.value!r}")
                segments.append(token.value)
            elif self.accept("["):
                token = self.next()
                if token.kind == "number" and re.fullmatch(r"-?\d+", token.value):
                    segments.append(int(token.value))
                elif token.kind == "string":
                    segments.append(_unquote(token.value))
                else:
                    raise self.error(f"expected an index, found {token.value!r}")
                self.expect("]")
            else:
                return FieldPath(tuple(segments))

    def parse_literal(self) -> Any:
        token = self.next()
        if token.kind == "number":
            text = token.value
            return float(text) if any(c in text for c in ".eE") else int(text)
        if token.kind == "string":
            return _unquote(token.value)
        if token.kind == "ident" and token.value in _KEYWORD_LITERALS:
            return _KEYWORD_LITERALS[token.value]
        if token.kind == "punct" and token.value == "[":
            items: list[Any] = []
            self.enter()
            if not self.accept("]"):
                items.append(self.parse_literal())
                while not self.accept("]"):
                    self.expect(",")
                    items.append(self.parse_literal())
            self.depth -= 1
            return items
        raise self.error(f"unexpected {token.value!r} at {token.position}")


class Condition:
    """A parsed, side-effect free branch condition."""

    def __init__(self, expression: str, tree: Operand) -> None:
        self.expression = expression
        self._tree = tree

    def evaluate(self, data: Any) -> bool:
        """Evaluate against a parsed JSON response."""
        return _truthy(self._tree.resolve(data))

    def __repr__(self) -> str:
        return f"Condition({self.expression!r})"


@lru_cache(maxsize=256)
def parse_condition(expression: str) -> Condition:
    """Parse a condition expression.

    Raises:
        ConditionSyntaxError: If the expression is malformed
    """
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ConditionSyntaxError(expression[:64], "expression too long")
    return Condition(expression, _Parser(expression).parse())
