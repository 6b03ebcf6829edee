"""Restricted expression language for branch and loop conditions.

Grammar, lowest precedence first::

    or             := and ("||" and)*
    and            := equality ("&&" equality)*
    equality       := relational (("==" | "!=") relational)*
    relational     := additive ((">" | ">=" | "<" | "<=") additive)*
    additive       := multiplicative (("+" | "-") multiplicative)*
    multiplicative := unary (("*" | "/") unary)*
    unary          := ("!" | "-") unary | primary
    primary        := NUMBER | STRING | "true" | "false" | PATH | "(" or ")"

``PATH`` is a dotted identifier. Only paths rooted at ``vars`` resolve, and
only through mapping keys of the scope handed to :func:`evaluate`; every
other identifier parses to *undefined*. Nothing else is reachable: no
attribute access, no calls, no globals.

Evaluation is fail-closed. Malformed text, nesting deeper than
``_MAX_DEPTH``, overlong input, or any error raised while evaluating yields
``False`` instead of an exception.
"""
from __future__ import annotations

import math
import re
import string
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Tuple

from flowkernel.logging import get_logger
from flowkernel.service.errors import ExpressionEvaluationError

logger = get_logger(__name__)

_MAX_DEPTH = 100
_MAX_EXPRESSION_LENGTH = 4096

_TWO_CHAR_OPS = frozenset({"&&", "||", "==", "!=", ">=", "<="})
_ONE_CHAR_OPS = frozenset("!+-*/()<>")
_DIGITS = frozenset(string.digits)
_IDENT_START = frozenset(string.ascii_letters + "_")
_IDENT_CHARS = frozenset(string.ascii_letters + string.digits + "_")

_TEMPLATE_FULL = re.compile(r"^\$\{\s*([^{}]+?)\s*\}$")
_TEMPLATE_EMBEDDED = re.compile(r"\$\{\s*([^{}]+?)\s*\}")


class _Undefined:
    """Result of a lookup that found nothing."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()


@dataclass(frozen=True)
class Token:
    kind: str  # num | str | ident | op
    value: Any
    pos: int


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        pair = text[i : i + 2]
        if pair in _TWO_CHAR_OPS:
            tokens.append(Token("op", pair, i))
            i += 2
            continue
        if ch in _ONE_CHAR_OPS:
            tokens.append(Token("op", ch, i))
            i += 1
            continue
        if ch in _DIGITS or (ch == "." and i + 1 < n and text[i + 1] in _DIGITS):
            j = i
            seen_dot = False
            while j < n and (text[j] in _DIGITS or (text[j] == "." and not seen_dot)):
                if text[j] == ".":
                    seen_dot = True
                j += 1
            raw = text[i:j]
            tokens.append(Token("num", float(raw) if seen_dot else int(raw), i))
            i = j
            continue
        if ch in ("'", '"'):
            j = i + 1
            buf: List[str] = []
            while j < n and text[j] != ch:
                if text[j] == "\\" and j + 1 < n:
                    buf.append(text[j + 1])
                    j += 2
                    continue
                buf.append(text[j])
                j += 1
            if j >= n:
                raise ExpressionEvaluationError(f"unterminated string at {i}")
            tokens.append(Token("str", "".join(buf), i))
            i = j + 1
            continue
        if ch in _IDENT_START:
            j = i + 1
            while j < n:
                if text[j] in _IDENT_CHARS:
                    j += 1
                elif text[j] == "." and j + 1 < n and text[j + 1] in _IDENT_START:
                    j += 1
                else:
                    break
            tokens.append(Token("ident", text[i:j], i))
            i = j
            continue
        raise ExpressionEvaluationError(f"unexpected character {ch!r} at {i}")
    return tokens


_EQUALITY = ("==", "!=")
_RELATIONAL = (">", ">=", "<", "<=")
_ADDITIVE = ("+", "-")
_MULTIPLICATIVE = ("*", "/")


class _Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.pos = 0
        self.depth = 0

    def _peek_op(self, ops: Tuple[str, ...]) -> str | None:
        if self.pos < len(self.tokens):
            token = self.tokens[self.pos]
            if token.kind == "op" and token.value in ops:
                return token.value
        return None

    def parse(self) -> tuple:
        if not self.tokens:
            raise ExpressionEvaluationError("empty expression")
        tree = self._or()
        if self.pos != len(self.tokens):
            token = self.tokens[self.pos]
            raise ExpressionEvaluationError(f"unexpected token {token.value!r} at {token.pos}")
        return tree

    def _binary(self, operand, ops: Tuple[str, ...]) -> tuple:
        left = operand()
        op = self._peek_op(ops)
        while op is not None:
            self.pos += 1
            left = ("binary", op, left, operand())
            op = self._peek_op(ops)
        return left

    def _or(self) -> tuple:
        return self._binary(self._and, ("||",))

    def _and(self) -> tuple:
        return self._binary(self._equality, ("&&",))

    def _equality(self) -> tuple:
        return self._binary(self._relational, _EQUALITY)

    def _relational(self) -> tuple:
        return self._binary(self._additive, _RELATIONAL)

    def _additive(self) -> tuple:
        return self._binary(self._multiplicative, _ADDITIVE)

    def _multiplicative(self) -> tuple:
        return self._binary(self._unary, _MULTIPLICATIVE)

    def _unary(self) -> tuple:
        self.depth += 1
        if self.depth > _MAX_DEPTH:
            raise ExpressionEvaluationError("expression too deeply nested")
        try:
            op = self._peek_op(("!", "-"))
            if op is not None:
                self.pos += 1
                return ("unary", op, self._unary())
            return self._primary()
        finally:
            self.depth -= 1

    def _primary(self) -> tuple:
        if self.pos >= len(self.tokens):
            raise ExpressionEvaluationError("unexpected end of expression")
        token = self.tokens[self.pos]
        self.pos += 1
        if token.kind in ("num", "str"):
            return ("lit", token.value)
        if token.kind == "ident":
            if token.value == "true":
                return ("lit", True)
            if token.value == "false":
                return ("lit", False)
            parts = token.value.split(".")
            if parts[0] == "vars":
                return ("path", tuple(parts[1:]))
            return ("lit", UNDEFINED)
        if token.value == "(":
            inner = self._or()
            if self._peek_op((")",)) is None:
                raise ExpressionEvaluationError(f"missing ')' for '(' at {token.pos}")
            self.pos += 1
            return inner
        raise ExpressionEvaluationError(f"unexpected token {token.value!r} at {token.pos}")


@lru_cache(maxsize=512)
def parse(text: str) -> tuple:
    """Parse expression text into an immutable tree. Raises ExpressionEvaluationError."""
    if not isinstance(text, str):
        raise ExpressionEvaluationError("expression must be a string")
    if len(text) > _MAX_EXPRESSION_LENGTH:
        raise ExpressionEvaluationError("expression too long")
    return _Parser(tokenize(text)).parse()


def lookup(scope: Any, path: Tuple[str, ...] | List[str]) -> Any:
    """Read a dotted path through mapping keys; missing steps yield UNDEFINED."""
    current = scope
    for part in path:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return UNDEFINED
    return current


def is_truthy(value: Any) -> bool:
    if value is UNDEFINED or value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


def _format_number(value: float | int) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def stringify(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, int, float)):
        return _format_number(value)
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None or item is UNDEFINED else stringify(item) for item in value)
    return "[object Object]"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _string_to_number(text: str) -> float:
    stripped = text.strip()
    if not stripped:
        return 0
    try:
        return float(stripped)
    except ValueError:
        return math.nan


def _to_number(value: Any) -> float | int:
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    if isinstance(value, str):
        return _string_to_number(value)
    return math.nan


def _arith_operand(value: Any) -> float | int:
    """Arithmetic operand; anything without a numeric reading counts as 0."""
    number = _to_number(value)
    if isinstance(number, float) and math.isnan(number):
        return 0
    return number


def _comparable(value: Any) -> Any:
    if isinstance(value, (str, bool, int, float)):
        return value
    return stringify(value)


def _strict_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return False


def _relate(op: str, left: Any, right: Any) -> bool:
    if not (isinstance(left, str) and isinstance(right, str)):
        left, right = _to_number(left), _to_number(right)
    if op == ">":
        return left > right
    if op == ">=":
        return left >= right
    if op == "<":
        return left < right
    return left <= right


def _divide(left: float | int, right: float | int) -> float:
    if right == 0:
        if left == 0 or (isinstance(left, float) and math.isnan(left)):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


def _evaluate(node: tuple, scope: Any) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "path":
        return lookup(scope, node[1])
    if kind == "unary":
        operand = _evaluate(node[2], scope)
        if node[1] == "!":
            return not is_truthy(operand)
        return -_arith_operand(operand)

    op, left_node, right_node = node[1], node[2], node[3]
    if op == "||":
        return is_truthy(_evaluate(left_node, scope)) or is_truthy(_evaluate(right_node, scope))
    if op == "&&":
        return is_truthy(_evaluate(left_node, scope)) and is_truthy(_evaluate(right_node, scope))

    left = _evaluate(left_node, scope)
    right = _evaluate(right_node, scope)
    if op in _EQUALITY:
        equal = _strict_equal(_comparable(left), _comparable(right))
        return equal if op == "==" else not equal
    if op in _RELATIONAL:
        return _relate(op, _comparable(left), _comparable(right))

    a, b = _arith_operand(left), _arith_operand(right)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    return _divide(a, b)


def evaluate(expression: Any, scope: Mapping[str, Any] | None = None) -> Any:
    """Evaluate ``expression`` with ``vars`` bound to ``scope``.

    Returns the computed value (``None`` for undefined). Returns ``False`` if
    the text cannot be parsed or evaluation raises.
    """
    try:
        tree = parse(expression)
        value = _evaluate(tree, scope if scope is not None else {})
    except Exception as exc:
        logger.debug(
            "expression_evaluation_failed",
            expression=expression if isinstance(expression, str) else repr(expression),
            error=str(exc),
        )
        return False
    return None if value is UNDEFINED else value


def evaluate_condition(expression: Any, scope: Mapping[str, Any] | None = None) -> bool:
    """Truthiness of :func:`evaluate`; malformed conditions are ``False``."""
    return is_truthy(evaluate(expression, scope))


def _template_value(path_text: str, scope: Any) -> Any:
    parts = path_text.split(".")
    if parts[0] != "vars":
        return UNDEFINED
    return lookup(scope, parts[1:])


def resolve_templates(value: Any, scope: Mapping[str, Any]) -> Any:
    """Substitute ``${vars.a.b}`` references inside a node config.

    A string that is exactly one reference becomes the referenced value
    (``None`` when missing). References embedded in longer strings are
    interpolated as text.
    """
    if isinstance(value, str):
        if "${" not in value:
            return value
        whole = _TEMPLATE_FULL.match(value)
        if whole:
            resolved = _template_value(whole.group(1), scope)
            return None if resolved is UNDEFINED else resolved

        def _sub(match: re.Match) -> str:
            resolved = _template_value(match.group(1), scope)
            if resolved is UNDEFINED or resolved is None:
                return ""
            return stringify(resolved)

        return _TEMPLATE_EMBEDDED.sub(_sub, value)
    if isinstance(value, dict):
        return {key: resolve_templates(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_templates(item, scope) for item in value]
    return value


__all__ = [
    "UNDEFINED",
    "evaluate",
    "evaluate_condition",
    "is_truthy",
    "lookup",
    "parse",
    "resolve_templates",
    "stringify",
    "tokenize",
]
