"""
OData query parser and filter engine for the emulated Table service.

Supports $filter, $select, $top query parameters with OData operators and
the typed literals the client emits (``123L``, ``datetime'...'``,
``guid'...'``, ``X'...'``).
"""

import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from tablezure.table.types import parse_datetime


class ODataParseError(Exception):
    """Raised when OData expression parsing fails."""
    pass


@dataclass(frozen=True)
class _Literal:
    value: Any


class ODataFilter:
    """
    OData filter expression parser and evaluator.

    Supports:
    - Comparison operators: eq, ne, gt, ge, lt, le
    - Logical operators: and, or, not
    - String literals with ``''`` escapes and typed literals

    A comparison against a property the entity does not have is false.
    """

    COMPARISON_OPS = {
        'eq': lambda a, b: a == b,
        'ne': lambda a, b: a != b,
        'gt': lambda a, b: a > b,
        'ge': lambda a, b: a >= b,
        'lt': lambda a, b: a < b,
        'le': lambda a, b: a <= b,
    }

    _TOKEN = re.compile(
        r"(?:datetime|guid|X|binary)'[^']*'"
        r"|'(?:[^']|'')*'"
        r"|-?\d+\.\d+(?:[eE][+-]?\d+)?"
        r"|-?\d+L?"
        r"|[(),]"
        r"|\w+"
    )

    def __init__(self, filter_expr: str):
        self.filter_expr = filter_expr.strip()
        self.tokens = self._tokenize(self.filter_expr)
        self.pos = 0
        self._parsed_func = None

    def _tokenize(self, expr: str) -> List[str]:
        tokens = []
        pos = 0
        while pos < len(expr):
            if expr[pos].isspace():
                pos += 1
                continue
            match = self._TOKEN.match(expr, pos)
            if not match:
                raise ODataParseError(f"Unexpected character at position {pos}: {expr[pos]!r}")
            tokens.append(match.group())
            pos = match.end()
        return tokens

    def _current_token(self) -> Optional[str]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def _consume_token(self) -> Optional[str]:
        token = self._current_token()
        if token is not None:
            self.pos += 1
        return token

    def _parse_operand(self, token: str) -> Any:
        """
        Parse an operand token into a ``_Literal`` or a property name.

        Raises:
            ODataParseError: If a typed literal is malformed
        """
        try:
            if token.startswith("'"):
                return _Literal(token[1:-1].replace("''", "'"))
            if token.startswith("datetime'"):
                return _Literal(parse_datetime(token[9:-1]))
            if token.startswith("guid'"):
                return _Literal(uuid.UUID(token[5:-1]))
            if token.startswith("X'"):
                return _Literal(bytes.fromhex(token[2:-1]))
            if token.startswith("binary'"):
                return _Literal(bytes.fromhex(token[7:-1]))
        except ValueError as exc:
            raise ODataParseError(f"Malformed literal {token}: {exc}") from exc

        if re.fullmatch(r"-?\d+L", token):
            return _Literal(int(token[:-1]))
        if re.fullmatch(r"-?\d+", token):
            return _Literal(int(token))
        if re.fullmatch(r"-?\d+\.\d+(?:[eE][+-]?\d+)?", token):
            return _Literal(float(token))
        if token.lower() == 'true':
            return _Literal(True)
        if token.lower() == 'false':
            return _Literal(False)

        # Property name
        return token

    def _parse_primary(self) -> Callable[[Dict[str, Any]], bool]:
        token = self._current_token()

        if token is None:
            raise ODataParseError("Unexpected end of expression")

        if token == '(':
            self._consume_token()
            expr = self._parse_or()
            if self._consume_token() != ')':
                raise ODataParseError("Expected closing parenthesis")
            return expr

        if token.lower() == 'not':
            self._consume_token()
            sub_expr = self._parse_primary()
            return lambda entity: not sub_expr(entity)

        return self._parse_comparison()

    def _parse_comparison(self) -> Callable[[Dict[str, Any]], bool]:
        left_token = self._consume_token()
        if left_token is None:
            raise ODataParseError("Expected property name")

        op_token = self._consume_token()
        if op_token is None:
            raise ODataParseError("Expected comparison operator")

        op = op_token.lower()
        if op not in self.COMPARISON_OPS:
            raise ODataParseError(f"Unknown comparison operator: {op}")

        right_token = self._consume_token()
        if right_token is None or right_token in ('(', ')', ','):
            raise ODataParseError("Expected value")

        left = self._parse_operand(left_token)
        right = self._parse_operand(right_token)
        comparison_func = self.COMPARISON_OPS[op]

        def resolve(operand: Any, entity: Dict[str, Any]) -> Any:
            if isinstance(operand, _Literal):
                return operand.value
            return entity.get(operand)

        def evaluate(entity: Dict[str, Any]) -> bool:
            left_eval = resolve(left, entity)
            right_eval = resolve(right, entity)
            if left_eval is None or right_eval is None:
                return False
            # bool is an int subclass; keep Boolean and numeric comparisons apart
            if isinstance(left_eval, bool) != isinstance(right_eval, bool):
                return False
            try:
                return comparison_func(left_eval, right_eval)
            except (TypeError, AttributeError):
                return False

        return evaluate

    def _parse_and(self) -> Callable[[Dict[str, Any]], bool]:
        left = self._parse_primary()

        while self._current_token() and self._current_token().lower() == 'and':
            self._consume_token()
            right = self._parse_primary()
            left = lambda entity, l=left, r=right: l(entity) and r(entity)

        return left

    def _parse_or(self) -> Callable[[Dict[str, Any]], bool]:
        left = self._parse_and()

        while self._current_token() and self._current_token().lower() == 'or':
            self._consume_token()
            right = self._parse_and()
            left = lambda entity, l=left, r=right: l(entity) or r(entity)

        return left

    def parse(self) -> Callable[[Dict[str, Any]], bool]:
        """
        Parse the complete filter expression.

        Returns:
            Evaluation function that takes entity dict and returns bool
        """
        if not self.filter_expr:
            return lambda entity: True

        self.pos = 0
        result = self._parse_or()

        if self.pos < len(self.tokens):
            raise ODataParseError(f"Unexpected token: {self.tokens[self.pos]}")

        return result

    def evaluate(self, entity: Dict[str, Any]) -> bool:
        if self._parsed_func is None:
            self._parsed_func = self.parse()
        return self._parsed_func(entity)


class ODataQuery:
    """
    OData query parser for Table Storage queries.

    Supports $filter, $select, $top parameters.
    """

    SYSTEM_PROPERTIES = frozenset({'PartitionKey', 'RowKey', 'Timestamp'})

    def __init__(
        self,
        filter_expr: Optional[str] = None,
        select: Optional[str] = None,
        top: Optional[int] = None
    ):
        """
        Raises:
            ODataParseError: If the filter cannot be parsed
        """
        self.filter = ODataFilter(filter_expr) if filter_expr else None
        if self.filter is not None:
            self.filter._parsed_func = self.filter.parse()
        self.select_props = [p.strip() for p in select.split(',') if p.strip()] if select else None
        self.top = top

    def matches(self, entity: Dict[str, Any]) -> bool:
        if self.filter is None:
            return True
        return self.filter.evaluate(entity)

    def project(self, properties: Dict[str, Any]) -> Dict[str, Any]:
        """Keep only selected properties; system properties are always returned."""
        if self.select_props is None:
            return properties
        return {
            key: value for key, value in properties.items()
            if key in self.SYSTEM_PROPERTIES or key in self.select_props
        }
