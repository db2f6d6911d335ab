"""
Filter/sort/limit queries over analytics records.

Grammar (keywords are case-insensitive)::

    [WHERE cond (AND cond)*] [ORDER BY field [ASC|DESC] (, field [ASC|DESC])*] [LIMIT n]
    cond := field op literal
    op   := = | != | > | >= | < | <= | CONTAINS

Fields are AnalyticsRecord attribute names. Anything outside the grammar
or the schema raises InvalidQueryError rather than being ignored.
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import InvalidQueryError
from .export import NUMERIC_ANALYTICS_FIELDS
from .models import ANALYTICS_FIELDS, AnalyticsRecord

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>>=|<=|!=|=|>|<)
      | (?P<comma>,)
      | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
    )""",
    re.VERBOSE,
)

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}


class RecordQueryEngine(Protocol):
    def execute(self, records: Sequence[AnalyticsRecord], expression: str) -> list[AnalyticsRecord]: ...


@dataclass
class Condition:
    field: str
    op: str
    value: Any

    def matches(self, record: Any) -> bool:
        actual = getattr(record, self.field)
        if self.op == "contains":
            return actual is not None and str(self.value).lower() in str(actual).lower()
        if actual is None:
            return self.op == "!="
        return _COMPARATORS[self.op](actual, self.value)


@dataclass
class Query:
    conditions: list[Condition] = field(default_factory=list)
    order_by: list[tuple[str, bool]] = field(default_factory=list)
    limit: int | None = None


def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = expression.rstrip().rstrip(";")
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise InvalidQueryError(f"unexpected input at position {pos}: {text[pos:pos + 20]!r}")
        kind = match.lastgroup or ""
        tokens.append((kind, match.group(kind)))
        pos = match.end()
        if text[pos:].strip() == "":
            break
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]], fields: set[str], numeric_fields: set[str]):
        self._tokens = tokens
        self._pos = 0
        self._fields = fields
        self._numeric = numeric_fields

    def _peek(self) -> tuple[str, str] | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _next(self, what: str) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            raise InvalidQueryError(f"expected {what}, got end of query")
        self._pos += 1
        return token

    def _at_keyword(self, *words: str) -> bool:
        token = self._peek()
        return token is not None and token[0] == "word" and token[1].lower() in words

    def _expect_keyword(self, word: str) -> None:
        kind, value = self._next(word.upper())
        if kind != "word" or value.lower() != word:
            raise InvalidQueryError(f"expected {word.upper()}, got {value!r}")

    def _field(self) -> str:
        kind, value = self._next("a field name")
        if kind != "word" or value not in self._fields:
            raise InvalidQueryError(f"unknown field {value!r}")
        return value

    def _literal(self) -> tuple[str, Any]:
        kind, value = self._next("a value")
        if kind == "number":
            return kind, float(value) if "." in value else int(value)
        if kind == "string":
            body = value[1:-1]
            return kind, re.sub(r"\\(.)", r"\1", body)
        raise InvalidQueryError(f"expected a number or quoted string, got {value!r}")

    def _condition(self) -> Condition:
        name = self._field()
        kind, raw_op = self._next("an operator")
        if kind == "op":
            op = raw_op
        elif kind == "word" and raw_op.lower() == "contains":
            op = "contains"
        else:
            raise InvalidQueryError(f"unknown operator {raw_op!r}")

        literal_kind, value = self._literal()
        if op != "contains":
            if name in self._numeric and literal_kind != "number":
                raise InvalidQueryError(f"field {name!r} is numeric, got {value!r}")
            if name not in self._numeric and literal_kind != "string":
                raise InvalidQueryError(f"field {name!r} is text, value must be quoted")
        return Condition(name, op, value)

    def parse(self) -> Query:
        query = Query()
        if self._at_keyword("where"):
            self._pos += 1
            query.conditions.append(self._condition())
            while self._at_keyword("and"):
                self._pos += 1
                query.conditions.append(self._condition())

        if self._at_keyword("order"):
            self._pos += 1
            self._expect_keyword("by")
            while True:
                name = self._field()
                descending = False
                if self._at_keyword("asc", "desc"):
                    descending = self._next("a direction")[1].lower() == "desc"
                query.order_by.append((name, descending))
                token = self._peek()
                if token is None or token[0] != "comma":
                    break
                self._pos += 1

        if self._at_keyword("limit"):
            self._pos += 1
            kind, value = self._next("a limit")
            if kind != "number" or not value.isdigit():
                raise InvalidQueryError(f"LIMIT must be a non-negative integer, got {value!r}")
            query.limit = int(value)

        token = self._peek()
        if token is not None:
            raise InvalidQueryError(f"unexpected {token[1]!r}")
        return query


class SimpleQueryEngine:
    """Evaluates the grammar above against a fixed record schema."""

    def __init__(
        self,
        fields: Iterable[str] = ANALYTICS_FIELDS,
        numeric_fields: Iterable[str] = NUMERIC_ANALYTICS_FIELDS,
    ):
        self._fields = set(fields)
        self._numeric = set(numeric_fields)

    def parse(self, expression: str) -> Query:
        if not isinstance(expression, str):
            raise InvalidQueryError("query expression must be a string")
        if not expression.strip():
            return Query()
        return _Parser(_tokenize(expression), self._fields, self._numeric).parse()

    def _sort_key(self, name: str, descending: bool) -> Callable[[Any], tuple[bool, Any]]:
        default: Any = 0 if name in self._numeric else ""

        def key(record: Any) -> tuple[bool, Any]:
            value = getattr(record, name)
            # Missing values sort last in either direction.
            missing = value is None
            return (not missing if descending else missing, default if missing else value)

        return key

    def execute(self, records: Sequence[Any], expression: str) -> list[Any]:
        query = self.parse(expression)
        selected = [r for r in records if all(cond.matches(r) for cond in query.conditions)]

        # Stable sorts applied last key first give a multi-key ordering.
        for name, descending in reversed(query.order_by):
            selected.sort(key=self._sort_key(name, descending), reverse=descending)

        if query.limit is not None:
            selected = selected[: query.limit]
        return selected
