from __future__ import annotations

import pytest

from sigma_mcp.errors import InvalidQueryError
from sigma_mcp.models import AnalyticsRecord
from sigma_mcp.query import SimpleQueryEngine

RECORDS = [
    AnalyticsRecord(opens=5, users=2, document_name="Sales Dashboard", document_type="workbook"),
    AnalyticsRecord(opens=40, users=9, document_name="Ops Report", document_type="workbook",
                    last_published_on="2024-04-01"),
    AnalyticsRecord(opens=12, users=9, document_name="Orders", document_type="dataset"),
    AnalyticsRecord(opens=0, users=1, document_name="Scratch", document_type="workbook",
                    last_published_on="2024-05-01"),
]


@pytest.fixture
def engine() -> SimpleQueryEngine:
    return SimpleQueryEngine()


def _names(records) -> list[str]:
    return [r.document_name for r in records]


def test_empty_expression_returns_all_records(engine: SimpleQueryEngine):
    assert engine.execute(RECORDS, "") == RECORDS
    assert engine.execute(RECORDS, "   ") == RECORDS


def test_where_with_and(engine: SimpleQueryEngine):
    result = engine.execute(RECORDS, "WHERE opens > 4 AND document_type = 'workbook'")
    assert _names(result) == ["Sales Dashboard", "Ops Report"]


def test_keywords_are_case_insensitive(engine: SimpleQueryEngine):
    result = engine.execute(RECORDS, "where opens >= 12 order by opens asc limit 5")
    assert _names(result) == ["Orders", "Ops Report"]


def test_contains_is_case_insensitive(engine: SimpleQueryEngine):
    result = engine.execute(RECORDS, "WHERE document_name CONTAINS 'REPORT'")
    assert _names(result) == ["Ops Report"]


def test_order_by_multiple_keys_and_limit(engine: SimpleQueryEngine):
    result = engine.execute(RECORDS, "ORDER BY users DESC, opens ASC LIMIT 3")
    assert _names(result) == ["Orders", "Ops Report", "Sales Dashboard"]


def test_missing_values_sort_last(engine: SimpleQueryEngine):
    ascending = engine.execute(RECORDS, "ORDER BY last_published_on ASC")
    descending = engine.execute(RECORDS, "ORDER BY last_published_on DESC")

    assert _names(ascending)[:2] == ["Ops Report", "Scratch"]
    assert _names(descending)[:2] == ["Scratch", "Ops Report"]
    assert set(_names(ascending)[2:]) == set(_names(descending)[2:]) == {"Sales Dashboard", "Orders"}


def test_not_equal_matches_missing_values(engine: SimpleQueryEngine):
    result = engine.execute(RECORDS, "WHERE last_published_on != '2024-05-01'")
    assert _names(result) == ["Sales Dashboard", "Ops Report", "Orders"]


def test_limit_zero(engine: SimpleQueryEngine):
    assert engine.execute(RECORDS, "LIMIT 0") == []


def test_quoted_strings_support_escapes(engine: SimpleQueryEngine):
    records = [AnalyticsRecord(document_name="Ana's Report")]
    assert engine.execute(records, r"WHERE document_name = 'Ana\'s Report'") == records


@pytest.mark.parametrize(
    "expression",
    [
        "WHERE nonexistent = 1",
        "WHERE opens ~ 3",
        "WHERE opens > 'many'",
        "WHERE document_name = 5",
        "WHERE opens >",
        "ORDER opens",
        "ORDER BY missing_field",
        "LIMIT -1",
        "LIMIT 2.5",
        "LIMIT 3 extra",
        "opens > 3",
        "WHERE opens > 3 OR users > 1",
    ],
)
def test_malformed_expressions_raise(engine: SimpleQueryEngine, expression: str):
    with pytest.raises(InvalidQueryError):
        engine.execute(RECORDS, expression)


def test_non_string_expression_raises(engine: SimpleQueryEngine):
    with pytest.raises(InvalidQueryError):
        engine.execute(RECORDS, None)  # type: ignore[arg-type]


def test_custom_schema():
    class Row:
        def __init__(self, name: str, size: int):
            self.name = name
            self.size = size

    engine = SimpleQueryEngine(fields=["name", "size"], numeric_fields=["size"])
    rows = [Row("a", 3), Row("b", 1), Row("c", 2)]

    assert [r.name for r in engine.execute(rows, "WHERE size < 3 ORDER BY size")] == ["b", "c"]
