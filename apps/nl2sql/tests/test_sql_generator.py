"""Pattern generator: KPI formulas first, then keyword patterns over the first context table."""

import pytest

from apps.nl2sql.services.context_builder import ColumnContext, KPIContext, QueryContext, TableContext
from apps.nl2sql.services.errors import GenerationError
from apps.nl2sql.services.sql_gate import SQLSafetyGate
from apps.nl2sql.services.sql_generator import PatternSQLGenerator, SQLGenerator, get_sql_generator


def _ctx(query: str = "q", tables=(), columns=None, kpis=()) -> QueryContext:
    return QueryContext(
        query=query,
        data_source_id=1,
        tables={t: TableContext(name=t, description="", score=1.0) for t in tables},
        columns=columns or {},
        kpis=list(kpis),
    )


def test_is_a_generator() -> None:
    assert isinstance(PatternSQLGenerator(), SQLGenerator)
    assert isinstance(get_sql_generator(force_refresh=True), PatternSQLGenerator)


@pytest.mark.parametrize(
    "query,expected",
    [
        ("total revenue last month", "SELECT SUM(amount) AS total_amount FROM sales LIMIT 1000"),
        ("how many customers", "SELECT COUNT(*) AS total_count FROM sales LIMIT 1000"),
        ("average basket", "SELECT AVG(amount) AS average_amount FROM sales LIMIT 1000"),
        ("show me everything", "SELECT * FROM sales LIMIT 100"),
    ],
)
def test_patterns_without_context(query, expected) -> None:
    assert PatternSQLGenerator().generate(query, _ctx(query)) == expected


def test_uses_first_context_table_and_numeric_column() -> None:
    ctx = _ctx(
        tables=("orders",),
        columns={"orders": [ColumnContext("id", "text", "", 1.0), ColumnContext("price", "numeric(10,2)", "", 0.9)]},
    )
    assert PatternSQLGenerator().generate("average order", ctx) == (
        "SELECT AVG(price) AS average_price FROM orders LIMIT 1000"
    )


def test_matching_kpi_select_formula_is_used() -> None:
    kpi = KPIContext("gross_margin", "", "SELECT SUM(revenue - cost) FROM orders", 0.9)
    sql = PatternSQLGenerator().generate("what is our gross margin", _ctx(kpis=[kpi]))
    assert sql == "SELECT SUM(revenue - cost) FROM orders LIMIT 1000"


def test_matching_kpi_expression_formula_is_wrapped() -> None:
    kpi = KPIContext("arpu", "", "SUM(amount) / COUNT(DISTINCT customer_id)", 0.9)
    sql = PatternSQLGenerator().generate("ARPU by month", _ctx(tables=("sales",), kpis=[kpi]))
    assert sql == "SELECT SUM(amount) / COUNT(DISTINCT customer_id) AS arpu FROM sales LIMIT 1000"


def test_kpi_without_name_match_is_ignored() -> None:
    kpi = KPIContext("churn_rate", "", "SELECT 1", 0.9)
    assert PatternSQLGenerator().generate("list products", _ctx(kpis=[kpi])) == "SELECT * FROM sales LIMIT 100"


def test_empty_query_raises() -> None:
    with pytest.raises(GenerationError):
        PatternSQLGenerator().generate("  ", _ctx())


@pytest.mark.parametrize("query", ["total sales", "how many rows", "mean amount", "anything"])
def test_pattern_output_passes_gate(query) -> None:
    gate = SQLSafetyGate()
    decision = gate.validate(PatternSQLGenerator().generate(query, _ctx(query)))
    assert decision.error is None
    assert gate.is_safe(decision.result)
