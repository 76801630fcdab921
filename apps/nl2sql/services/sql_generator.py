"""
SQL candidate generator. Turns (query, context) into a SQL string; the safety gate decides what happens next.

When no model-backed generator is configured, PatternSQLGenerator is used (keyword patterns + KPI formulas).
Its output is untrusted like any other candidate.
"""

import logging
import os
import re
from typing import Protocol, runtime_checkable

from apps.nl2sql.services.context_builder import QueryContext
from apps.nl2sql.services.errors import GenerationError

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "sales"
DEFAULT_MEASURE = "amount"
AGGREGATE_LIMIT = 1000
BROWSE_LIMIT = 100

SUM_WORDS = ("sales", "revenue", "total")
COUNT_WORDS = ("count", "number", "how many")
AVG_WORDS = ("average", "avg", "mean")

NUMERIC_TYPES = ("int", "numeric", "decimal", "float", "double", "real", "money", "number")

_IDENT_RE = re.compile(r"[^A-Za-z0-9_]+")


@runtime_checkable
class SQLGenerator(Protocol):
    """Produces one candidate SQL string for a natural-language query."""

    def generate(self, query: str, context: QueryContext) -> str:
        ...


def _contains_any(text: str, words: tuple[str, ...]) -> bool:
    return any(w in text for w in words)


def _identifier(name: str) -> str:
    return _IDENT_RE.sub("_", name).strip("_").lower() or "value"


class PatternSQLGenerator:
    """Keyword-pattern generator over the retrieved context. Deterministic."""

    def generate(self, query: str, context: QueryContext) -> str:
        q = (query or "").strip().lower()
        if not q:
            raise GenerationError("cannot generate SQL for an empty query")

        kpi_sql = self._from_kpi(q, context)
        if kpi_sql:
            return kpi_sql

        table = self._primary_table(context)
        measure = self._measure_column(table, context)
        if _contains_any(q, SUM_WORDS):
            return f"SELECT SUM({measure}) AS total_{measure} FROM {table} LIMIT {AGGREGATE_LIMIT}"
        if _contains_any(q, COUNT_WORDS):
            return f"SELECT COUNT(*) AS total_count FROM {table} LIMIT {AGGREGATE_LIMIT}"
        if _contains_any(q, AVG_WORDS):
            return f"SELECT AVG({measure}) AS average_{measure} FROM {table} LIMIT {AGGREGATE_LIMIT}"
        return f"SELECT * FROM {table} LIMIT {BROWSE_LIMIT}"

    def _from_kpi(self, q: str, context: QueryContext) -> str | None:
        for kpi in context.kpis:
            formula = (kpi.formula or "").strip().rstrip(";").strip()
            if not formula:
                continue
            names = {kpi.name.lower(), kpi.name.lower().replace("_", " ")}
            if not any(n and n in q for n in names):
                continue
            if formula.upper().startswith("SELECT"):
                return f"{formula} LIMIT {AGGREGATE_LIMIT}"
            table = self._primary_table(context)
            return f"SELECT {formula} AS {_identifier(kpi.name)} FROM {table} LIMIT {AGGREGATE_LIMIT}"
        return None

    @staticmethod
    def _primary_table(context: QueryContext) -> str:
        names = context.table_names()
        return names[0] if names else DEFAULT_TABLE

    @staticmethod
    def _measure_column(table: str, context: QueryContext) -> str:
        for col in context.columns.get(table) or []:
            if col.name.lower() == DEFAULT_MEASURE:
                return col.name
        for col in context.columns.get(table) or []:
            if any(t in (col.type or "").lower() for t in NUMERIC_TYPES):
                return col.name
        return DEFAULT_MEASURE


_generator: SQLGenerator | None = None


def get_sql_generator(*, force_refresh: bool = False) -> SQLGenerator:
    """Return the active generator. Only the pattern generator ships; SQL_GENERATOR selects it explicitly."""
    global _generator
    if force_refresh:
        _generator = None
    if _generator is None:
        kind = (os.getenv("SQL_GENERATOR") or "pattern").strip().lower()
        if kind != "pattern":
            logger.warning("Unknown SQL_GENERATOR=%s; using pattern generator", kind)
        _generator = PatternSQLGenerator()
    return _generator
