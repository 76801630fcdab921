"""Owner-scoped SQL helpers. All user-facing queries MUST use these.

Provides:
  - owner_where(model, user_id): WHERE model.user_id == user_id
  - live_where(model): WHERE model.deleted_at IS NULL (tombstones are invisible)
  - select_*_for_owner(user_id): Select with owner + live filters applied
"""

from sqlalchemy import BinaryExpression, Select, select

from apps.nl2sql.models.data_source import DataSource
from apps.nl2sql.models.definitions import BusinessGlossary, KPIDefinition
from apps.nl2sql.models.nl2sql_query import NL2SQLQuery


def owner_where(model: type, user_id: str) -> BinaryExpression[bool]:
    """Return WHERE clause: model.user_id == user_id."""
    col = getattr(model, "user_id", None)
    if col is None:
        raise ValueError(f"Model {model.__name__} has no user_id column")
    return col == user_id


def live_where(model: type) -> BinaryExpression[bool]:
    """Return WHERE clause: model.deleted_at IS NULL."""
    col = getattr(model, "deleted_at", None)
    if col is None:
        raise ValueError(f"Model {model.__name__} has no deleted_at column")
    return col.is_(None)


def select_data_source_for_owner(user_id: str) -> Select[tuple[DataSource]]:
    return select(DataSource).where(owner_where(DataSource, user_id), live_where(DataSource))


def select_query_for_owner(user_id: str) -> Select[tuple[NL2SQLQuery]]:
    return select(NL2SQLQuery).where(owner_where(NL2SQLQuery, user_id), live_where(NL2SQLQuery))


def select_kpi_for_owner(user_id: str) -> Select[tuple[KPIDefinition]]:
    return select(KPIDefinition).where(owner_where(KPIDefinition, user_id), live_where(KPIDefinition))


def select_glossary_for_owner(user_id: str) -> Select[tuple[BusinessGlossary]]:
    return select(BusinessGlossary).where(owner_where(BusinessGlossary, user_id), live_where(BusinessGlossary))
