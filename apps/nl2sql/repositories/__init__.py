"""Repository layer: owner-scoped queries and helpers."""

from apps.nl2sql.repositories.owner_filters import (
    live_where,
    owner_where,
    select_data_source_for_owner,
    select_glossary_for_owner,
    select_kpi_for_owner,
    select_query_for_owner,
)

__all__ = [
    "live_where",
    "owner_where",
    "select_data_source_for_owner",
    "select_glossary_for_owner",
    "select_kpi_for_owner",
    "select_query_for_owner",
]
