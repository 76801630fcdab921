"""Repository layer. User-facing functions take user_id as first argument; guard raises if None/empty.

RULE: Repo is the ONLY place allowed to run DB reads/writes (session.execute, get_db).
All user-facing queries MUST use owner_filters (select_*_for_owner / owner_where).
Tombstoned rows (deleted_at set) are never returned.

GUARD: Every user-facing function MUST call require_user_id(user_id) before any DB access.
System functions (embedding index, sync sweep) are keyed by data_source_id only.
"""

from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import case, func, literal, select, update

from apps.nl2sql.db import get_db
from apps.nl2sql.models.data_source import DataSource, DataSourceSchema
from apps.nl2sql.models.definitions import BusinessGlossary, KPIDefinition
from apps.nl2sql.models.nl2sql_query import NL2SQLQuery, QueryResult
from apps.nl2sql.models.schema_embedding import SchemaEmbedding
from apps.nl2sql.repositories.owner_filters import (
    live_where,
    select_data_source_for_owner,
    select_glossary_for_owner,
    select_kpi_for_owner,
    select_query_for_owner,
)
from apps.nl2sql.services.owner_guard import UserRequiredError, require_user_id
from apps.nl2sql.services.similarity import EmbeddingRecord

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_record(row: SchemaEmbedding) -> EmbeddingRecord:
    return EmbeddingRecord(
        id=row.id,
        data_source_id=row.data_source_id,
        schema_id=row.schema_id,
        element_type=row.element_type,
        element_name=row.element_name,
        content=row.content,
        vector=[float(x) for x in row.embedding],
        metadata=dict(row.meta or {}),
    )


def _to_row(record: EmbeddingRecord) -> SchemaEmbedding:
    return SchemaEmbedding(
        data_source_id=record.data_source_id,
        schema_id=record.schema_id,
        element_type=record.element_type,
        element_name=record.element_name,
        content=record.content,
        embedding=list(record.vector),
        meta=dict(record.metadata or {}),
    )


# ---------------------------------------------------------------------------
# Embeddings (system scope)
# ---------------------------------------------------------------------------


def replace_embeddings(data_source_id: int, schema_id: int, records: Sequence[EmbeddingRecord]) -> int:
    """Tombstone live rows for (data_source_id, schema_id) and insert records, in one transaction."""
    with get_db() as session:
        session.execute(
            update(SchemaEmbedding)
            .where(
                SchemaEmbedding.data_source_id == data_source_id,
                SchemaEmbedding.schema_id == schema_id,
                live_where(SchemaEmbedding),
            )
            .values(deleted_at=_now())
        )
        session.add_all([_to_row(r) for r in records])
    return len(records)


def replace_definition_embedding(record: EmbeddingRecord) -> None:
    """Tombstone the live row for (data_source_id, element_type, element_name) and insert record."""
    with get_db() as session:
        session.execute(
            update(SchemaEmbedding)
            .where(
                SchemaEmbedding.data_source_id == record.data_source_id,
                SchemaEmbedding.element_type == record.element_type,
                SchemaEmbedding.element_name == record.element_name,
                live_where(SchemaEmbedding),
            )
            .values(deleted_at=_now())
        )
        session.add(_to_row(record))


def soft_delete_embeddings(data_source_id: int, schema_id: int | None = None) -> int:
    stmt = update(SchemaEmbedding).where(
        SchemaEmbedding.data_source_id == data_source_id, live_where(SchemaEmbedding)
    )
    if schema_id is not None:
        stmt = stmt.where(SchemaEmbedding.schema_id == schema_id)
    with get_db() as session:
        res = session.execute(stmt.values(deleted_at=_now()))
        return res.rowcount or 0


def replace_source_embeddings(data_source_id: int, records: Sequence[EmbeddingRecord]) -> int:
    """Tombstone every live row of the data source and insert records, in one transaction."""
    with get_db() as session:
        session.execute(
            update(SchemaEmbedding)
            .where(SchemaEmbedding.data_source_id == data_source_id, live_where(SchemaEmbedding))
            .values(deleted_at=_now())
        )
        session.add_all([_to_row(r) for r in records])
    return len(records)


def fetch_embeddings(data_source_id: int, element_types: Sequence[str] | None = None) -> list[EmbeddingRecord]:
    """Live embeddings of exactly one data source (and element types), ordered by id."""
    stmt = select(SchemaEmbedding).where(
        SchemaEmbedding.data_source_id == data_source_id,
        live_where(SchemaEmbedding),
    )
    if element_types:
        stmt = stmt.where(SchemaEmbedding.element_type.in_(list(element_types)))
    with get_db() as session:
        rows = session.execute(stmt.order_by(SchemaEmbedding.id)).scalars().all()
        return [_to_record(r) for r in rows]


def search_embeddings(
    data_source_ids: Sequence[int],
    element_types: Sequence[str] | None,
    query_vector: Sequence[float] | None,
    k: int,
) -> list[tuple[EmbeddingRecord, float]]:
    """
    Top-k live embeddings by pgvector cosine distance, ties by id. Returns (record, 1 - distance).
    NaN distances (zero-magnitude stored vectors) score 0.0. query_vector=None: id order, score 0.0.
    """
    where = [SchemaEmbedding.data_source_id.in_(list(data_source_ids)), live_where(SchemaEmbedding)]
    if element_types:
        where.append(SchemaEmbedding.element_type.in_(list(element_types)))

    if query_vector is None:
        stmt = select(SchemaEmbedding, literal(0.0).label("score")).where(*where).order_by(SchemaEmbedding.id)
    else:
        distance = SchemaEmbedding.embedding.cosine_distance(list(query_vector))
        score = case((distance == literal(float("nan")), 0.0), else_=1.0 - distance)
        stmt = (
            select(SchemaEmbedding, score.label("score"))
            .where(*where)
            .order_by(distance, SchemaEmbedding.id)
        )
    with get_db() as session:
        rows = session.execute(stmt.limit(k)).all()
        return [(_to_record(row), float(s)) for row, s in rows]


def count_embeddings(data_source_id: int) -> int:
    stmt = select(func.count(SchemaEmbedding.id)).where(
        SchemaEmbedding.data_source_id == data_source_id, live_where(SchemaEmbedding)
    )
    with get_db() as session:
        return int(session.execute(stmt).scalar() or 0)


def latest_embedding_update(data_source_id: int) -> datetime | None:
    stmt = select(func.max(SchemaEmbedding.updated_at)).where(
        SchemaEmbedding.data_source_id == data_source_id, live_where(SchemaEmbedding)
    )
    with get_db() as session:
        return session.execute(stmt).scalar()


# ---------------------------------------------------------------------------
# Data sources and schemas
# ---------------------------------------------------------------------------


def get_data_source_for_owner(user_id: str | None, data_source_id: int) -> DataSource | None:
    """Return the data source if it exists and belongs to user_id; else None."""
    user_id = require_user_id(user_id)
    stmt = select_data_source_for_owner(user_id).where(DataSource.id == data_source_id)
    with get_db() as session:
        return session.execute(stmt).scalar_one_or_none()


def create_data_source(
    user_id: str | None,
    name: str,
    kind: str,
    config: dict[str, Any] | None = None,
    status: str = "active",
) -> DataSource:
    """Register a data source owned by user_id."""
    user_id = require_user_id(user_id)
    with get_db() as session:
        ds = DataSource(
            user_id=user_id,
            name=name,
            type=kind,
            status=status,
            config=dict(config or {}),
            is_active=True,
        )
        session.add(ds)
        session.flush()
        return ds


def get_data_source(data_source_id: int) -> DataSource | None:
    stmt = select(DataSource).where(DataSource.id == data_source_id, live_where(DataSource))
    with get_db() as session:
        return session.execute(stmt).scalar_one_or_none()


def list_active_data_sources(data_source_ids: Sequence[int] | None = None) -> list[DataSource]:
    stmt = select(DataSource).where(
        DataSource.is_active.is_(True), DataSource.status == "active", live_where(DataSource)
    )
    if data_source_ids:
        stmt = stmt.where(DataSource.id.in_(list(data_source_ids)))
    with get_db() as session:
        return list(session.execute(stmt.order_by(DataSource.id)).scalars().all())


def list_data_sources_for_owner(user_id: str | None, active_only: bool = True) -> list[DataSource]:
    """The user's live data sources in id order; active_only keeps status=active and is_active."""
    user_id = require_user_id(user_id)
    stmt = select_data_source_for_owner(user_id)
    if active_only:
        stmt = stmt.where(DataSource.is_active.is_(True), DataSource.status == "active")
    with get_db() as session:
        return list(session.execute(stmt.order_by(DataSource.id)).scalars().all())


def get_data_source_names(user_id: str | None, data_source_ids: Sequence[int]) -> dict[int, str]:
    """Display names for the user's data sources, resolved at read time."""
    user_id = require_user_id(user_id)
    if not data_source_ids:
        return {}
    stmt = (
        select_data_source_for_owner(user_id)
        .where(DataSource.id.in_(list(set(data_source_ids))))
        .with_only_columns(DataSource.id, DataSource.name)
    )
    with get_db() as session:
        return {row[0]: row[1] for row in session.execute(stmt).all()}


def mark_data_source_synced(data_source_id: int) -> None:
    with get_db() as session:
        session.execute(update(DataSource).where(DataSource.id == data_source_id).values(last_sync_at=_now()))


def set_data_source_status(data_source_id: int, status: str) -> None:
    with get_db() as session:
        session.execute(update(DataSource).where(DataSource.id == data_source_id).values(status=status))


def get_active_schemas(data_source_id: int) -> list[DataSourceSchema]:
    stmt = (
        select(DataSourceSchema)
        .where(
            DataSourceSchema.data_source_id == data_source_id,
            DataSourceSchema.is_active.is_(True),
            live_where(DataSourceSchema),
        )
        .order_by(DataSourceSchema.id)
    )
    with get_db() as session:
        return list(session.execute(stmt).scalars().all())


def latest_schema_update(data_source_id: int) -> datetime | None:
    stmt = select(func.max(DataSourceSchema.updated_at)).where(
        DataSourceSchema.data_source_id == data_source_id, live_where(DataSourceSchema)
    )
    with get_db() as session:
        return session.execute(stmt).scalar()


def replace_schemas(data_source_id: int, tables: Sequence[dict[str, Any]]) -> list[DataSourceSchema]:
    """Tombstone current schemas for the source and insert discovered tables. Each dict: name, columns, row_count."""
    with get_db() as session:
        session.execute(
            update(DataSourceSchema)
            .where(DataSourceSchema.data_source_id == data_source_id, live_where(DataSourceSchema))
            .values(deleted_at=_now())
        )
        objs = [
            DataSourceSchema(
                data_source_id=data_source_id,
                name=t["name"],
                display_name=t.get("display_name"),
                description=t.get("description"),
                columns=list(t.get("columns") or []),
                row_count=t.get("row_count"),
            )
            for t in tables
        ]
        session.add_all(objs)
        session.flush()
        return objs


# ---------------------------------------------------------------------------
# KPI definitions and glossary
# ---------------------------------------------------------------------------


def get_kpi_for_owner(user_id: str | None, kpi_id: int) -> KPIDefinition | None:
    user_id = require_user_id(user_id)
    stmt = select_kpi_for_owner(user_id).where(KPIDefinition.id == kpi_id)
    with get_db() as session:
        return session.execute(stmt).scalar_one_or_none()


def create_kpi_definition(user_id: str | None, fields: dict[str, Any]) -> KPIDefinition:
    """Insert an active KPI definition owned by user_id. fields: name, formula and optional columns."""
    user_id = require_user_id(user_id)
    with get_db() as session:
        kpi = KPIDefinition(user_id=user_id, is_active=True, **fields)
        session.add(kpi)
        session.flush()
        return kpi


def create_glossary_term(user_id: str | None, fields: dict[str, Any]) -> BusinessGlossary:
    user_id = require_user_id(user_id)
    with get_db() as session:
        term = BusinessGlossary(user_id=user_id, is_active=True, **fields)
        session.add(term)
        session.flush()
        return term


def get_glossary_term_for_owner(user_id: str | None, term_id: int) -> BusinessGlossary | None:
    user_id = require_user_id(user_id)
    stmt = select_glossary_for_owner(user_id).where(BusinessGlossary.id == term_id)
    with get_db() as session:
        return session.execute(stmt).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Query records and results
# ---------------------------------------------------------------------------


def create_query(
    user_id: str | None,
    data_source_id: int,
    nl_query: str,
    query_type: str,
    context: dict[str, Any] | None = None,
) -> NL2SQLQuery:
    """Insert a pending query record."""
    user_id = require_user_id(user_id)
    with get_db() as session:
        q = NL2SQLQuery(
            user_id=user_id,
            data_source_id=data_source_id,
            nl_query=nl_query,
            query_type=query_type,
            status="pending",
            can_execute=False,
            context=dict(context or {}),
            meta={},
        )
        session.add(q)
        session.flush()
        return q


def update_query(user_id: str | None, query_id: int, mutate: Callable[[NL2SQLQuery], T]) -> tuple[NL2SQLQuery, T]:
    """
    Load the user's query row FOR UPDATE, apply mutate(row), commit. Serializes status transitions.
    Raises LookupError if not found for this owner; exceptions from mutate roll back and propagate.
    """
    user_id = require_user_id(user_id)
    stmt = select_query_for_owner(user_id).where(NL2SQLQuery.id == query_id).with_for_update()
    with get_db() as session:
        q = session.execute(stmt).scalar_one_or_none()
        if q is None:
            raise LookupError(f"query {query_id} not found")
        out = mutate(q)
        session.flush()
        return q, out


def get_query_for_owner(user_id: str | None, query_id: int) -> NL2SQLQuery | None:
    user_id = require_user_id(user_id)
    stmt = select_query_for_owner(user_id).where(NL2SQLQuery.id == query_id)
    with get_db() as session:
        return session.execute(stmt).scalar_one_or_none()


def list_queries_for_owner(user_id: str | None, limit: int = 20, offset: int = 0) -> list[NL2SQLQuery]:
    """User's live queries, newest first."""
    user_id = require_user_id(user_id)
    stmt = (
        select_query_for_owner(user_id)
        .order_by(NL2SQLQuery.created_at.desc(), NL2SQLQuery.id.desc())
        .limit(limit)
        .offset(offset)
    )
    with get_db() as session:
        return list(session.execute(stmt).scalars().all())


def insert_query_result(
    query_id: int,
    columns: list[dict[str, Any]],
    data: list[dict[str, Any]],
    row_count: int,
) -> QueryResult:
    with get_db() as session:
        r = QueryResult(query_id=query_id, columns=columns, data=data, row_count=row_count)
        session.add(r)
        session.flush()
        return r


def get_latest_result(user_id: str | None, query_id: int) -> QueryResult | None:
    """Latest live result for a query owned by user_id."""
    user_id = require_user_id(user_id)
    owned = select_query_for_owner(user_id).where(NL2SQLQuery.id == query_id).with_only_columns(NL2SQLQuery.id)
    stmt = (
        select(QueryResult)
        .where(QueryResult.query_id.in_(owned.scalar_subquery()), live_where(QueryResult))
        .order_by(QueryResult.id.desc())
        .limit(1)
    )
    with get_db() as session:
        return session.execute(stmt).scalar_one_or_none()


def soft_delete_query_with_results(user_id: str | None, query_id: int) -> bool:
    """Tombstone result rows, then the query record, in one transaction. False if not owned/not found."""
    user_id = require_user_id(user_id)
    stmt = select_query_for_owner(user_id).where(NL2SQLQuery.id == query_id).with_for_update()
    with get_db() as session:
        q = session.execute(stmt).scalar_one_or_none()
        if q is None:
            return False
        now = _now()
        session.execute(
            update(QueryResult)
            .where(QueryResult.query_id == query_id, live_where(QueryResult))
            .values(deleted_at=now)
        )
        res = session.execute(
            update(NL2SQLQuery)
            .where(NL2SQLQuery.id == query_id, live_where(NL2SQLQuery))
            .values(deleted_at=now)
        )
        if (res.rowcount or 0) != 1:
            raise RuntimeError(f"query {query_id}: record delete affected {res.rowcount} rows")
        return True


__all__ = [
    "UserRequiredError",
    "count_embeddings",
    "create_data_source",
    "create_glossary_term",
    "create_kpi_definition",
    "create_query",
    "fetch_embeddings",
    "get_active_schemas",
    "get_data_source",
    "get_data_source_for_owner",
    "get_data_source_names",
    "get_glossary_term_for_owner",
    "get_kpi_for_owner",
    "get_latest_result",
    "get_query_for_owner",
    "insert_query_result",
    "latest_embedding_update",
    "latest_schema_update",
    "list_active_data_sources",
    "list_data_sources_for_owner",
    "list_queries_for_owner",
    "mark_data_source_synced",
    "replace_definition_embedding",
    "replace_embeddings",
    "replace_schemas",
    "replace_source_embeddings",
    "search_embeddings",
    "set_data_source_status",
    "soft_delete_embeddings",
    "soft_delete_query_with_results",
    "update_query",
]
