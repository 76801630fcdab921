"""schema_embeddings table. One row per embedded schema element, KPI or glossary term.

Keyed by (data_source_id, schema_id, element_type, element_name). data_source_id=0 means global.
Rows are never updated in place: re-sync tombstones (deleted_at) and inserts.
"""

from datetime import datetime
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import BigInteger, DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from apps.nl2sql.models.base import Base

# Embedding dimension (bge-small-en-v1.5 = 384)
EMBEDDING_DIM = 384

ELEMENT_TABLE = "table"
ELEMENT_COLUMN = "column"
ELEMENT_KPI = "kpi"
ELEMENT_GLOSSARY = "glossary"
ELEMENT_TYPES = (ELEMENT_TABLE, ELEMENT_COLUMN, ELEMENT_KPI, ELEMENT_GLOSSARY)


class SchemaEmbedding(Base):
    __tablename__ = "schema_embeddings"
    __table_args__ = (
        Index("ix_schema_embeddings_scope", "data_source_id", "schema_id"),
        Index("ix_schema_embeddings_element", "data_source_id", "element_type", "element_name"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    data_source_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    schema_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    element_type: Mapped[str] = mapped_column(String(32), nullable=False)
    element_name: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIM), nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
