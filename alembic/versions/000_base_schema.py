"""Base schema: data_sources, data_source_schemas, kpi_definitions, business_glossaries,
nl2sql_queries, query_results, schema_embeddings (pgvector).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "000_base"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Embedding dimension (bge-small-en-v1.5 = 384)
EMBEDDING_DIM = 384


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # 1) data_sources (schemas and queries reference it)
    op.create_table(
        "data_sources",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("config", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        if_not_exists=True,
    )
    op.create_index("ix_data_sources_user", "data_sources", ["user_id", "id"], if_not_exists=True)

    # 2) data_source_schemas
    op.create_table(
        "data_source_schemas",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "data_source_id", sa.BigInteger(), sa.ForeignKey("data_sources.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("columns", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("row_count", sa.BigInteger(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        if_not_exists=True,
    )
    op.create_index(
        "ix_data_source_schemas_source", "data_source_schemas", ["data_source_id", "id"], if_not_exists=True
    )

    # 3) kpi_definitions, business_glossaries (embedded globally)
    op.create_table(
        "kpi_definitions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("formula", sa.Text(), nullable=False),
        sa.Column("category", sa.String(128), nullable=True),
        sa.Column("unit", sa.String(64), nullable=True),
        sa.Column("grain", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        if_not_exists=True,
    )
    op.create_index("ix_kpi_definitions_user", "kpi_definitions", ["user_id", "id"], if_not_exists=True)

    op.create_table(
        "business_glossaries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("term", sa.String(255), nullable=False),
        sa.Column("definition", sa.Text(), nullable=False),
        sa.Column("category", sa.String(128), nullable=True),
        sa.Column("domain", sa.String(128), nullable=True),
        sa.Column("synonyms", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        if_not_exists=True,
    )
    op.create_index("ix_business_glossaries_user", "business_glossaries", ["user_id", "id"], if_not_exists=True)

    # 4) nl2sql_queries, query_results
    op.create_table(
        "nl2sql_queries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("data_source_id", sa.BigInteger(), sa.ForeignKey("data_sources.id"), nullable=False),
        sa.Column("nl_query", sa.Text(), nullable=False),
        sa.Column("generated_sql", sa.Text(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("query_type", sa.String(32), nullable=False, server_default="analytics"),
        sa.Column("can_execute", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("context", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("rows_returned", sa.Integer(), nullable=True),
        *_timestamps(),
        if_not_exists=True,
    )
    op.create_index(
        "ix_nl2sql_queries_user_created",
        "nl2sql_queries",
        ["user_id", sa.text("created_at DESC")],
        if_not_exists=True,
    )

    op.create_table(
        "query_results",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("query_id", sa.BigInteger(), sa.ForeignKey("nl2sql_queries.id"), nullable=False),
        sa.Column("columns", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("data", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        if_not_exists=True,
    )
    op.create_index("ix_query_results_query", "query_results", ["query_id", "id"], if_not_exists=True)

    # 5) schema_embeddings (data_source_id=0 = global KPI/glossary)
    op.create_table(
        "schema_embeddings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("data_source_id", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("schema_id", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("element_type", sa.String(32), nullable=False),
        sa.Column("element_name", sa.String(512), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIM), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
        if_not_exists=True,
    )
    op.create_index(
        "ix_schema_embeddings_scope", "schema_embeddings", ["data_source_id", "schema_id"], if_not_exists=True
    )
    op.create_index(
        "ix_schema_embeddings_element",
        "schema_embeddings",
        ["data_source_id", "element_type", "element_name"],
        if_not_exists=True,
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_schema_embeddings_embedding_hnsw "
        "ON schema_embeddings USING hnsw (embedding vector_cosine_ops)"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_schema_embeddings_embedding_hnsw")
    op.drop_index("ix_schema_embeddings_element", table_name="schema_embeddings")
    op.drop_index("ix_schema_embeddings_scope", table_name="schema_embeddings")
    op.drop_table("schema_embeddings")
    op.drop_index("ix_query_results_query", table_name="query_results")
    op.drop_table("query_results")
    op.drop_index("ix_nl2sql_queries_user_created", table_name="nl2sql_queries")
    op.drop_table("nl2sql_queries")
    op.drop_index("ix_business_glossaries_user", table_name="business_glossaries")
    op.drop_table("business_glossaries")
    op.drop_index("ix_kpi_definitions_user", table_name="kpi_definitions")
    op.drop_table("kpi_definitions")
    op.drop_index("ix_data_source_schemas_source", table_name="data_source_schemas")
    op.drop_table("data_source_schemas")
    op.drop_index("ix_data_sources_user", table_name="data_sources")
    op.drop_table("data_sources")
