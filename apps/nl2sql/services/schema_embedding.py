"""Build embedding records for discovered tables, their columns, KPI definitions and glossary terms.

Tables/columns are scoped to (data_source_id, schema_id). KPIs and glossary terms are global
(data_source_id=0, schema_id=0) and replaced one element at a time.
"""

import logging
from typing import Any

from apps.nl2sql.models.data_source import DataSourceSchema
from apps.nl2sql.models.definitions import BusinessGlossary, KPIDefinition
from apps.nl2sql.models.schema_embedding import (
    ELEMENT_COLUMN,
    ELEMENT_GLOSSARY,
    ELEMENT_KPI,
    ELEMENT_TABLE,
)
from apps.nl2sql.services.embedding_provider import EmbeddingProvider, embed_text
from apps.nl2sql.services.errors import EmbeddingError
from apps.nl2sql.services.similarity import GLOBAL_SCOPE, EmbeddingRecord, SimilarityIndex

logger = logging.getLogger(__name__)


def build_table_content(schema: DataSourceSchema) -> str:
    columns = list(schema.columns or [])
    lines = [f"Table: {schema.name}" + (f" ({schema.display_name})" if schema.display_name else "")]
    if schema.description:
        lines.append(f"Description: {schema.description}")
    lines.append(f"Columns: {len(columns)}")
    lines.append(f"Row count: {schema.row_count or 0}")
    lines.append("Column details:")
    for col in columns:
        line = f"- {col.get('name', '')} ({col.get('type', '')})"
        if col.get("description"):
            line += f": {col['description']}"
        lines.append(line)
    return "\n".join(lines)


def build_column_content(table_name: str, column: dict[str, Any]) -> str:
    lines = [f"Column: {table_name}.{column.get('name', '')}", f"Type: {column.get('type', '')}"]
    if column.get("description"):
        lines.append(f"Description: {column['description']}")
    if column.get("primary_key"):
        lines.append("Primary Key: true")
    if column.get("nullable") is False:
        lines.append("Nullable: false")
    samples = column.get("sample_values") or []
    if samples:
        lines.append("Sample values: " + ", ".join(str(v) for v in samples[:5]))
    return "\n".join(lines)


def build_kpi_content(kpi: KPIDefinition) -> str:
    lines = [f"KPI: {kpi.name}" + (f" ({kpi.display_name})" if kpi.display_name else "")]
    if kpi.description:
        lines.append(f"Description: {kpi.description}")
    lines.append(f"Formula: {kpi.formula}")
    if kpi.category:
        lines.append(f"Category: {kpi.category}")
    if kpi.unit:
        lines.append(f"Unit: {kpi.unit}")
    if kpi.grain:
        lines.append(f"Grain: {kpi.grain}")
    return "\n".join(lines)


def build_glossary_content(term: BusinessGlossary) -> str:
    lines = [f"Term: {term.term}", f"Definition: {term.definition}"]
    if term.category:
        lines.append(f"Category: {term.category}")
    if term.domain:
        lines.append(f"Domain: {term.domain}")
    if term.synonyms:
        lines.append("Synonyms: " + ", ".join(term.synonyms))
    return "\n".join(lines)


def embed_schema(
    data_source_id: int,
    schema: DataSourceSchema,
    provider: EmbeddingProvider | None = None,
) -> list[EmbeddingRecord]:
    """
    Records for one table and its columns. Table embedding failure raises EmbeddingError;
    a column that fails to embed is logged and skipped.
    """
    table_content = build_table_content(schema)
    records = [
        EmbeddingRecord(
            data_source_id=data_source_id,
            schema_id=schema.id,
            element_type=ELEMENT_TABLE,
            element_name=schema.name,
            content=table_content,
            vector=embed_text(table_content, provider),
            metadata={
                "display_name": schema.display_name or "",
                "description": schema.description or "",
                "row_count": schema.row_count or 0,
            },
        )
    ]
    for col in schema.columns or []:
        content = build_column_content(schema.name, col)
        try:
            vector = embed_text(content, provider)
        except EmbeddingError as e:
            logger.warning("Skipping column %s.%s: %s", schema.name, col.get("name"), e)
            continue
        records.append(
            EmbeddingRecord(
                data_source_id=data_source_id,
                schema_id=schema.id,
                element_type=ELEMENT_COLUMN,
                element_name=f"{schema.name}.{col.get('name', '')}",
                content=content,
                vector=vector,
                metadata={
                    "table": schema.name,
                    "column": col.get("name", ""),
                    "type": col.get("type", ""),
                    "nullable": bool(col.get("nullable", True)),
                    "primary_key": bool(col.get("primary_key", False)),
                },
            )
        )
    return records


def embed_kpi_definition(
    index: SimilarityIndex,
    kpi: KPIDefinition,
    provider: EmbeddingProvider | None = None,
) -> EmbeddingRecord:
    content = build_kpi_content(kpi)
    record = EmbeddingRecord(
        data_source_id=GLOBAL_SCOPE,
        schema_id=0,
        element_type=ELEMENT_KPI,
        element_name=kpi.name,
        content=content,
        vector=embed_text(content, provider),
        metadata={
            "description": kpi.description or "",
            "formula": kpi.formula,
            "category": kpi.category or "",
            "unit": kpi.unit or "",
            "grain": kpi.grain or "",
            "user_id": kpi.user_id,
        },
    )
    index.replace_definition(record)
    return record


def embed_glossary_term(
    index: SimilarityIndex,
    term: BusinessGlossary,
    provider: EmbeddingProvider | None = None,
) -> EmbeddingRecord:
    content = build_glossary_content(term)
    record = EmbeddingRecord(
        data_source_id=GLOBAL_SCOPE,
        schema_id=0,
        element_type=ELEMENT_GLOSSARY,
        element_name=term.term,
        content=content,
        vector=embed_text(content, provider),
        metadata={
            "definition": term.definition,
            "category": term.category or "",
            "domain": term.domain or "",
            "user_id": term.user_id,
        },
    )
    index.replace_definition(record)
    return record
