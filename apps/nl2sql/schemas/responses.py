"""Response schemas for API endpoints. Contract-frozen: extra fields forbidden."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SQLValidationResult(BaseModel):
    """Outcome of the SQL safety gate. Attached to query metadata for audit."""

    model_config = ConfigDict(extra="forbid")

    is_valid: bool = False
    is_read_only: bool = False
    has_limit: bool = False
    estimated_cost: float = 0.0
    safety_score: float = Field(0.0, ge=0.0, le=1.0)
    violations: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class NL2SQLResponse(BaseModel):
    """Response for POST /nl2sql/convert."""

    model_config = ConfigDict(extra="forbid")

    query_id: int
    generated_sql: str
    validation: SQLValidationResult
    estimated_cost: float
    safety_score: float
    can_execute: bool
    status: str
    messages: list[str] = Field(default_factory=list)


class ColumnInfo(BaseModel):
    """Column metadata for tabular results and discovered schemas."""

    model_config = ConfigDict(extra="forbid")

    name: str
    type: str = ""
    nullable: bool = True
    primary_key: bool = False
    description: str = ""
    sample_values: list[Any] = Field(default_factory=list)


class QueryExecutionResponse(BaseModel):
    """Response for POST /nl2sql/execute. status=failed carries the upstream message."""

    model_config = ConfigDict(extra="forbid")

    query_id: int
    columns: list[ColumnInfo] = Field(default_factory=list)
    data: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: int = 0
    status: str
    message: str


class QueryHistoryItem(BaseModel):
    """One entry in GET /nl2sql/history. data_source_name resolved at read time."""

    model_config = ConfigDict(extra="forbid")

    query_id: int
    nl_query: str
    generated_sql: str | None = None
    status: str
    query_type: str
    can_execute: bool = False
    data_source_id: int
    data_source_name: str = ""
    execution_time_ms: int | None = None
    rows_returned: int | None = None
    error_message: str | None = None
    created_at: datetime | None = None


class QueryHistoryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    queries: list[QueryHistoryItem] = Field(default_factory=list)
    limit: int
    offset: int


class QueryDetailResponse(BaseModel):
    """Query record plus the latest stored result, if any."""

    model_config = ConfigDict(extra="forbid")

    query: QueryHistoryItem
    validation: SQLValidationResult | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    result: QueryExecutionResponse | None = None


class DeleteResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deleted: bool
    query_id: int


class SearchResultItem(BaseModel):
    """A single similarity search hit. score is cosine similarity in [-1, 1]."""

    model_config = ConfigDict(extra="forbid")

    element_type: str
    element_name: str
    content: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    """Response for POST /rag/search."""

    model_config = ConfigDict(extra="forbid")

    results: list[SearchResultItem] = Field(default_factory=list)
    query: str
    top_k: int


class SyncReport(BaseModel):
    """Outcome of a schema embedding sync for one data source."""

    model_config = ConfigDict(extra="forbid")

    data_source_id: int
    skipped: bool = False
    schemas_total: int = 0
    schemas_embedded: int = 0
    schemas_failed: list[str] = Field(default_factory=list)
    embeddings_created: int = 0


class SyncStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_source_id: int
    schema_count: int
    embedding_count: int
    last_sync_time: datetime | None = None
    need_sync: bool


class AvailableSchemasResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_source_id: int
    tables: list[SearchResultItem] = Field(default_factory=list)


class EmbeddedDefinitionResponse(BaseModel):
    """KPI or glossary term written to the global index scope."""

    model_config = ConfigDict(extra="forbid")

    id: int | None = None
    element_type: str
    element_name: str
    content: str


class SyncSweepResponse(BaseModel):
    """Sync of every active data source the user owns. failed maps data_source_id to error."""

    model_config = ConfigDict(extra="forbid")

    reports: list[SyncReport] = Field(default_factory=list)
    failed: dict[int, str] = Field(default_factory=dict)


class SyncStatusListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_sources: list[SyncStatusResponse] = Field(default_factory=list)


class ContextResponse(BaseModel):
    """Retrieved schema, KPI and glossary context for a question (GET /rag/nl2sql-context)."""

    model_config = ConfigDict(extra="forbid")

    query: str
    data_source_id: int
    context: dict[str, Any] = Field(default_factory=dict)


class PromptResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str
    prompt: str


class EmbeddingsDeletedResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_source_id: int
    schema_id: int | None = None
    deleted: int
