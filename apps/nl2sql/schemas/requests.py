"""Request schemas for API endpoints. user_id is never accepted in payload."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NL2SQLRequest(BaseModel):
    """Request body for POST /nl2sql/convert."""

    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., description="Natural-language analytics question")
    data_source_id: int = Field(..., gt=0, description="Target data source")
    context: dict[str, Any] | None = Field(None, description="Optional caller context snapshot")
    query_type: str | None = Field(None, description="analytics | report | explore")


class QueryExecutionRequest(BaseModel):
    """Request body for POST /nl2sql/execute."""

    model_config = ConfigDict(extra="forbid")

    query_id: int = Field(..., gt=0)
    limit: int | None = Field(None, description="Row limit; default 1000, clamped to max")


class ValidateSQLRequest(BaseModel):
    """Request body for POST /nl2sql/validate. Stateless; nothing persisted."""

    model_config = ConfigDict(extra="forbid")

    sql: str


class SearchRequest(BaseModel):
    """Request body for POST /rag/search."""

    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., description="Search text")
    data_source_id: int = Field(0, ge=0, description="0 = global only; >0 = that source plus global")
    top_k: int | None = Field(None, description="Clamped to [1, 20]; default 5")
    element_types: list[str] | None = Field(None, description="table | column | kpi | glossary")


class KPIDefinitionRequest(BaseModel):
    """Request body for POST /rag/kpi. Stored for the caller and embedded at global scope."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=100)
    display_name: str | None = Field(None, max_length=200)
    description: str = Field(..., max_length=1000)
    formula: str = Field(..., description="SQL expression, e.g. SUM(amount)")
    category: str | None = Field(None, max_length=50)
    unit: str | None = Field(None, max_length=20)
    grain: str | None = Field(None, max_length=20)


class GlossaryTermRequest(BaseModel):
    """Request body for POST /rag/glossary."""

    model_config = ConfigDict(extra="forbid")

    term: str = Field(..., max_length=100)
    definition: str = Field(..., max_length=1000)
    synonyms: list[str] = Field(default_factory=list)
    category: str | None = Field(None, max_length=50)
    domain: str | None = Field(None, max_length=50)
