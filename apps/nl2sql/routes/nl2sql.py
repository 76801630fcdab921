"""NL2SQL endpoints: convert, execute, validate, history, query details, delete. User from auth middleware only.

Handlers are plain def: the service blocks on embeddings, DB and connectors, so FastAPI runs them in its threadpool.
"""

from fastapi import APIRouter, Query

from apps.nl2sql.schemas.requests import NL2SQLRequest, QueryExecutionRequest, ValidateSQLRequest
from apps.nl2sql.schemas.responses import (
    DeleteResponse,
    NL2SQLResponse,
    QueryDetailResponse,
    QueryExecutionResponse,
    QueryHistoryResponse,
    SQLValidationResult,
)
from apps.nl2sql.services.orchestrator import get_nl2sql_service
from apps.nl2sql.services.user_context import UserId

router = APIRouter()


@router.post("/convert", response_model=NL2SQLResponse)
def convert(body: NL2SQLRequest, user_id: UserId) -> NL2SQLResponse:
    """Generate SQL for a natural-language question against one data source and record it."""
    return get_nl2sql_service().convert_nl2sql(
        user_id,
        body.query,
        body.data_source_id,
        context=body.context,
        query_type=body.query_type,
    )


@router.post("/execute", response_model=QueryExecutionResponse)
def execute(body: QueryExecutionRequest, user_id: UserId) -> QueryExecutionResponse:
    """Run a previously converted query. Only gate-approved SQL reaches the data source."""
    return get_nl2sql_service().execute_query(user_id, body.query_id, limit=body.limit)


@router.post("/validate", response_model=SQLValidationResult)
def validate(body: ValidateSQLRequest, user_id: UserId) -> SQLValidationResult:
    return get_nl2sql_service().validate_sql(body.sql)


@router.get("/history", response_model=QueryHistoryResponse)
def history(
    user_id: UserId,
    limit: int | None = Query(None, description="Default 20, clamped to [1, 100]"),
    offset: int = Query(0),
) -> QueryHistoryResponse:
    return get_nl2sql_service().get_query_history(user_id, limit=limit, offset=offset)


@router.get("/queries/{query_id}", response_model=QueryDetailResponse)
def query_details(query_id: int, user_id: UserId) -> QueryDetailResponse:
    return get_nl2sql_service().get_query_details(user_id, query_id)


@router.delete("/queries/{query_id}", response_model=DeleteResponse)
def delete_query(query_id: int, user_id: UserId) -> DeleteResponse:
    """Soft-delete the query and its results."""
    return get_nl2sql_service().delete_query(user_id, query_id)
