"""Schema retrieval endpoints: similarity search, context and prompt preview, embedding sync and deletion,
available schemas, KPI and glossary definitions."""

from fastapi import APIRouter, Query

from apps.nl2sql.schemas.requests import GlossaryTermRequest, KPIDefinitionRequest, SearchRequest
from apps.nl2sql.schemas.responses import (
    AvailableSchemasResponse,
    ContextResponse,
    EmbeddedDefinitionResponse,
    EmbeddingsDeletedResponse,
    PromptResponse,
    SearchResponse,
    SyncReport,
    SyncStatusListResponse,
    SyncStatusResponse,
    SyncSweepResponse,
)
from apps.nl2sql.services.orchestrator import get_nl2sql_service
from apps.nl2sql.services.user_context import UserId

router = APIRouter()


@router.post("/search", response_model=SearchResponse)
def search(body: SearchRequest, user_id: UserId) -> SearchResponse:
    """Top-k schema elements and definitions for the text. data_source_id=0 searches global definitions only."""
    return get_nl2sql_service().search_similar(
        user_id,
        body.query,
        data_source_id=body.data_source_id,
        top_k=body.top_k,
        element_types=body.element_types,
    )


@router.get("/nl2sql-context", response_model=ContextResponse)
def nl2sql_context(
    user_id: UserId,
    query: str = Query(..., description="Natural-language question"),
    data_source_id: int = Query(..., gt=0),
) -> ContextResponse:
    return get_nl2sql_service().build_query_context(user_id, query, data_source_id)


@router.get("/nl2sql-prompt", response_model=PromptResponse)
def nl2sql_prompt(
    user_id: UserId,
    query: str = Query(..., description="Natural-language question"),
    data_source_id: int = Query(..., gt=0),
) -> PromptResponse:
    return get_nl2sql_service().build_query_prompt(user_id, query, data_source_id)


@router.post("/sync", response_model=SyncSweepResponse)
def sync_all(
    user_id: UserId,
    force: bool = Query(False, description="Re-embed even when embeddings are current"),
) -> SyncSweepResponse:
    """Sync every active data source the caller owns."""
    return get_nl2sql_service().sync_all_schema_embeddings(user_id, force=force)


@router.get("/sync", response_model=SyncStatusListResponse)
def sync_status_all(user_id: UserId) -> SyncStatusListResponse:
    return get_nl2sql_service().get_all_sync_status(user_id)


@router.post("/sync/{data_source_id}", response_model=SyncReport)
def sync(
    data_source_id: int,
    user_id: UserId,
    force: bool = Query(False, description="Re-embed even when embeddings are current"),
    discover: bool = Query(False, description="Read tables from the live source before embedding"),
) -> SyncReport:
    return get_nl2sql_service().sync_schema_embeddings(user_id, data_source_id, force=force, discover=discover)


@router.get("/sync/{data_source_id}", response_model=SyncStatusResponse)
def sync_status(data_source_id: int, user_id: UserId) -> SyncStatusResponse:
    return get_nl2sql_service().get_sync_status(user_id, data_source_id)


@router.get("/schemas/{data_source_id}", response_model=AvailableSchemasResponse)
def available_schemas(data_source_id: int, user_id: UserId) -> AvailableSchemasResponse:
    return get_nl2sql_service().get_available_schemas(user_id, data_source_id)


@router.delete("/embeddings/{data_source_id}", response_model=EmbeddingsDeletedResponse)
def delete_embeddings(
    data_source_id: int,
    user_id: UserId,
    schema_id: int | None = Query(None, gt=0, description="Only this schema's embeddings"),
) -> EmbeddingsDeletedResponse:
    return get_nl2sql_service().delete_embeddings(user_id, data_source_id, schema_id)


@router.post("/kpi", response_model=EmbeddedDefinitionResponse, status_code=201)
def create_kpi(body: KPIDefinitionRequest, user_id: UserId) -> EmbeddedDefinitionResponse:
    """Store a KPI definition and embed it for context retrieval."""
    return get_nl2sql_service().create_kpi(user_id, body.model_dump())


@router.post("/glossary", response_model=EmbeddedDefinitionResponse, status_code=201)
def create_glossary_term(body: GlossaryTermRequest, user_id: UserId) -> EmbeddedDefinitionResponse:
    return get_nl2sql_service().create_glossary_term(user_id, body.model_dump())


@router.post("/kpis/{kpi_id}/embed", response_model=EmbeddedDefinitionResponse)
def embed_kpi(kpi_id: int, user_id: UserId) -> EmbeddedDefinitionResponse:
    return get_nl2sql_service().embed_kpi(user_id, kpi_id)


@router.post("/glossary/{term_id}/embed", response_model=EmbeddedDefinitionResponse)
def embed_glossary(term_id: int, user_id: UserId) -> EmbeddedDefinitionResponse:
    return get_nl2sql_service().embed_glossary(user_id, term_id)
