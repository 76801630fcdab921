"""Route contract tests: payload shapes, user from auth only, error-to-status mapping. Service is patched."""

from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from apps.nl2sql.main import app, status_for
from apps.nl2sql.schemas.responses import (
    DeleteResponse,
    NL2SQLResponse,
    QueryExecutionResponse,
    QueryHistoryResponse,
    SearchResponse,
    SearchResultItem,
    SQLValidationResult,
    SyncReport,
)
from apps.nl2sql.services.errors import (
    ConnectorError,
    DeadlineExceededError,
    EmbeddingError,
    InputError,
    NotFoundError,
    QueryDeletionError,
    QueryNotExecutableError,
    SQLGateError,
    SQLRejectedError,
    UnsupportedDataSourceError,
)
from apps.nl2sql.services.owner_guard import UserRequiredError

client = TestClient(app)
AUTH = {"Authorization": "Bearer user:u1"}
NL2SQL_SVC = "apps.nl2sql.routes.nl2sql.get_nl2sql_service"
RAG_SVC = "apps.nl2sql.routes.rag.get_nl2sql_service"

NL2SQL_RESPONSE_FIELDS = {
    "query_id",
    "generated_sql",
    "validation",
    "estimated_cost",
    "safety_score",
    "can_execute",
    "status",
    "messages",
}
VALIDATION_FIELDS = {"is_valid", "is_read_only", "has_limit", "estimated_cost", "safety_score", "violations", "warnings"}


def _validation(**kw) -> SQLValidationResult:
    base = dict(is_valid=True, is_read_only=True, has_limit=True, estimated_cost=1.0, safety_score=1.0)
    base.update(kw)
    return SQLValidationResult(**base)


def _svc(**methods) -> MagicMock:
    svc = MagicMock()
    for name, value in methods.items():
        if isinstance(value, Exception):
            getattr(svc, name).side_effect = value
        else:
            getattr(svc, name).return_value = value
    return svc


# ---------------------------------------------------------------------------
# /nl2sql
# ---------------------------------------------------------------------------


def test_convert_passes_user_from_auth() -> None:
    svc = _svc(
        convert_nl2sql=NL2SQLResponse(
            query_id=3,
            generated_sql="SELECT SUM(amount) AS total_amount FROM sales LIMIT 1000",
            validation=_validation(),
            estimated_cost=1.0,
            safety_score=1.0,
            can_execute=True,
            status="completed",
            messages=["SQL is ready to execute"],
        )
    )
    with patch(NL2SQL_SVC, return_value=svc):
        resp = client.post("/nl2sql/convert", json={"query": "total sales", "data_source_id": 5}, headers=AUTH)

    assert resp.status_code == 200
    data = resp.json()
    assert set(data) == NL2SQL_RESPONSE_FIELDS
    assert set(data["validation"]) == VALIDATION_FIELDS
    svc.convert_nl2sql.assert_called_once_with("u1", "total sales", 5, context=None, query_type=None)


def test_convert_rejects_user_id_in_payload() -> None:
    resp = client.post(
        "/nl2sql/convert",
        json={"query": "x", "data_source_id": 1, "user_id": "evil"},
        headers=AUTH,
    )
    assert resp.status_code == 422


def test_convert_requires_auth() -> None:
    resp = client.post("/nl2sql/convert", json={"query": "x", "data_source_id": 1})
    assert resp.status_code == 401


def test_execute_returns_rows() -> None:
    svc = _svc(
        execute_query=QueryExecutionResponse(
            query_id=3,
            columns=[{"name": "total", "type": "numeric"}],
            data=[{"total": 42.0}],
            row_count=1,
            execution_time_ms=12,
            status="completed",
            message="Query executed successfully",
        )
    )
    with patch(NL2SQL_SVC, return_value=svc):
        resp = client.post("/nl2sql/execute", json={"query_id": 3, "limit": 50}, headers=AUTH)

    assert resp.status_code == 200
    assert resp.json()["data"] == [{"total": 42.0}]
    svc.execute_query.assert_called_once_with("u1", 3, limit=50)


def test_execute_not_executable_is_409() -> None:
    svc = _svc(execute_query=QueryNotExecutableError("query is not executable"))
    with patch(NL2SQL_SVC, return_value=svc):
        resp = client.post("/nl2sql/execute", json={"query_id": 3}, headers=AUTH)
    assert resp.status_code == 409


def test_execute_rejected_sql_carries_validation() -> None:
    svc = _svc(execute_query=SQLRejectedError("SQL rejected", _validation(is_valid=False, violations=["DROP"])))
    with patch(NL2SQL_SVC, return_value=svc):
        resp = client.post("/nl2sql/execute", json={"query_id": 3}, headers=AUTH)
    assert resp.status_code == 422
    assert resp.json()["validation"]["violations"] == ["DROP"]


def test_validate() -> None:
    svc = _svc(validate_sql=_validation(has_limit=False, warnings=["no LIMIT"]))
    with patch(NL2SQL_SVC, return_value=svc):
        resp = client.post("/nl2sql/validate", json={"sql": "SELECT 1"}, headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["warnings"] == ["no LIMIT"]


def test_history_query_params() -> None:
    svc = _svc(get_query_history=QueryHistoryResponse(queries=[], limit=10, offset=5))
    with patch(NL2SQL_SVC, return_value=svc):
        resp = client.get("/nl2sql/history?limit=10&offset=5", headers=AUTH)
    assert resp.status_code == 200
    svc.get_query_history.assert_called_once_with("u1", limit=10, offset=5)


def test_query_details_not_found_is_404() -> None:
    svc = _svc(get_query_details=NotFoundError("query not found"))
    with patch(NL2SQL_SVC, return_value=svc):
        resp = client.get("/nl2sql/queries/99", headers=AUTH)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "query not found"


def test_delete_query() -> None:
    svc = _svc(delete_query=DeleteResponse(deleted=True, query_id=4))
    with patch(NL2SQL_SVC, return_value=svc):
        resp = client.delete("/nl2sql/queries/4", headers=AUTH)
    assert resp.json() == {"deleted": True, "query_id": 4}
    svc.delete_query.assert_called_once_with("u1", 4)


# ---------------------------------------------------------------------------
# /rag
# ---------------------------------------------------------------------------


def test_rag_search() -> None:
    svc = _svc(
        search_similar=SearchResponse(
            results=[SearchResultItem(element_type="table", element_name="sales", content="Table: sales", score=0.9)],
            query="sales",
            top_k=5,
        )
    )
    with patch(RAG_SVC, return_value=svc):
        resp = client.post("/rag/search", json={"query": "sales", "data_source_id": 2}, headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["results"][0]["element_name"] == "sales"
    svc.search_similar.assert_called_once_with("u1", "sales", data_source_id=2, top_k=None, element_types=None)


def test_rag_sync_flags() -> None:
    svc = _svc(sync_schema_embeddings=SyncReport(data_source_id=2, schemas_total=1, schemas_embedded=1))
    with patch(RAG_SVC, return_value=svc):
        resp = client.post("/rag/sync/2?force=true&discover=true", headers=AUTH)
    assert resp.status_code == 200
    svc.sync_schema_embeddings.assert_called_once_with("u1", 2, force=True, discover=True)


def test_rag_sync_timeout_is_504() -> None:
    svc = _svc(sync_schema_embeddings=DeadlineExceededError("timeout"))
    with patch(RAG_SVC, return_value=svc):
        resp = client.post("/rag/sync/2?discover=true", headers=AUTH)
    assert resp.status_code == 504


def test_rag_search_embedding_failure_is_502() -> None:
    svc = _svc(search_similar=EmbeddingError("failed to generate query embedding"))
    with patch(RAG_SVC, return_value=svc):
        resp = client.post("/rag/search", json={"query": "sales"}, headers=AUTH)
    assert resp.status_code == 502


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "exc,status",
    [
        (InputError("x"), 400),
        (SQLGateError("x"), 400),
        (UnsupportedDataSourceError("x"), 400),
        (NotFoundError("x"), 404),
        (QueryNotExecutableError("x"), 409),
        (SQLRejectedError("x"), 422),
        (ConnectorError("x"), 502),
        (DeadlineExceededError("x"), 504),
        (QueryDeletionError("x"), 500),
    ],
)
def test_status_for(exc, status) -> None:
    assert status_for(exc) == status


def test_user_required_maps_to_401() -> None:
    svc = _svc(get_query_history=UserRequiredError("user_id is required and must be non-empty"))
    with patch(NL2SQL_SVC, return_value=svc):
        resp = client.get("/nl2sql/history", headers=AUTH)
    assert resp.status_code == 401


def test_rag_embed_kpi() -> None:
    from apps.nl2sql.schemas.responses import EmbeddedDefinitionResponse

    svc = _svc(embed_kpi=EmbeddedDefinitionResponse(element_type="kpi", element_name="revenue", content="KPI: revenue"))
    with patch(RAG_SVC, return_value=svc):
        resp = client.post("/rag/kpis/3/embed", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["element_name"] == "revenue"
    svc.embed_kpi.assert_called_once_with("u1", 3)


def test_rag_create_kpi_is_201() -> None:
    from apps.nl2sql.schemas.responses import EmbeddedDefinitionResponse

    svc = _svc(create_kpi=EmbeddedDefinitionResponse(id=7, element_type="kpi", element_name="aov", content="KPI: aov"))
    body = {"name": "aov", "description": "Average order value", "formula": "SUM(amount) / COUNT(*)"}
    with patch(RAG_SVC, return_value=svc):
        resp = client.post("/rag/kpi", json=body, headers=AUTH)
    assert resp.status_code == 201
    assert resp.json()["id"] == 7
    user_id, fields = svc.create_kpi.call_args.args
    assert user_id == "u1"
    assert fields["formula"] == "SUM(amount) / COUNT(*)" and fields["unit"] is None


@pytest.mark.parametrize(
    "body",
    [
        {"name": "aov", "description": "d", "formula": "f", "user_id": "evil"},
        {"name": "aov", "formula": "f"},
    ],
)
def test_rag_create_kpi_rejects_bad_body(body) -> None:
    svc = _svc()
    with patch(RAG_SVC, return_value=svc):
        resp = client.post("/rag/kpi", json=body, headers=AUTH)
    assert resp.status_code == 422
    svc.create_kpi.assert_not_called()


def test_rag_create_glossary_term() -> None:
    from apps.nl2sql.schemas.responses import EmbeddedDefinitionResponse

    svc = _svc(
        create_glossary_term=EmbeddedDefinitionResponse(
            id=2, element_type="glossary", element_name="churn", content="Term: churn"
        )
    )
    body = {"term": "churn", "definition": "Customers lost", "synonyms": ["attrition"]}
    with patch(RAG_SVC, return_value=svc):
        resp = client.post("/rag/glossary", json=body, headers=AUTH)
    assert resp.status_code == 201
    _, fields = svc.create_glossary_term.call_args.args
    assert fields["synonyms"] == ["attrition"]


def test_rag_context_and_prompt() -> None:
    from apps.nl2sql.schemas.responses import ContextResponse, PromptResponse

    svc = _svc(
        build_query_context=ContextResponse(query="sales", data_source_id=2, context={"kpi_context": []}),
        build_query_prompt=PromptResponse(query="sales", prompt="QUERY: sales"),
    )
    with patch(RAG_SVC, return_value=svc):
        ctx = client.get("/rag/nl2sql-context", params={"query": "sales", "data_source_id": 2}, headers=AUTH)
        prompt = client.get("/rag/nl2sql-prompt", params={"query": "sales", "data_source_id": 2}, headers=AUTH)
    assert ctx.status_code == 200 and ctx.json()["context"] == {"kpi_context": []}
    assert prompt.status_code == 200 and prompt.json()["prompt"] == "QUERY: sales"
    svc.build_query_context.assert_called_once_with("u1", "sales", 2)
    svc.build_query_prompt.assert_called_once_with("u1", "sales", 2)


def test_rag_context_requires_positive_data_source() -> None:
    svc = _svc()
    with patch(RAG_SVC, return_value=svc):
        resp = client.get("/rag/nl2sql-context", params={"query": "sales", "data_source_id": 0}, headers=AUTH)
    assert resp.status_code == 422
    svc.build_query_context.assert_not_called()


def test_rag_context_foreign_source_is_404() -> None:
    svc = _svc(build_query_prompt=NotFoundError("data source not found or access denied"))
    with patch(RAG_SVC, return_value=svc):
        resp = client.get("/rag/nl2sql-prompt", params={"query": "sales", "data_source_id": 9}, headers=AUTH)
    assert resp.status_code == 404


def test_rag_delete_embeddings_for_schema() -> None:
    from apps.nl2sql.schemas.responses import EmbeddingsDeletedResponse

    svc = _svc(delete_embeddings=EmbeddingsDeletedResponse(data_source_id=2, schema_id=5, deleted=12))
    with patch(RAG_SVC, return_value=svc):
        resp = client.delete("/rag/embeddings/2?schema_id=5", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["deleted"] == 12
    svc.delete_embeddings.assert_called_once_with("u1", 2, 5)


def test_rag_delete_embeddings_foreign_source_is_404() -> None:
    svc = _svc(delete_embeddings=NotFoundError("data source not found or access denied"))
    with patch(RAG_SVC, return_value=svc):
        resp = client.delete("/rag/embeddings/2", headers=AUTH)
    assert resp.status_code == 404
    svc.delete_embeddings.assert_called_once_with("u1", 2, None)


def test_rag_sync_all_and_status_list() -> None:
    from apps.nl2sql.schemas.responses import SyncStatusListResponse, SyncStatusResponse, SyncSweepResponse

    svc = _svc(
        sync_all_schema_embeddings=SyncSweepResponse(
            reports=[SyncReport(data_source_id=1, schemas_total=1, schemas_embedded=1)], failed={2: "boom"}
        ),
        get_all_sync_status=SyncStatusListResponse(
            data_sources=[SyncStatusResponse(data_source_id=1, schema_count=1, embedding_count=4, need_sync=False)]
        ),
    )
    with patch(RAG_SVC, return_value=svc):
        sweep = client.post("/rag/sync?force=true", headers=AUTH)
        status = client.get("/rag/sync", headers=AUTH)
    assert sweep.status_code == 200
    assert sweep.json()["failed"] == {"2": "boom"}
    svc.sync_all_schema_embeddings.assert_called_once_with("u1", force=True)
    assert status.status_code == 200
    assert status.json()["data_sources"][0]["embedding_count"] == 4
    svc.get_all_sync_status.assert_called_once_with("u1")
