"""
NL2SQL orchestrator: convert, execute, validate, search, context and prompt preview, sync, KPI and glossary
definitions, embedding deletion, history, details, delete.

Record lifecycle (see models.nl2sql_query):
  convert: pending -> completed (valid; can_execute = is_safe) | failed (rejected, or context/generation error)
  execute: completed -> running (row-locked claim) -> completed | failed
           re-approval fails: completed -> running -> failed in one locked update, can_execute cleared

Ownership failures always surface as NotFoundError; callers never learn whether the id exists.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any

from apps.nl2sql.config import Settings, get_settings
from apps.nl2sql.models.nl2sql_query import (
    DEFAULT_QUERY_TYPE,
    QUERY_TYPES,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    NL2SQLQuery,
)
from apps.nl2sql.models.schema_embedding import ELEMENT_TABLE, ELEMENT_TYPES
from apps.nl2sql.schemas.responses import (
    AvailableSchemasResponse,
    ColumnInfo,
    ContextResponse,
    DeleteResponse,
    EmbeddedDefinitionResponse,
    EmbeddingsDeletedResponse,
    NL2SQLResponse,
    PromptResponse,
    QueryDetailResponse,
    QueryExecutionResponse,
    QueryHistoryItem,
    QueryHistoryResponse,
    SearchResponse,
    SearchResultItem,
    SQLValidationResult,
    SyncReport,
    SyncStatusListResponse,
    SyncStatusResponse,
    SyncSweepResponse,
)
from apps.nl2sql.services import repo
from apps.nl2sql.services.context_builder import ContextBuilder, QueryContext, get_context_builder
from apps.nl2sql.services.deadline import Deadline
from apps.nl2sql.services.dispatcher import ExecutionDispatcher, get_dispatcher
from apps.nl2sql.services.embedding_provider import EmbeddingProvider, embed_text, get_embedding_provider
from apps.nl2sql.services.errors import (
    DeadlineExceededError,
    GenerationError,
    InputError,
    NL2SQLError,
    NotFoundError,
    QueryDeletionError,
    QueryNotExecutableError,
    SQLGateError,
    SQLRejectedError,
    UpstreamError,
)
from apps.nl2sql.services.owner_guard import require_user_id
from apps.nl2sql.services.schema_embedding import embed_glossary_term, embed_kpi_definition
from apps.nl2sql.services.schema_sync import SchemaSyncService, get_schema_sync_service
from apps.nl2sql.services.similarity import SearchFilter, SimilarityIndex, clamp_top_k, get_similarity_index
from apps.nl2sql.services.sql_gate import SQLSafetyGate, get_sql_gate
from apps.nl2sql.services.sql_generator import SQLGenerator, get_sql_generator

logger = logging.getLogger(__name__)

MSG_VIOLATIONS = "Query has validation violations"
MSG_WARNINGS = "Query has warnings"
MSG_READY = "Query is ready for execution"
MSG_EXECUTED = "Query executed successfully"

DEFAULT_HISTORY_LIMIT = 20
MAX_HISTORY_LIMIT = 100


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _history_item(q: NL2SQLQuery, data_source_name: str = "") -> QueryHistoryItem:
    return QueryHistoryItem(
        query_id=q.id,
        nl_query=q.nl_query,
        generated_sql=q.generated_sql,
        status=q.status,
        query_type=q.query_type,
        can_execute=bool(q.can_execute),
        data_source_id=q.data_source_id,
        data_source_name=data_source_name,
        execution_time_ms=q.execution_time_ms,
        rows_returned=q.rows_returned,
        error_message=q.error_message,
        created_at=q.created_at,
    )


class NL2SQLService:
    def __init__(
        self,
        context_builder: ContextBuilder | None = None,
        generator: SQLGenerator | None = None,
        gate: SQLSafetyGate | None = None,
        dispatcher: ExecutionDispatcher | None = None,
        sync_service: SchemaSyncService | None = None,
        index: SimilarityIndex | None = None,
        embedder: EmbeddingProvider | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.context_builder = context_builder or get_context_builder()
        self.generator = generator or get_sql_generator()
        self.gate = gate or get_sql_gate(self.settings)
        self.dispatcher = dispatcher or get_dispatcher()
        self.index = index or get_similarity_index()
        self.embedder = embedder or get_embedding_provider()
        self.sync_service = sync_service or get_schema_sync_service()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned_data_source(self, user_id: str | None, data_source_id: int):
        ds = repo.get_data_source_for_owner(user_id, data_source_id)
        if ds is None:
            raise NotFoundError("data source not found or access denied")
        return ds

    def _update(self, user_id: str | None, query_id: int, mutate) -> NL2SQLQuery:
        try:
            q, _ = repo.update_query(user_id, query_id, mutate)
        except LookupError as e:
            raise NotFoundError("query not found") from e
        return q

    def _fail(self, user_id: str | None, query_id: int, message: str, **fields: Any) -> None:
        def mutate(q: NL2SQLQuery) -> None:
            q.mark_failed(message)
            for k, v in fields.items():
                setattr(q, k, v)

        self._update(user_id, query_id, mutate)

    def _reject_at_execution(self, user_id: str | None, query_id: int, error: Exception) -> None:
        """Re-approval failed: completed -> running -> failed under one row lock; can_execute cleared."""
        result = getattr(error, "result", None)

        def reject(q: NL2SQLQuery) -> None:
            if not q.is_executable:
                raise QueryNotExecutableError("query is not executable")
            q.transition_to(STATUS_RUNNING)
            q.mark_failed(str(error))
            q.can_execute = False
            if result is not None:
                q.meta = {**(q.meta or {}), "execution_validation": result.model_dump()}

        self._update(user_id, query_id, reject)
        logger.warning("Query %s rejected at execution: %s", query_id, error)

    def execution_limit(self, limit: int | None) -> int:
        """None or <= 0 -> default; clamped to the gate's max row limit."""
        if limit is None or limit <= 0:
            limit = self.settings.DEFAULT_EXECUTION_LIMIT
        return self.gate.clamp_limit(limit)

    # ------------------------------------------------------------------
    # Convert
    # ------------------------------------------------------------------

    def convert_nl2sql(
        self,
        user_id: str | None,
        nl_query: str,
        data_source_id: int,
        context: dict[str, Any] | None = None,
        query_type: str | None = None,
    ) -> NL2SQLResponse:
        query = (nl_query or "").strip()
        if not query:
            raise InputError("query is required")
        if isinstance(data_source_id, bool) or not isinstance(data_source_id, int) or data_source_id <= 0:
            raise InputError("data_source_id must be a positive integer")
        qtype = (query_type or DEFAULT_QUERY_TYPE).strip().lower()
        if qtype not in QUERY_TYPES:
            raise InputError(f"invalid query_type: {query_type} (expected one of {', '.join(QUERY_TYPES)})")

        ds = self._owned_data_source(user_id, data_source_id)
        if ds.status != "active" or not ds.is_active:
            raise InputError("data source is not active")

        record = repo.create_query(user_id, ds.id, query, qtype, context)
        logger.info("Converting query %s for data source %s", record.id, ds.id)

        try:
            qctx = self.context_builder.build_context(query, ds.id)
        except NL2SQLError as e:
            self._fail(user_id, record.id, f"failed to build context: {e}")
            raise

        try:
            sql = self.generator.generate(query, qctx)
        except NL2SQLError as e:
            self._fail(user_id, record.id, f"failed to generate SQL: {e}")
            raise
        except Exception as e:
            self._fail(user_id, record.id, f"failed to generate SQL: {e}")
            raise GenerationError(f"failed to generate SQL: {e}") from e

        decision = self.gate.validate(sql)
        if decision.result.is_read_only and not decision.result.has_limit:
            sql, decision = self.gate.enforce_limit_and_validate(sql, self.settings.DEFAULT_EXECUTION_LIMIT)

        validation = decision.result
        can_execute = not decision.rejected and self.gate.is_safe(validation)
        meta = {
            "validation_result": validation.model_dump(),
            "enhanced_context": qctx.to_dict(),
            "generated_at": _now_iso(),
        }

        def finish(q: NL2SQLQuery) -> None:
            q.generated_sql = sql
            q.meta = meta
            q.can_execute = can_execute
            if decision.rejected:
                q.mark_failed(decision.error or MSG_VIOLATIONS)
            else:
                q.transition_to(STATUS_COMPLETED)

        q = self._update(user_id, record.id, finish)

        messages: list[str] = []
        if validation.violations:
            messages.append(MSG_VIOLATIONS)
        if validation.warnings:
            messages.append(MSG_WARNINGS)
        if can_execute:
            messages.append(MSG_READY)

        return NL2SQLResponse(
            query_id=q.id,
            generated_sql=sql,
            validation=validation,
            estimated_cost=validation.estimated_cost,
            safety_score=validation.safety_score,
            can_execute=can_execute,
            status=q.status,
            messages=messages,
        )

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    def execute_query(self, user_id: str | None, query_id: int, limit: int | None = None) -> QueryExecutionResponse:
        record = repo.get_query_for_owner(user_id, query_id)
        if record is None:
            raise NotFoundError("query not found")
        if not record.is_executable:
            raise QueryNotExecutableError("query is not executable")
        ds = self._owned_data_source(user_id, record.data_source_id)

        try:
            limited = self.gate.enforce_limit(record.generated_sql, self.execution_limit(limit))
            approved = self.gate.approve(limited)
        except (SQLGateError, SQLRejectedError) as e:
            self._reject_at_execution(user_id, query_id, e)
            raise

        def claim(q: NL2SQLQuery) -> None:
            if not q.is_executable:
                raise QueryNotExecutableError("query is not executable")
            q.transition_to(STATUS_RUNNING)

        self._update(user_id, query_id, claim)

        start = time.monotonic()
        try:
            tab = self.dispatcher.execute(
                ds.type, ds.config, approved, Deadline(self.settings.EXECUTION_DEADLINE_SECONDS)
            )
        except UpstreamError as e:
            elapsed = _elapsed_ms(start)
            self._fail(user_id, query_id, str(e), execution_time_ms=elapsed)
            return QueryExecutionResponse(
                query_id=query_id, status=STATUS_FAILED, message=str(e), execution_time_ms=elapsed
            )
        except Exception as e:
            self._fail(user_id, query_id, str(e), execution_time_ms=_elapsed_ms(start))
            raise

        elapsed = _elapsed_ms(start)
        repo.insert_query_result(query_id, tab.columns, tab.data, tab.row_count)

        def done(q: NL2SQLQuery) -> None:
            q.transition_to(STATUS_COMPLETED)
            q.execution_time_ms = elapsed
            q.rows_returned = tab.row_count
            q.error_message = None

        self._update(user_id, query_id, done)
        logger.info("Query %s returned %s rows in %sms", query_id, tab.row_count, elapsed)

        return QueryExecutionResponse(
            query_id=query_id,
            columns=[ColumnInfo.model_validate(c) for c in tab.columns],
            data=tab.data,
            row_count=tab.row_count,
            execution_time_ms=elapsed,
            status=STATUS_COMPLETED,
            message=MSG_EXECUTED,
        )

    # ------------------------------------------------------------------
    # Stateless / index operations
    # ------------------------------------------------------------------

    def validate_sql(self, sql: str) -> SQLValidationResult:
        return self.gate.validate(sql).result

    def search_similar(
        self,
        user_id: str | None,
        query: str,
        data_source_id: int = 0,
        top_k: int | None = None,
        element_types: list[str] | None = None,
    ) -> SearchResponse:
        text = (query or "").strip()
        if not text:
            raise InputError("query is required")
        types = tuple(dict.fromkeys(t.strip().lower() for t in element_types or [] if t and t.strip()))
        unknown = [t for t in types if t not in ELEMENT_TYPES]
        if unknown:
            raise InputError(f"invalid element_types: {', '.join(unknown)}")
        if data_source_id and data_source_id > 0:
            self._owned_data_source(user_id, data_source_id)
        else:
            require_user_id(user_id)

        k = clamp_top_k(top_k)
        vector = embed_text(text, self.embedder)
        results = self.index.search(vector, SearchFilter(data_source_id=data_source_id or 0, element_types=types or None), k)
        return SearchResponse(
            results=[
                SearchResultItem(
                    element_type=r.element_type,
                    element_name=r.element_name,
                    content=r.content,
                    score=r.score,
                    metadata=r.metadata,
                )
                for r in results
            ],
            query=text,
            top_k=k,
        )

    def sync_schema_embeddings(
        self, user_id: str | None, data_source_id: int, force: bool = False, discover: bool = False
    ) -> SyncReport:
        """Re-embed the source's schemas. discover=True reads tables from the live source first."""
        self._owned_data_source(user_id, data_source_id)
        if not discover:
            return self.sync_service.sync_data_source(data_source_id, force=force)
        task = self.sync_service.discover_schema(data_source_id)
        try:
            return task.wait(self.settings.EXECUTION_DEADLINE_SECONDS)
        except DeadlineExceededError:
            task.cancel()
            raise

    def embed_kpi(self, user_id: str | None, kpi_id: int) -> EmbeddedDefinitionResponse:
        """(Re-)embed one of the user's KPI definitions at global scope."""
        kpi = repo.get_kpi_for_owner(user_id, kpi_id)
        if kpi is None:
            raise NotFoundError("KPI definition not found")
        if not kpi.is_active:
            raise InputError("KPI definition is not active")
        record = embed_kpi_definition(self.index, kpi, self.embedder)
        logger.info("Embedded KPI %s (%s)", kpi.id, kpi.name)
        return EmbeddedDefinitionResponse(
            id=kpi.id, element_type=record.element_type, element_name=record.element_name, content=record.content
        )

    def embed_glossary(self, user_id: str | None, term_id: int) -> EmbeddedDefinitionResponse:
        term = repo.get_glossary_term_for_owner(user_id, term_id)
        if term is None:
            raise NotFoundError("glossary term not found")
        if not term.is_active:
            raise InputError("glossary term is not active")
        record = embed_glossary_term(self.index, term, self.embedder)
        logger.info("Embedded glossary term %s (%s)", term.id, term.term)
        return EmbeddedDefinitionResponse(
            id=term.id, element_type=record.element_type, element_name=record.element_name, content=record.content
        )

    def create_kpi(self, user_id: str | None, fields: dict[str, Any]) -> EmbeddedDefinitionResponse:
        """Store a KPI definition for the user and embed it at global scope."""
        values = {k: (v.strip() if isinstance(v, str) else v) for k, v in fields.items()}
        missing = [k for k in ("name", "description", "formula") if not values.get(k)]
        if missing:
            raise InputError(f"KPI {', '.join(missing)} required")
        kpi = repo.create_kpi_definition(user_id, values)
        record = embed_kpi_definition(self.index, kpi, self.embedder)
        logger.info("Created and embedded KPI %s (%s)", kpi.id, kpi.name)
        return EmbeddedDefinitionResponse(
            id=kpi.id, element_type=record.element_type, element_name=record.element_name, content=record.content
        )

    def create_glossary_term(self, user_id: str | None, fields: dict[str, Any]) -> EmbeddedDefinitionResponse:
        values = {k: (v.strip() if isinstance(v, str) else v) for k, v in fields.items()}
        missing = [k for k in ("term", "definition") if not values.get(k)]
        if missing:
            raise InputError(f"glossary {', '.join(missing)} required")
        values["synonyms"] = [s.strip() for s in values.get("synonyms") or [] if s and s.strip()]
        term = repo.create_glossary_term(user_id, values)
        record = embed_glossary_term(self.index, term, self.embedder)
        logger.info("Created and embedded glossary term %s (%s)", term.id, term.term)
        return EmbeddedDefinitionResponse(
            id=term.id, element_type=record.element_type, element_name=record.element_name, content=record.content
        )

    def build_query_context(self, user_id: str | None, query: str, data_source_id: int) -> ContextResponse:
        """Schema, KPI and glossary context the generator would see for this question."""
        ctx = self._context_for(user_id, query, data_source_id)
        return ContextResponse(query=ctx.query, data_source_id=data_source_id, context=ctx.to_dict())

    def build_query_prompt(self, user_id: str | None, query: str, data_source_id: int) -> PromptResponse:
        ctx = self._context_for(user_id, query, data_source_id)
        return PromptResponse(query=ctx.query, prompt=ctx.prompt)

    def _context_for(self, user_id: str | None, query: str, data_source_id: int) -> QueryContext:
        text = (query or "").strip()
        if not text:
            raise InputError("query is required")
        if data_source_id <= 0:
            raise InputError("data_source_id must be a positive integer")
        self._owned_data_source(user_id, data_source_id)
        return self.context_builder.build_context(text, data_source_id)

    def delete_embeddings(
        self, user_id: str | None, data_source_id: int, schema_id: int | None = None
    ) -> EmbeddingsDeletedResponse:
        """Drop the source's embeddings, or one schema's when schema_id is given."""
        self._owned_data_source(user_id, data_source_id)
        deleted = self.index.delete(data_source_id, schema_id)
        logger.info("Deleted %s embeddings for data source %s (schema %s)", deleted, data_source_id, schema_id)
        return EmbeddingsDeletedResponse(data_source_id=data_source_id, schema_id=schema_id, deleted=deleted)

    def get_all_sync_status(self, user_id: str | None) -> SyncStatusListResponse:
        sources = repo.list_data_sources_for_owner(user_id)
        return SyncStatusListResponse(data_sources=[self.sync_service.get_sync_status(ds.id) for ds in sources])

    def sync_all_schema_embeddings(self, user_id: str | None, force: bool = False) -> SyncSweepResponse:
        """Sync every active data source the user owns, continuing past per-source failures."""
        ids = [ds.id for ds in repo.list_data_sources_for_owner(user_id)]
        if not ids:
            return SyncSweepResponse()
        result = self.sync_service.sync_all_data_sources(ids, force=force)
        return SyncSweepResponse(reports=result.reports, failed=result.failed)

    def get_sync_status(self, user_id: str | None, data_source_id: int) -> SyncStatusResponse:
        self._owned_data_source(user_id, data_source_id)
        return self.sync_service.get_sync_status(data_source_id)

    def get_available_schemas(self, user_id: str | None, data_source_id: int) -> AvailableSchemasResponse:
        self._owned_data_source(user_id, data_source_id)
        tables = self.index.list_elements(data_source_id, [ELEMENT_TABLE])
        return AvailableSchemasResponse(
            data_source_id=data_source_id,
            tables=[
                SearchResultItem(
                    element_type=r.element_type,
                    element_name=r.element_name,
                    content=r.content,
                    score=0.0,
                    metadata=r.metadata,
                )
                for r in tables
            ],
        )

    # ------------------------------------------------------------------
    # History / details / delete
    # ------------------------------------------------------------------

    def get_query_history(self, user_id: str | None, limit: int | None = None, offset: int | None = 0) -> QueryHistoryResponse:
        limit = DEFAULT_HISTORY_LIMIT if limit is None else max(1, min(MAX_HISTORY_LIMIT, int(limit)))
        offset = max(0, int(offset or 0))
        rows = repo.list_queries_for_owner(user_id, limit=limit, offset=offset)
        names = repo.get_data_source_names(user_id, [q.data_source_id for q in rows])
        return QueryHistoryResponse(
            queries=[_history_item(q, names.get(q.data_source_id, "")) for q in rows],
            limit=limit,
            offset=offset,
        )

    def get_query_details(self, user_id: str | None, query_id: int) -> QueryDetailResponse:
        q = repo.get_query_for_owner(user_id, query_id)
        if q is None:
            raise NotFoundError("query not found")
        names = repo.get_data_source_names(user_id, [q.data_source_id])
        latest = repo.get_latest_result(user_id, query_id)

        meta = q.meta or {}
        validation = meta.get("validation_result")
        result = None
        if latest is not None:
            result = QueryExecutionResponse(
                query_id=q.id,
                columns=[ColumnInfo.model_validate(c) for c in latest.columns or []],
                data=list(latest.data or []),
                row_count=latest.row_count,
                execution_time_ms=q.execution_time_ms or 0,
                status=q.status,
                message=q.error_message or "",
            )
        return QueryDetailResponse(
            query=_history_item(q, names.get(q.data_source_id, "")),
            validation=SQLValidationResult.model_validate(validation) if validation else None,
            context=dict(meta.get("enhanced_context") or {}),
            result=result,
        )

    def delete_query(self, user_id: str | None, query_id: int) -> DeleteResponse:
        user_id = require_user_id(user_id)
        try:
            deleted = repo.soft_delete_query_with_results(user_id, query_id)
        except Exception as e:
            raise QueryDeletionError(f"failed to delete query {query_id}: {e}") from e
        if not deleted:
            raise NotFoundError("query not found")
        logger.info("Deleted query %s", query_id)
        return DeleteResponse(deleted=True, query_id=query_id)


_service: NL2SQLService | None = None


def get_nl2sql_service(*, force_refresh: bool = False) -> NL2SQLService:
    global _service
    if force_refresh:
        _service = None
    if _service is None:
        _service = NL2SQLService()
    return _service
