"""
Context builder: query text + data source -> QueryContext (schema, KPI, glossary context and prompt).

The query is embedded once; three similarity searches then run concurrently and are joined
before the merge. Failure policy:
- query embedding fails or times out -> whole build fails (no partial context)
- schema search fails -> ContextBuildError (DeadlineExceededError on timeout)
- KPI / glossary search fails -> that sub-context is empty and named in context.degraded,
  unless ContextPolicy.strict_definitions, in which case it fails like schema
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any

from apps.nl2sql.config import Settings, get_settings
from apps.nl2sql.models.schema_embedding import (
    ELEMENT_COLUMN,
    ELEMENT_GLOSSARY,
    ELEMENT_KPI,
    ELEMENT_TABLE,
)
from apps.nl2sql.services.deadline import Deadline, wait_for
from apps.nl2sql.services.embedding_provider import EmbeddingProvider, embed_text, get_embedding_provider
from apps.nl2sql.services.errors import (
    ContextBuildError,
    DeadlineExceededError,
    EmbeddingError,
    InputError,
)
from apps.nl2sql.services.similarity import (
    GLOBAL_SCOPE,
    SearchFilter,
    SearchResult,
    SimilarityIndex,
    get_similarity_index,
)

logger = logging.getLogger(__name__)

SCHEMA = "schema"
KPI = "kpi"
GLOSSARY = "glossary"

PROMPT_HEADER = (
    "You are an expert SQL generator. Convert natural language queries to SQL "
    "using the provided schema context.\n\n"
)
PROMPT_INSTRUCTIONS = (
    "INSTRUCTIONS:\n"
    "1. Generate a SELECT-only SQL query\n"
    "2. Use only the tables and columns provided above\n"
    "3. Include appropriate WHERE clauses, JOINs, and aggregations\n"
    "4. Add LIMIT clause for large result sets\n"
    "5. Return only the SQL query, no explanations\n"
)


@dataclass
class TableContext:
    name: str
    description: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ColumnContext:
    name: str
    type: str
    description: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class KPIContext:
    name: str
    description: str
    formula: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GlossaryContext:
    term: str
    definition: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryContext:
    """Ephemeral per-request context. Only persisted as an audit snapshot (to_dict)."""

    query: str
    data_source_id: int
    tables: dict[str, TableContext] = field(default_factory=dict)
    columns: dict[str, list[ColumnContext]] = field(default_factory=dict)
    kpis: list[KPIContext] = field(default_factory=list)
    glossary: list[GlossaryContext] = field(default_factory=list)
    prompt: str = ""
    degraded: list[str] = field(default_factory=list)

    def table_names(self) -> list[str]:
        names = list(self.tables)
        names.extend(t for t in self.columns if t not in self.tables)
        return names

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "data_source_id": self.data_source_id,
            "schema_context": {
                "tables": {k: asdict(v) for k, v in self.tables.items()},
                "columns": {k: [asdict(c) for c in v] for k, v in self.columns.items()},
            },
            "kpi_context": [asdict(k) for k in self.kpis],
            "glossary_context": [asdict(g) for g in self.glossary],
            "degraded": list(self.degraded),
            "prompt": self.prompt,
        }


@dataclass(frozen=True)
class ContextPolicy:
    strict_definitions: bool = False
    schema_top_k: int = 10
    kpi_top_k: int = 5
    glossary_top_k: int = 5
    deadline_seconds: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ContextPolicy":
        s = settings or get_settings()
        return cls(strict_definitions=s.CONTEXT_STRICT_DEFINITIONS, deadline_seconds=s.CONTEXT_DEADLINE_SECONDS)


def _column_table(result: SearchResult) -> str:
    table = str((result.metadata or {}).get("table") or "")
    if not table and "." in result.element_name:
        table = result.element_name.split(".", 1)[0]
    return table


def _column_name(result: SearchResult) -> str:
    name = str((result.metadata or {}).get("column") or "")
    if name:
        return name
    return result.element_name.split(".", 1)[1] if "." in result.element_name else result.element_name


def group_schema_results(
    results: list[SearchResult],
) -> tuple[dict[str, TableContext], dict[str, list[ColumnContext]]]:
    """Tables keyed by name; columns grouped under their owning table. Every table gets a column list."""
    tables: dict[str, TableContext] = {}
    columns: dict[str, list[ColumnContext]] = {}
    for r in results:
        if r.element_type == ELEMENT_TABLE:
            meta = r.metadata or {}
            tables[r.element_name] = TableContext(
                name=r.element_name,
                description=str(meta.get("description") or r.content),
                score=r.score,
                metadata=dict(meta),
            )
            columns.setdefault(r.element_name, [])
    for r in results:
        if r.element_type != ELEMENT_COLUMN:
            continue
        table = _column_table(r)
        if not table:
            logger.debug("Dropping column %s with no owning table", r.element_name)
            continue
        columns.setdefault(table, []).append(
            ColumnContext(
                name=_column_name(r),
                type=str((r.metadata or {}).get("type") or ""),
                description=r.content,
                score=r.score,
                metadata=dict(r.metadata or {}),
            )
        )
    return tables, columns


def build_prompt(ctx: QueryContext) -> str:
    """Deterministic prompt. Section order: tables, columns, KPIs, glossary, query, instructions."""
    parts = [PROMPT_HEADER, "AVAILABLE TABLES AND COLUMNS:\n"]
    for t in ctx.tables.values():
        parts.append(f"Table: {t.name}\n")
        if t.description:
            parts.append(f"Description: {t.description}\n")
    for table in ctx.table_names():
        cols = ctx.columns.get(table) or []
        if not cols:
            continue
        parts.append(f"\nColumns for {table}:\n")
        for c in cols:
            parts.append(f"- {c.name} ({c.type})\n" if c.type else f"- {c.name}\n")
    if ctx.kpis:
        parts.append("\nRELEVANT KPIs:\n")
        for k in ctx.kpis:
            parts.append(f"- {k.name}: {k.description}\n")
    if ctx.glossary:
        parts.append("\nBUSINESS TERMS:\n")
        for g in ctx.glossary:
            parts.append(f"- {g.term}: {g.definition}\n")
    parts.append(f"\nQUERY: {ctx.query}\n\n")
    parts.append(PROMPT_INSTRUCTIONS)
    return "".join(parts)


_executor: ThreadPoolExecutor | None = None


def _default_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="context")
    return _executor


class ContextBuilder:
    def __init__(
        self,
        index: SimilarityIndex,
        embedder: EmbeddingProvider,
        policy: ContextPolicy | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.index = index
        self.embedder = embedder
        self.policy = policy or ContextPolicy()
        self.executor = executor or _default_executor()

    def build_context(self, query: str, data_source_id: int, deadline: Deadline | None = None) -> QueryContext:
        query = (query or "").strip()
        if not query:
            raise InputError("query is required")
        deadline = deadline or Deadline(self.policy.deadline_seconds)

        vector = self._embed_query(query, deadline)

        searches: dict[str, Future] = {
            SCHEMA: self.executor.submit(
                self.index.search,
                vector,
                SearchFilter(data_source_id=data_source_id, element_types=(ELEMENT_TABLE, ELEMENT_COLUMN)),
                self.policy.schema_top_k,
            ),
            KPI: self.executor.submit(
                self.index.search,
                vector,
                SearchFilter(data_source_id=GLOBAL_SCOPE, element_types=(ELEMENT_KPI,)),
                self.policy.kpi_top_k,
            ),
            GLOSSARY: self.executor.submit(
                self.index.search,
                vector,
                SearchFilter(data_source_id=GLOBAL_SCOPE, element_types=(ELEMENT_GLOSSARY,)),
                self.policy.glossary_top_k,
            ),
        }

        ctx = QueryContext(query=query, data_source_id=data_source_id)
        results: dict[str, list[SearchResult]] = {}
        try:
            for name, fut in searches.items():
                results[name] = self._collect(name, fut, deadline, ctx)
        except Exception:
            for fut in searches.values():
                fut.cancel()
            raise

        ctx.tables, ctx.columns = group_schema_results(results[SCHEMA])
        ctx.kpis = [
            KPIContext(
                name=r.element_name,
                description=str((r.metadata or {}).get("description") or r.content),
                formula=str((r.metadata or {}).get("formula") or ""),
                score=r.score,
                metadata=dict(r.metadata or {}),
            )
            for r in results[KPI]
        ]
        ctx.glossary = [
            GlossaryContext(
                term=r.element_name,
                definition=str((r.metadata or {}).get("definition") or r.content),
                score=r.score,
                metadata=dict(r.metadata or {}),
            )
            for r in results[GLOSSARY]
        ]
        ctx.prompt = build_prompt(ctx)
        return ctx

    def _embed_query(self, query: str, deadline: Deadline) -> list[float]:
        fut = self.executor.submit(embed_text, query, self.embedder)
        try:
            return wait_for(fut, deadline, "query embedding")
        except EmbeddingError as e:
            raise EmbeddingError(f"failed to generate query embedding: {e}") from e

    def _collect(self, name: str, fut: Future, deadline: Deadline, ctx: QueryContext) -> list[SearchResult]:
        fatal = name == SCHEMA or self.policy.strict_definitions
        try:
            return wait_for(fut, deadline, f"{name} search")
        except DeadlineExceededError:
            if fatal:
                raise
            logger.warning("%s search timed out; continuing without %s context", name, name)
        except Exception as e:
            if fatal:
                raise ContextBuildError(f"{name} search failed: {e}") from e
            logger.warning("%s search failed; continuing without %s context: %s", name, name, e)
        ctx.degraded.append(name)
        return []


def get_context_builder() -> ContextBuilder:
    return ContextBuilder(
        index=get_similarity_index(),
        embedder=get_embedding_provider(),
        policy=ContextPolicy.from_settings(),
    )
