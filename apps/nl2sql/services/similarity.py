"""
Similarity index over schema/KPI/glossary embeddings.

search(): cosine similarity, descending, ties by insertion/id order, truncated to top_k in [1, 20].
upsert(): replaces every record of each (data_source_id, schema_id) pair present in the batch.
replace_source(): replaces every record of a data source in one step (schema sync).

Two backends:
- InMemorySimilarityIndex: copy-on-write scopes; readers never see a half-replaced scope. Ranks with rank().
- PgVectorSimilarityIndex: schema_embeddings via repo; replaces run in one transaction and
  ranking is a pgvector cosine-distance ORDER BY ... LIMIT k.

SIMILARITY_INDEX=memory selects the in-memory backend; default is pgvector.
"""

import logging
import math
import os
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from apps.nl2sql.models.schema_embedding import EMBEDDING_DIM

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5
MAX_TOP_K = 20
GLOBAL_SCOPE = 0


@dataclass
class EmbeddingRecord:
    """(element, vector) pair. data_source_id=0 means global/shared."""

    data_source_id: int
    schema_id: int
    element_type: str
    element_name: str
    content: str
    vector: Sequence[float]
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None


@dataclass(frozen=True)
class SearchFilter:
    """data_source_id=0: global only. >0: that source OR global."""

    data_source_id: int = GLOBAL_SCOPE
    element_types: tuple[str, ...] | None = None

    def data_source_ids(self) -> tuple[int, ...]:
        if self.data_source_id and self.data_source_id > 0:
            return (self.data_source_id, GLOBAL_SCOPE)
        return (GLOBAL_SCOPE,)

    def matches(self, record: EmbeddingRecord) -> bool:
        if record.data_source_id not in self.data_source_ids():
            return False
        return not self.element_types or record.element_type in self.element_types


@dataclass
class SearchResult:
    element_type: str
    element_name: str
    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
    data_source_id: int = GLOBAL_SCOPE
    schema_id: int = 0


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """dot(a,b) / (|a|*|b|), clamped to [-1, 1]. 0.0 for empty, mismatched, or zero-magnitude vectors."""
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    dot = norm_a = norm_b = 0.0
    for x, y in zip(a, b):
        x, y = float(x), float(y)
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    sim = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    if math.isnan(sim):
        return 0.0
    return max(-1.0, min(1.0, sim))


def clamp_top_k(top_k: int | None) -> int:
    """None or <= 0 -> 5; > 20 -> 20."""
    if top_k is None or top_k <= 0:
        return DEFAULT_TOP_K
    return min(int(top_k), MAX_TOP_K)


def rank(records: Iterable[EmbeddingRecord], query_vector: Sequence[float], top_k: int | None) -> list[SearchResult]:
    """Score records against query_vector; stable order on ties (input order)."""
    k = clamp_top_k(top_k)
    scored = [(cosine_similarity(query_vector, r.vector), i, r) for i, r in enumerate(records)]
    scored.sort(key=lambda t: (-t[0], t[1]))
    return [
        SearchResult(
            element_type=r.element_type,
            element_name=r.element_name,
            content=r.content,
            score=score,
            metadata=dict(r.metadata or {}),
            data_source_id=r.data_source_id,
            schema_id=r.schema_id,
        )
        for score, _, r in scored[:k]
    ]


def has_magnitude(vector: Sequence[float] | None) -> bool:
    return bool(vector) and any(float(x) != 0.0 for x in vector)


def group_by_scope(records: Iterable[EmbeddingRecord]) -> dict[tuple[int, int], list[EmbeddingRecord]]:
    groups: dict[tuple[int, int], list[EmbeddingRecord]] = {}
    for r in records:
        groups.setdefault((r.data_source_id, r.schema_id), []).append(r)
    return groups


def check_dimensions(records: Iterable[EmbeddingRecord], dim: int) -> None:
    for r in records:
        if len(r.vector) != dim:
            raise ValueError(f"vector length {len(r.vector)} for {r.element_type}:{r.element_name}; index dim is {dim}")


@runtime_checkable
class SimilarityIndex(Protocol):
    """Nearest-neighbour store. upsert/replace_source/replace_definition/delete are the only mutators."""

    def upsert(self, records: Sequence[EmbeddingRecord]) -> int:
        """Replace all records of each (data_source_id, schema_id) in records. Returns rows written."""
        ...

    def replace_source(self, data_source_id: int, records: Sequence[EmbeddingRecord]) -> int:
        """Drop every record of data_source_id and store records, visible to readers all at once."""
        ...

    def replace_definition(self, record: EmbeddingRecord) -> None:
        """Replace one KPI/glossary record keyed by (data_source_id, element_type, element_name)."""
        ...

    def delete(self, data_source_id: int, schema_id: int | None = None) -> int: ...

    def search(
        self,
        query_vector: Sequence[float],
        search_filter: SearchFilter,
        top_k: int | None = None,
    ) -> list[SearchResult]: ...

    def list_elements(self, data_source_id: int, element_types: Sequence[str] | None = None) -> list[EmbeddingRecord]:
        """Records stored for exactly data_source_id (no global rows), in id order."""
        ...

    def count(self, data_source_id: int) -> int: ...


class InMemorySimilarityIndex:
    """
    Process-local index. Each (data_source_id, schema_id) scope holds an immutable tuple;
    writers build the replacement and swap it under the lock, readers snapshot the scope map.
    """

    def __init__(self, dim: int = EMBEDDING_DIM) -> None:
        self._dim = dim
        self._scopes: dict[tuple[int, int], tuple[EmbeddingRecord, ...]] = {}
        self._lock = threading.Lock()
        self._next_id = 1

    def _assign_ids(self, records: Sequence[EmbeddingRecord]) -> tuple[EmbeddingRecord, ...]:
        out = []
        for r in records:
            out.append(
                EmbeddingRecord(
                    data_source_id=r.data_source_id,
                    schema_id=r.schema_id,
                    element_type=r.element_type,
                    element_name=r.element_name,
                    content=r.content,
                    vector=tuple(float(x) for x in r.vector),
                    metadata=dict(r.metadata or {}),
                    id=self._next_id,
                )
            )
            self._next_id += 1
        return tuple(out)

    def upsert(self, records: Sequence[EmbeddingRecord]) -> int:
        check_dimensions(records, self._dim)
        groups = group_by_scope(records)
        with self._lock:
            for scope, group in groups.items():
                self._scopes[scope] = self._assign_ids(group)
        return len(records)

    def replace_source(self, data_source_id: int, records: Sequence[EmbeddingRecord]) -> int:
        foreign = [r for r in records if r.data_source_id != data_source_id]
        if foreign:
            raise ValueError(f"record {foreign[0].element_name} belongs to data source {foreign[0].data_source_id}")
        check_dimensions(records, self._dim)
        groups = group_by_scope(records)
        with self._lock:
            scopes = {scope: held for scope, held in self._scopes.items() if scope[0] != data_source_id}
            for scope, group in groups.items():
                scopes[scope] = self._assign_ids(group)
            self._scopes = scopes
        return len(records)

    def replace_definition(self, record: EmbeddingRecord) -> None:
        check_dimensions([record], self._dim)
        with self._lock:
            for scope, held in list(self._scopes.items()):
                if scope[0] != record.data_source_id:
                    continue
                kept = tuple(
                    r
                    for r in held
                    if not (r.element_type == record.element_type and r.element_name == record.element_name)
                )
                if len(kept) != len(held):
                    self._scopes[scope] = kept
            key = (record.data_source_id, record.schema_id)
            self._scopes[key] = self._scopes.get(key, ()) + self._assign_ids([record])

    def delete(self, data_source_id: int, schema_id: int | None = None) -> int:
        removed = 0
        with self._lock:
            for scope in list(self._scopes):
                if scope[0] == data_source_id and (schema_id is None or scope[1] == schema_id):
                    removed += len(self._scopes.pop(scope))
        return removed

    def search(
        self,
        query_vector: Sequence[float],
        search_filter: SearchFilter,
        top_k: int | None = None,
    ) -> list[SearchResult]:
        with self._lock:
            snapshot = list(self._scopes.values())
        candidates = [r for held in snapshot for r in held if search_filter.matches(r)]
        candidates.sort(key=lambda r: r.id or 0)
        return rank(candidates, query_vector, top_k)

    def list_elements(self, data_source_id: int, element_types: Sequence[str] | None = None) -> list[EmbeddingRecord]:
        with self._lock:
            snapshot = [held for scope, held in self._scopes.items() if scope[0] == data_source_id]
        out = [r for held in snapshot for r in held if not element_types or r.element_type in element_types]
        return sorted(out, key=lambda r: r.id or 0)

    def count(self, data_source_id: int) -> int:
        with self._lock:
            return sum(len(held) for scope, held in self._scopes.items() if scope[0] == data_source_id)


class PgVectorSimilarityIndex:
    """schema_embeddings-backed index. Persistence (soft delete + insert, one transaction) lives in repo."""

    def __init__(self, dim: int = EMBEDDING_DIM) -> None:
        self._dim = dim

    def upsert(self, records: Sequence[EmbeddingRecord]) -> int:
        from apps.nl2sql.services import repo

        check_dimensions(records, self._dim)
        written = 0
        for (data_source_id, schema_id), group in group_by_scope(records).items():
            written += repo.replace_embeddings(data_source_id, schema_id, group)
        return written

    def replace_source(self, data_source_id: int, records: Sequence[EmbeddingRecord]) -> int:
        from apps.nl2sql.services import repo

        foreign = [r for r in records if r.data_source_id != data_source_id]
        if foreign:
            raise ValueError(f"record {foreign[0].element_name} belongs to data source {foreign[0].data_source_id}")
        check_dimensions(records, self._dim)
        return repo.replace_source_embeddings(data_source_id, records)

    def replace_definition(self, record: EmbeddingRecord) -> None:
        from apps.nl2sql.services import repo

        check_dimensions([record], self._dim)
        repo.replace_definition_embedding(record)

    def delete(self, data_source_id: int, schema_id: int | None = None) -> int:
        from apps.nl2sql.services import repo

        return repo.soft_delete_embeddings(data_source_id, schema_id)

    def search(
        self,
        query_vector: Sequence[float],
        search_filter: SearchFilter,
        top_k: int | None = None,
    ) -> list[SearchResult]:
        """Ranked by pgvector cosine distance in SQL. A zero or wrong-sized query vector scores every row 0.0."""
        from apps.nl2sql.services import repo

        ranked = len(query_vector or ()) == self._dim and has_magnitude(query_vector)
        rows = repo.search_embeddings(
            list(search_filter.data_source_ids()),
            list(search_filter.element_types) if search_filter.element_types else None,
            list(query_vector) if ranked else None,
            clamp_top_k(top_k),
        )
        return [
            SearchResult(
                element_type=r.element_type,
                element_name=r.element_name,
                content=r.content,
                score=max(-1.0, min(1.0, float(score))),
                metadata=dict(r.metadata or {}),
                data_source_id=r.data_source_id,
                schema_id=r.schema_id,
            )
            for r, score in rows
        ]

    def list_elements(self, data_source_id: int, element_types: Sequence[str] | None = None) -> list[EmbeddingRecord]:
        from apps.nl2sql.services import repo

        return repo.fetch_embeddings(data_source_id, list(element_types) if element_types else None)

    def count(self, data_source_id: int) -> int:
        from apps.nl2sql.services import repo

        return repo.count_embeddings(data_source_id)


_index: SimilarityIndex | None = None


def get_similarity_index(*, force_refresh: bool = False) -> SimilarityIndex:
    """Return the active index. SIMILARITY_INDEX=memory => in-memory; otherwise pgvector."""
    global _index
    if force_refresh:
        _index = None
    if _index is None:
        backend = (os.getenv("SIMILARITY_INDEX") or "pgvector").strip().lower()
        if backend == "memory":
            _index = InMemorySimilarityIndex()
            logger.info("Using in-memory similarity index")
        else:
            _index = PgVectorSimilarityIndex()
            logger.info("Using pgvector similarity index")
    return _index
