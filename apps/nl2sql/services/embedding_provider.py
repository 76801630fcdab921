"""
Embedding provider abstraction: the opaque text -> vector function behind the similarity index.

EMBED_PROVIDER=deterministic or ENV=test or PYTEST_CURRENT_TEST => no network, hash-based vectors.
Otherwise HuggingFace SentenceTransformer (lazy-loaded on first embed).

Provider failures surface as EmbeddingError so callers can tell them apart from storage errors.
"""

import hashlib
import logging
import os
from typing import Protocol, runtime_checkable

from apps.nl2sql.models.schema_embedding import EMBEDDING_DIM
from apps.nl2sql.services.errors import EmbeddingError

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol for embedding generation. Swapped for a stub in tests."""

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts into EMBEDDING_DIM vectors."""
        ...


class DeterministicEmbeddingProvider:
    """Fixed-dim vectors from a stable hash of the text. Same input => same output."""

    def __init__(self, dim: int = EMBEDDING_DIM) -> None:
        self._dim = dim

    def embed(self, texts: list[str]) -> list[list[float]]:
        return [_hash_to_vector(t, self._dim) for t in texts]


def _hash_to_vector(text: str, dim: int = EMBEDDING_DIM) -> list[float]:
    out: list[float] = []
    for i in range(dim):
        h = hashlib.sha256((text + "|" + str(i)).encode()).hexdigest()
        out.append(int(h[:8], 16) / (2**32) * 2 - 1)
    return out


class HuggingFaceEmbeddingProvider:
    """SentenceTransformer provider. Loads model on first embed() call."""

    def __init__(self) -> None:
        self._model = None

    def _get_model(self):
        if self._model is None:
            from apps.nl2sql.services.embeddings import get_embedding_model

            self._model = get_embedding_model()
        return self._model

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        model = self._get_model()
        embs = model.encode(texts, normalize_embeddings=True)
        return [e.tolist() for e in embs]


_provider: EmbeddingProvider | None = None


def _use_deterministic_provider() -> bool:
    explicit = (os.getenv("EMBED_PROVIDER") or "").lower().strip()
    if explicit == "deterministic":
        return True
    if explicit in ("huggingface", "hf"):
        return False
    env = (os.getenv("ENV") or os.getenv("ENVIRONMENT") or "").lower()
    if env == "test":
        return True
    return bool(os.getenv("PYTEST_CURRENT_TEST"))


def get_embedding_provider(*, force_refresh: bool = False) -> EmbeddingProvider:
    """
    Return the active embedding provider. Lazy-initialized; re-resolved when env flips provider kind.
    force_refresh: if True, re-resolve provider (for tests).
    """
    global _provider
    if force_refresh:
        _provider = None
    use_deterministic = _use_deterministic_provider()
    needs_reinit = _provider is None
    if not needs_reinit and use_deterministic and not isinstance(_provider, DeterministicEmbeddingProvider):
        needs_reinit = True
    if not needs_reinit and not use_deterministic and not isinstance(_provider, HuggingFaceEmbeddingProvider):
        needs_reinit = True

    if needs_reinit:
        if use_deterministic:
            _provider = DeterministicEmbeddingProvider()
            logger.info("Using deterministic embedding provider (no network)")
        else:
            _provider = HuggingFaceEmbeddingProvider()
            logger.info("Using HuggingFace embedding provider")
    return _provider


def embed_texts(texts: list[str], provider: EmbeddingProvider | None = None) -> list[list[float]]:
    """Embed a batch. Any provider failure is raised as EmbeddingError."""
    if not texts:
        return []
    p = provider or get_embedding_provider()
    try:
        vectors = p.embed(texts)
    except EmbeddingError:
        raise
    except Exception as e:
        raise EmbeddingError(f"failed to generate embedding: {e}") from e
    if len(vectors) != len(texts):
        raise EmbeddingError(f"provider returned {len(vectors)} vectors for {len(texts)} texts")
    return vectors


def embed_text(text: str, provider: EmbeddingProvider | None = None) -> list[float]:
    return embed_texts([text], provider)[0]
