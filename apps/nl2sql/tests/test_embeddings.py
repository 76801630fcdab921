"""Tests for embedding provider: env selection, determinism, and clear error on load failure."""

import pytest

from apps.nl2sql.services.errors import EmbeddingError


def test_embeddings_load_failure_raises_clear_error(monkeypatch) -> None:
    """When HF provider's model load fails, error propagates as EmbeddingError. No network."""
    import apps.nl2sql.services.embedding_provider as ep
    import apps.nl2sql.services.embeddings as embeddings_module

    def _raise_unavailable():
        raise EmbeddingError(embeddings_module.UNAVAILABLE_MSG)

    monkeypatch.setenv("EMBED_PROVIDER", "huggingface")
    monkeypatch.setattr(embeddings_module, "get_embedding_model", _raise_unavailable)
    ep._provider = None

    with pytest.raises(EmbeddingError) as exc_info:
        ep.embed_text("x")

    assert "EMBEDDINGS_MODEL_PATH" in str(exc_info.value)
    ep._provider = None


def test_deterministic_provider_no_network() -> None:
    from apps.nl2sql.services.embedding_provider import embed_text
    from apps.nl2sql.models.schema_embedding import EMBEDDING_DIM

    v = embed_text("monthly revenue")
    assert len(v) == EMBEDDING_DIM
    assert all(isinstance(x, float) for x in v)
    assert embed_text("monthly revenue") == v
    assert embed_text("churn rate") != v


def test_provider_exception_wrapped() -> None:
    from apps.nl2sql.services.embedding_provider import embed_texts

    class Broken:
        def embed(self, texts):
            raise ConnectionError("quota exceeded")

    with pytest.raises(EmbeddingError) as exc_info:
        embed_texts(["a"], provider=Broken())
    assert "quota exceeded" in str(exc_info.value)


def test_short_batch_rejected() -> None:
    from apps.nl2sql.services.embedding_provider import embed_texts

    class Short:
        def embed(self, texts):
            return []

    with pytest.raises(EmbeddingError):
        embed_texts(["a", "b"], provider=Short())


def test_empty_batch_no_provider_call() -> None:
    from apps.nl2sql.services.embedding_provider import embed_texts

    class Exploding:
        def embed(self, texts):
            raise AssertionError("should not be called")

    assert embed_texts([], provider=Exploding()) == []
