"""
Sentence-transformers model loading (singleton) for schema, KPI and glossary embeddings.

Only HuggingFaceEmbeddingProvider calls this. Under ENV=test the deterministic provider is used
and no model is ever loaded. No import-time loading.
"""

import logging
import os
from typing import TYPE_CHECKING

from apps.nl2sql.services.errors import EmbeddingError

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "BAAI/bge-small-en-v1.5"
UNAVAILABLE_MSG = "Embeddings model unavailable. Set EMBEDDINGS_MODEL_PATH for offline use."
_model: "SentenceTransformer | None" = None


def get_embedding_model() -> "SentenceTransformer":
    """Load model singleton. EMBEDDINGS_MODEL_NAME / EMBEDDINGS_MODEL_PATH select it, EMBEDDINGS_DEVICE pins device."""
    global _model
    if _model is None:
        model_path = os.getenv("EMBEDDINGS_MODEL_PATH", "").strip()
        model_name = os.getenv("EMBEDDINGS_MODEL_NAME", DEFAULT_MODEL).strip() or DEFAULT_MODEL
        device = os.getenv("EMBEDDINGS_DEVICE", "").strip() or None
        load_from = model_path if model_path else model_name
        logger.info("Loading embedding model: %s (device=%s)", load_from, device or "auto")
        try:
            from sentence_transformers import SentenceTransformer

            _model = SentenceTransformer(load_from, device=device)
        except Exception as e:
            raise EmbeddingError(UNAVAILABLE_MSG) from e
    return _model
