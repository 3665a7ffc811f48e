"""
Embedding functions.

An embedder turns text into a fixed-dimension dense vector. The same embedder
must be used at index time and at query time, and it must be deterministic:
identical text always maps to the identical vector. Production uses the
embedding functions that ship with ChromaDB (an ONNX MiniLM by default, or a
sentence-transformers model by name).
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

_DEFAULT_MODEL = "all-MiniLM-L6-v2"


class EmbeddingError(Exception):
    """The embedding function failed to produce a vector."""


class Embedder(Protocol):
    def embed(self, text: str) -> list[float]:
        ...


class ChromaEmbedder:
    """Adapts a ChromaDB embedding function to the ``Embedder`` protocol."""

    def __init__(self, model_name: str = _DEFAULT_MODEL, function: Optional[Any] = None):
        self._model_name = model_name
        self._function = function

    def _load(self) -> Any:
        if self._function is not None:
            return self._function
        from chromadb.utils import embedding_functions

        if self._model_name == _DEFAULT_MODEL:
            self._function = embedding_functions.DefaultEmbeddingFunction()
        else:
            self._function = embedding_functions.SentenceTransformerEmbeddingFunction(
                model_name=self._model_name
            )
        logger.info("embeddings.loaded", model=self._model_name)
        return self._function

    def embed(self, text: str) -> list[float]:
        try:
            vectors = self._load()([text])
        except Exception as exc:
            logger.warning("embeddings.failed", model=self._model_name, error=str(exc))
            raise EmbeddingError(f"Embedding failed: {exc}") from exc
        if not vectors:
            raise EmbeddingError("Embedding function returned no vectors")
        return [float(x) for x in vectors[0]]
