from concierge.retrieval.embeddings import ChromaEmbedder, Embedder, EmbeddingError
from concierge.retrieval.index import RetrievalError, RetrievalIndex, RetrievalResult
from concierge.retrieval.ingest import ContentIngestor

__all__ = [
    "ChromaEmbedder",
    "ContentIngestor",
    "Embedder",
    "EmbeddingError",
    "RetrievalError",
    "RetrievalIndex",
    "RetrievalResult",
]
