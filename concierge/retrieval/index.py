"""
Retrieval Index — owner-scoped semantic search over content chunks.

Every chunk is stored in SQLite together with its embedding, which is the
source of truth. Ranking is cosine similarity between the query embedding and
each chunk embedding, filtered by a minimum similarity and ordered by
similarity descending, most recent first on ties.

How the candidates are found depends on how much the owner has indexed:

  - At or below ``linear_scan_max_chunks`` the owner's embeddings are loaded
    into one numpy matrix and scored exactly.
  - Above it, candidates come from a ChromaDB HNSW collection (cosine space)
    filtered by owner and source. A widened candidate set is fetched and then
    rescored exactly, so the similarity figures are identical on both paths.

Embedding failures propagate as ``EmbeddingError``; the index never ranks
with a partial or fallback vector.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import numpy as np
import structlog

from concierge.config import RetrievalConfig
from concierge.retrieval.embeddings import Embedder
from concierge.store import DataStore

logger = structlog.get_logger(__name__)

_COLLECTION_NAME = "concierge_content_chunks"


class RetrievalError(Exception):
    """The index could not store or search content."""


@dataclass
class RetrievalResult:
    content: str
    source: str
    similarity: float
    created_at: float
    chunk_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "source": self.source,
            "similarity": round(self.similarity, 3),
            "created_at": self.created_at,
        }


def cosine_similarities(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Row-wise cosine similarity; zero-length rows score 0."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
    dots = matrix @ vector
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims


class RetrievalIndex:
    def __init__(
        self,
        store: DataStore,
        embedder: Embedder,
        config: RetrievalConfig,
        vector_db_path: Optional[Path] = None,
    ):
        self._store = store
        self._embedder = embedder
        self._config = config
        self._vector_db_path = vector_db_path or config.vector_db_path
        self._collection: Any = None

    # -------------------------------------------------------------------------
    # ANN collection
    # -------------------------------------------------------------------------

    def _ann_collection(self) -> Any:
        if not self._config.ann_enabled:
            return None
        if self._collection is not None:
            return self._collection
        import chromadb

        try:
            self._vector_db_path.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(path=str(self._vector_db_path))
            self._collection = client.get_or_create_collection(
                name=_COLLECTION_NAME,
                metadata={"hnsw:space": "cosine"},
                embedding_function=None,
            )
        except Exception as exc:
            raise RetrievalError(f"Could not open vector index: {exc}") from exc
        logger.info("retrieval.ann_initialized", path=str(self._vector_db_path))
        return self._collection

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def index(self, owner: str, content: str, source: str) -> str:
        """Embed and store one chunk; returns its id. Nothing is stored if embedding fails."""
        if not content:
            raise ValueError("Cannot index empty content")
        embedding = self._embedder.embed(content)
        chunk_id = uuid.uuid4().hex
        created_at = time.time()

        collection = self._ann_collection()
        if collection is not None:
            try:
                collection.upsert(
                    ids=[chunk_id],
                    embeddings=[embedding],
                    metadatas=[{"owner": owner, "source": source, "created_at": created_at}],
                )
            except Exception as exc:
                raise RetrievalError(f"Vector index upsert failed: {exc}") from exc

        with self._store.transaction() as conn:
            conn.execute(
                """INSERT INTO content_chunks (chunk_id, owner, content, source, embedding, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (chunk_id, owner, content, source, json.dumps(embedding), created_at),
            )
        logger.debug("retrieval.indexed", owner=owner, source=source, chunk_id=chunk_id)
        return chunk_id

    def delete(self, owner: str, chunk_id: str) -> bool:
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM content_chunks WHERE owner = ? AND chunk_id = ?",
                (owner, chunk_id),
            )
        collection = self._ann_collection()
        if collection is not None and cursor.rowcount:
            collection.delete(ids=[chunk_id])
        return cursor.rowcount > 0

    def count(self, owner: str) -> int:
        row = self._store.fetchone(
            "SELECT COUNT(*) AS n FROM content_chunks WHERE owner = ?", (owner,)
        )
        return int(row["n"]) if row else 0

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def query(
        self,
        owner: str,
        text: str,
        k: int,
        source_filter: Optional[str] = None,
        min_similarity: Optional[float] = None,
    ) -> list[RetrievalResult]:
        if not text or k <= 0:
            return []
        threshold = self._config.similarity_threshold if min_similarity is None else min_similarity
        query_vector = np.asarray(self._embedder.embed(text), dtype=np.float64)

        chunk_count = self.count(owner)
        if chunk_count == 0:
            return []

        use_ann = self._config.ann_enabled and chunk_count > self._config.linear_scan_max_chunks
        if use_ann:
            rows = self._ann_candidates(owner, query_vector, k, source_filter)
        else:
            rows = self._owner_rows(owner, source_filter)

        results = self._rank(rows, query_vector, threshold)[:k]
        logger.debug(
            "retrieval.query",
            owner=owner,
            path="ann" if use_ann else "scan",
            candidates=len(rows),
            returned=len(results),
        )
        return results

    def _owner_rows(self, owner: str, source_filter: Optional[str]) -> list[Any]:
        if source_filter:
            return self._store.fetchall(
                "SELECT * FROM content_chunks WHERE owner = ? AND source = ?",
                (owner, source_filter),
            )
        return self._store.fetchall("SELECT * FROM content_chunks WHERE owner = ?", (owner,))

    def _ann_candidates(
        self,
        owner: str,
        query_vector: np.ndarray,
        k: int,
        source_filter: Optional[str],
    ) -> list[Any]:
        collection = self._ann_collection()
        where: dict[str, Any] = {"owner": owner}
        if source_filter:
            where = {"$and": [{"owner": owner}, {"source": source_filter}]}
        try:
            result = collection.query(
                query_embeddings=[query_vector.tolist()],
                n_results=max(1, k * self._config.ann_candidate_multiplier),
                where=where,
                include=["distances"],
            )
        except Exception as exc:
            raise RetrievalError(f"Vector index query failed: {exc}") from exc

        ids = (result.get("ids") or [[]])[0]
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        return self._store.fetchall(
            f"SELECT * FROM content_chunks WHERE owner = ? AND chunk_id IN ({placeholders})",
            (owner, *ids),
        )

    @staticmethod
    def _rank(rows: list[Any], query_vector: np.ndarray, threshold: float) -> list[RetrievalResult]:
        if not rows:
            return []
        embeddings = [json.loads(r["embedding"]) for r in rows]
        width = len(query_vector)
        matrix = np.zeros((len(rows), width), dtype=np.float64)
        for i, emb in enumerate(embeddings):
            # Chunks embedded with a different dimension cannot be compared.
            if len(emb) == width:
                matrix[i] = emb
        sims = cosine_similarities(matrix, query_vector)

        results = [
            RetrievalResult(
                content=row["content"],
                source=row["source"],
                similarity=float(sim),
                created_at=float(row["created_at"]),
                chunk_id=row["chunk_id"],
            )
            for row, sim in zip(rows, sims)
            if sim >= threshold
        ]
        results.sort(key=lambda r: (-r.similarity, -r.created_at))
        return results
