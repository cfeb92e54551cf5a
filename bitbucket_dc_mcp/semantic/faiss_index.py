"""FAISS index of operation embeddings.

Uses IndexIDMap(IndexFlatIP) so:
  - Each operation gets a sequential int64 ID (catalog order)
  - Inner product on L2-normalised vectors = cosine similarity

Stored and query vectors are both re-normalised before they reach FAISS,
so scores stay true cosine similarities even for unnormalised input.

One sidecar JSON file is persisted alongside the FAISS binary:
  - operations_meta.json : {id_str: {operation_id, summary, description}}
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import numpy as np
import structlog

from bitbucket_dc_mcp.errors import DatabaseError
from bitbucket_dc_mcp.semantic.embedder import EMBEDDING_DIM
from bitbucket_dc_mcp.semantic.results import SearchResult

if TYPE_CHECKING:
    from bitbucket_dc_mcp.data.operations import Operation

log = structlog.get_logger()

INDEX_FILENAME = "index.faiss"
META_FILENAME = "operations_meta.json"


def _normalised(vectors, dimension: int) -> np.ndarray:
    import faiss
    array = np.array(vectors, dtype=np.float32, copy=True).reshape(-1, dimension)
    faiss.normalize_L2(array)
    return array


class OperationIndex:
    """Cosine-similarity index mapping vectors back to Bitbucket operations."""

    def __init__(self, index_dir: Path, dimension: int = EMBEDDING_DIM):
        self._index_dir = Path(index_dir)
        self._dimension = dimension

        self._index = None                    # faiss.IndexIDMap
        self._meta: dict[str, dict] = {}      # id_str -> {operation_id, summary, description}

        self._init_index()

    def _init_index(self):
        """Create a fresh in-memory FAISS index."""
        import faiss
        flat = faiss.IndexFlatIP(self._dimension)
        self._index = faiss.IndexIDMap(flat)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self):
        """Save FAISS index and sidecar metadata to disk."""
        import faiss
        self._index_dir.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self._index, str(self._index_dir / INDEX_FILENAME))
        (self._index_dir / META_FILENAME).write_text(
            json.dumps(self._meta), encoding="utf-8"
        )
        log.info("faiss_saved", vectors=self._index.ntotal)

    def load(self) -> bool:
        """Load FAISS index and metadata from disk.

        Returns True if loaded successfully, False if no usable index exists.
        """
        import faiss

        index_path = self._index_dir / INDEX_FILENAME
        meta_path = self._index_dir / META_FILENAME

        if not index_path.exists() or not meta_path.exists():
            return False

        try:
            self._index = faiss.read_index(str(index_path))
            self._dimension = self._index.d
            self._meta = json.loads(meta_path.read_text(encoding="utf-8"))
            log.info("faiss_loaded", vectors=self._index.ntotal, dimension=self._dimension)
            return True
        except Exception:
            log.exception("faiss_load_failed", path=str(index_path))
            self._init_index()
            self._meta = {}
            return False

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def add(self, operations: Sequence["Operation"], vectors):
        """Add operations and their vectors to the index.

        Args:
            operations: Catalog entries (for metadata), in catalog order.
            vectors: Float array of shape (len(operations), dimension).
        """
        if not operations:
            return

        array = _normalised(vectors, self._dimension)
        if array.shape[0] != len(operations):
            raise ValueError(
                f"Got {array.shape[0]} vectors for {len(operations)} operations"
            )

        start = self._index.ntotal
        ids = np.arange(start, start + len(operations), dtype=np.int64)
        self._index.add_with_ids(array, ids)

        for idx, operation in zip(ids, operations):
            self._meta[str(int(idx))] = {
                "operation_id": operation.operation_id,
                "summary": operation.summary,
                "description": operation.description,
            }

        log.debug("faiss_add", count=len(operations), total=self._index.ntotal)

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    async def search(self, query_vector, limit: int) -> list[SearchResult]:
        """Return up to `limit` operations ordered by descending cosine similarity.

        Raises:
            DatabaseError: If FAISS cannot execute the query.
        """
        try:
            return await asyncio.to_thread(self._search_sync, query_vector, limit)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Vector index search failed: {e}") from e

    def _search_sync(self, query_vector, limit: int) -> list[SearchResult]:
        if self._index is None:
            raise DatabaseError("Vector index is not initialised")
        if self._index.ntotal == 0 or limit <= 0:
            return []

        query = _normalised(query_vector, self._dimension)
        if query.shape[0] != 1:
            raise DatabaseError("Expected exactly one query vector")

        k = min(limit, self._index.ntotal)
        scores, indices = self._index.search(query, k)

        results = []
        for score, idx in zip(scores[0], indices[0]):
            if idx == -1:
                continue
            meta = self._meta.get(str(int(idx)))
            if meta is None:
                continue
            results.append(SearchResult(
                operation_id=meta["operation_id"],
                summary=meta["summary"],
                description=meta["description"],
                similarity_score=float(score),
            ))

        return results

    def ping(self) -> bool:
        """Cheap liveness check used by /health."""
        return self._index is not None and self._index.ntotal == len(self._meta)

    @property
    def total_vectors(self) -> int:
        return self._index.ntotal if self._index else 0

    @property
    def dimension(self) -> int:
        return self._dimension
