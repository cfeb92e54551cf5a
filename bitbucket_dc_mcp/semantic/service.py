"""Semantic Search Service: maps natural-language queries to ranked operations.

Pipeline for one call:
  1. Validate and trim the query, normalise the limit.
  2. Unless the query starts with the bypass prefix, look up the SHA-256
     of the query in the QueryCache and return a copy on hit.
  3. Embed the query with the lazily created generator.
  4. Search the vector index.
  5. Cache the raw result list (unless bypassed) and return a copy.

Scores are returned exactly as the index reports them; clamping is left
to the tool layer.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import numbers
from typing import Any, Awaitable, Callable, Optional

import structlog

from bitbucket_dc_mcp.errors import DatabaseError, ModelLoadError, ValidationError
from bitbucket_dc_mcp.semantic.cache import QueryCache
from bitbucket_dc_mcp.semantic.embedder import (
    EmbeddingGenerator,
    create_sentence_transformer_generator,
)
from bitbucket_dc_mcp.semantic.results import EmbeddingsIndex, SearchResult

log = structlog.get_logger()

DEFAULT_LIMIT = 5
MIN_LIMIT = 1
MAX_LIMIT = 100
MAX_QUERY_LENGTH = 1000
DEFAULT_CACHE_SIZE = 1000
DEFAULT_CACHE_TTL = 60 * 60  # 1 hour
DEFAULT_CACHE_BYPASS_PREFIX = "_"

GeneratorFactory = Callable[[], Awaitable[EmbeddingGenerator]]


class SemanticSearchService:
    """Cache-fronted embedding search over the operation index.

    The embedding generator is built at most once per instance. Concurrent
    first callers await the same in-flight task; if that task fails it is
    forgotten so the next call retries construction.
    """

    def __init__(
        self,
        index: EmbeddingsIndex,
        cache: Optional[QueryCache[list[SearchResult]]] = None,
        embedding_generator_factory: Optional[GeneratorFactory] = None,
        cache_bypass_prefix: str = DEFAULT_CACHE_BYPASS_PREFIX,
        default_limit: int = DEFAULT_LIMIT,
        min_limit: int = MIN_LIMIT,
        max_limit: int = MAX_LIMIT,
        max_query_length: int = MAX_QUERY_LENGTH,
        logger: Any = None,
    ):
        self._index = index
        self._log = logger or log
        self._cache = cache if cache is not None else QueryCache(
            DEFAULT_CACHE_SIZE, DEFAULT_CACHE_TTL, logger=self._log
        )
        self._factory = embedding_generator_factory or create_sentence_transformer_generator
        self._bypass_prefix = cache_bypass_prefix
        self._default_limit = default_limit
        self._min_limit = min_limit
        self._max_limit = max_limit
        self._max_query_length = max_query_length

        self._generator_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, query: str, limit: Optional[float] = None) -> list[SearchResult]:
        """Return operations ranked by similarity to `query`.

        Raises:
            ValidationError: Query is not a string, is blank, or too long.
            ModelLoadError: The embedding model could not be loaded or run.
            DatabaseError: The vector index failed.
        """
        normalized = self.normalize_query(query)
        effective_limit = self.normalize_limit(limit)

        bypass = bool(self._bypass_prefix) and normalized.startswith(self._bypass_prefix)
        cache_key = None if bypass else self.hash_query(normalized)

        if cache_key is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._log.debug("search.cache_hit", query=normalized)
                return list(cached)

        self._log.debug(
            "search.start", query=normalized, limit=effective_limit, cache_bypass=bypass
        )

        try:
            query_vector = await self._generate_embedding(normalized)
        except (ModelLoadError, ValidationError):
            raise
        except Exception as e:
            self._log.error("search.error", stage="embedding", query=normalized, error=repr(e))
            raise ModelLoadError(
                "Unable to generate embedding for the provided query"
            ) from e

        try:
            results = await self._index.search(query_vector, effective_limit)
        except DatabaseError:
            raise
        except Exception as e:
            self._log.error("search.error", stage="retrieval", query=normalized, error=repr(e))
            raise DatabaseError("Semantic search failed due to a database error") from e

        results = list(results)
        if cache_key is not None:
            self._cache.set(cache_key, results)

        self._log.debug("search.success", query=normalized, results=len(results))
        return list(results)

    # ------------------------------------------------------------------
    # Embedding generator lifecycle
    # ------------------------------------------------------------------

    async def _generate_embedding(self, query: str):
        generator = await self._get_generator()
        return await generator.generate(query)

    async def _get_generator(self) -> EmbeddingGenerator:
        task = self._generator_task
        if task is None:
            task = asyncio.ensure_future(self._factory())
            task.add_done_callback(self._on_generator_ready)
            self._generator_task = task
        # Shield so a caller's timeout does not cancel the shared load.
        return await asyncio.shield(task)

    def _on_generator_ready(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            if self._generator_task is task:
                self._generator_task = None
            if not task.cancelled():
                self._log.warning("search.generator_init_failed", error=repr(task.exception()))

    @property
    def generator_ready(self) -> bool:
        task = self._generator_task
        return task is not None and task.done() and not task.cancelled() and task.exception() is None

    async def close(self) -> None:
        """Dispose the embedding generator, if one was created."""
        task, self._generator_task = self._generator_task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            return
        if task.cancelled() or task.exception() is not None:
            return
        dispose = getattr(task.result(), "dispose", None)
        if dispose is not None:
            outcome = dispose()
            if asyncio.iscoroutine(outcome):
                await outcome

    # ------------------------------------------------------------------
    # Normalisation helpers
    # ------------------------------------------------------------------

    def normalize_query(self, query: Any) -> str:
        if not isinstance(query, str):
            raise ValidationError("Query must be a string")

        trimmed = query.strip()
        if not trimmed:
            raise ValidationError("Query cannot be empty")

        if len(trimmed) > self._max_query_length:
            raise ValidationError(
                f"Query exceeds maximum length of {self._max_query_length} characters"
            )
        return trimmed

    def normalize_limit(self, limit: Any) -> int:
        if isinstance(limit, bool) or not isinstance(limit, numbers.Real):
            return self._default_limit
        if not math.isfinite(limit):
            return self._default_limit

        truncated = int(limit)
        return max(self._min_limit, min(truncated, self._max_limit))

    @staticmethod
    def hash_query(query: str) -> str:
        return hashlib.sha256(query.encode("utf-8")).hexdigest()

    @property
    def cache(self) -> QueryCache[list[SearchResult]]:
        return self._cache
