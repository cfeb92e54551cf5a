"""search_ids MCP tool: natural-language search over Bitbucket operations."""

from __future__ import annotations

import asyncio
import json
import math
import time
from typing import TYPE_CHECKING, Any, Optional

import structlog

from mcp.server.fastmcp import FastMCP

from bitbucket_dc_mcp.errors import (
    DatabaseError,
    DegradedModeError,
    ModelLoadError,
    SearchTimeoutError,
    ToolExecutionError,
    ValidationError,
)

if TYPE_CHECKING:
    from bitbucket_dc_mcp.main import Components
    from bitbucket_dc_mcp.semantic.service import SemanticSearchService

log = structlog.get_logger()

SEARCH_TIMEOUT = 5.0
DEFAULT_LIMIT = 5
MIN_LIMIT = 1
MAX_LIMIT = 20


def clamp_score(score: Any) -> float:
    """Clamp a raw similarity score into [0, 1]; non-finite becomes 0."""
    try:
        value = float(score)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


async def run_search_ids(
    service: Optional["SemanticSearchService"],
    query: str,
    limit: int = DEFAULT_LIMIT,
    timeout: float = SEARCH_TIMEOUT,
) -> dict:
    """Run a semantic search and shape the result for MCP clients.

    Raises:
        DegradedModeError: The vector index is unavailable.
        SearchTimeoutError: The search exceeded `timeout` seconds.
        ToolExecutionError: Bad input or a transient backend failure.
    """
    if service is None:
        log.warning("search_ids.degraded_mode", component="OperationIndex")
        raise DegradedModeError(
            "OperationIndex",
            "Semantic search unavailable, use get_id with a known operation id",
            ["get_id", "call_id"],
        )

    if isinstance(limit, bool) or not isinstance(limit, int) or not MIN_LIMIT <= limit <= MAX_LIMIT:
        log.error("search_ids.validation_error", limit=limit)
        raise ToolExecutionError(
            f"Invalid input: limit must be an integer between {MIN_LIMIT} and {MAX_LIMIT}",
            {"limit": limit},
        )

    log.info("search_ids.start", query=query, limit=limit)
    started = time.perf_counter()

    try:
        results = await asyncio.wait_for(service.search(query, limit), timeout)
    except asyncio.TimeoutError:
        log.error("search_ids.timeout", query=query, timeout=timeout)
        raise SearchTimeoutError(
            f"Search timed out after {timeout:g}s, try a shorter or more specific query",
            {"query": query, "limit": limit},
        )
    except ValidationError as e:
        log.warning("search_ids.validation_error", query=query, error=str(e))
        raise ToolExecutionError(f"Invalid query: {e}", {"query": query})
    except (ModelLoadError, DatabaseError) as e:
        log.error(
            "search_ids.error",
            query=query,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise ToolExecutionError(
            "Semantic search temporarily unavailable, please try again",
            {"query": query, "limit": limit},
        ) from e

    operations = [
        {
            "operation_id": r.operation_id,
            "summary": r.summary,
            "similarity_score": clamp_score(r.similarity_score),
        }
        for r in results
    ]

    log.info(
        "search_ids.success",
        query=query,
        results_count=len(operations),
        latency_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return {"operations": operations}


def register_search_tool(mcp: FastMCP, components: "Components"):
    """Register the search_ids tool on the given FastMCP server."""

    @mcp.tool()
    async def search_ids(query: str, limit: int = DEFAULT_LIMIT) -> str:
        """Find Bitbucket Data Center REST operations matching a natural-language query.

        Use this first to discover the operation id, then call get_id for
        its parameters and call_id to execute it.

        Args:
            query: What you want to do, e.g. "list pull requests in a repository".
                Prefix with "_" to skip the result cache.
            limit: Number of operations to return (1-20, default 5).

        Returns:
            JSON object {"operations": [{operation_id, summary, similarity_score}]}
            with similarity_score in 0.0-1.0.
        """
        with components.metrics.track_tool("search_ids"):
            result = await run_search_ids(
                components.search_service,
                query,
                limit,
                timeout=components.settings.search_timeout,
            )
        return json.dumps(result, indent=2)

    return search_ids
