"""
Bitbucket Data Center MCP Server: Main entry point.

Exposes the Bitbucket Data Center REST API to LLM clients through three
MCP tools, served over Streamable HTTP (default) or stdio.

Architecture:
  - Starlette app (root):   health, Prometheus metrics, MCP mount
  - FastMCP sub-app:        search_ids, get_id, call_id
  - SemanticSearchService:  QueryCache + sentence-transformers + FAISS
  - OperationsCatalog:      operations.json extracted from the OpenAPI document
  - BitbucketClient:        httpx client executing catalog operations
"""

import asyncio
import contextlib
import logging
import sys
from dataclasses import dataclass, field
from typing import Optional

import structlog
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Mount, Route

from mcp.server.fastmcp import FastMCP

from bitbucket_dc_mcp.client.bitbucket import BitbucketClient
from bitbucket_dc_mcp.client.rate_limiter import TokenBucket
from bitbucket_dc_mcp.config import Settings, get_settings
from bitbucket_dc_mcp.data.operations import OperationsCatalog
from bitbucket_dc_mcp.metrics import Metrics
from bitbucket_dc_mcp.semantic.cache import QueryCache
from bitbucket_dc_mcp.semantic.embedder import create_sentence_transformer_generator
from bitbucket_dc_mcp.semantic.faiss_index import OperationIndex
from bitbucket_dc_mcp.semantic.service import SemanticSearchService
from bitbucket_dc_mcp.tools.call_id import register_call_id_tool
from bitbucket_dc_mcp.tools.get_id import (
    DETAIL_CACHE_SIZE,
    DETAIL_CACHE_TTL,
    register_get_id_tool,
)
from bitbucket_dc_mcp.tools.search import register_search_tool

# ---------------------------------------------------------------------------
# Load & validate configuration at import time
# ---------------------------------------------------------------------------
settings = get_settings()

# ---------------------------------------------------------------------------
# Logging setup (stderr, so stdio transport framing stays clean)
# ---------------------------------------------------------------------------
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level.upper())
    ),
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
)
log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Shared components (populated during startup)
# ---------------------------------------------------------------------------
@dataclass
class Components:
    settings: Settings
    catalog: Optional[OperationsCatalog] = None
    index: Optional[OperationIndex] = None
    search_service: Optional[SemanticSearchService] = None
    client: Optional[BitbucketClient] = None
    detail_cache: Optional[QueryCache] = None
    metrics: Metrics = field(default_factory=Metrics)


components = Components(settings=settings)
_stats_task: Optional[asyncio.Task] = None

# ---------------------------------------------------------------------------
# FastMCP server: all tools registered here
# ---------------------------------------------------------------------------
mcp_server = FastMCP(
    "Bitbucket Data Center MCP Server",
    stateless_http=True,
    json_response=True,
)

register_search_tool(mcp_server, components)
register_get_id_tool(mcp_server, components)
register_call_id_tool(mcp_server, components)


# ---------------------------------------------------------------------------
# Background cache statistics loop
# ---------------------------------------------------------------------------
async def _periodic_cache_stats():
    """Log cache.stats every settings.cache_stats_interval seconds."""
    while True:
        await asyncio.sleep(settings.cache_stats_interval)
        if components.search_service is not None:
            components.search_service.cache.log_stats()


# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------
async def startup():
    """Build every component. A missing index leaves search_ids in degraded mode."""
    global _stats_task

    log.info("startup_begin", bitbucket_url=settings.bitbucket_url, transport=settings.transport)

    # 1. Operations catalog (required by get_id and call_id)
    components.catalog = OperationsCatalog(settings.operations_path)
    log.info("catalog_ready", operations=len(components.catalog))
    components.detail_cache = QueryCache(DETAIL_CACHE_SIZE, DETAIL_CACHE_TTL)

    # 2. Vector index + semantic search (optional)
    index = OperationIndex(settings.index_path)
    if index.load():
        components.index = index
        search_cache = QueryCache(settings.search_cache_size, settings.search_cache_ttl)
        components.search_service = SemanticSearchService(
            index,
            cache=search_cache,
            embedding_generator_factory=lambda: create_sentence_transformer_generator(
                settings.embedding_model
            ),
            cache_bypass_prefix=settings.search_cache_bypass_prefix,
            default_limit=settings.search_default_limit,
            min_limit=settings.search_min_limit,
            max_limit=settings.search_max_limit,
            max_query_length=settings.max_query_length,
        )
        log.info("search_service_ready", vectors=index.total_vectors)
    else:
        log.warning(
            "search_service_degraded",
            index_dir=str(settings.index_path),
            impact="search_ids tool unavailable",
            workaround="run python -m bitbucket_dc_mcp.semantic.indexer",
        )

    # 3. Bitbucket REST client
    if not settings.auth_headers:
        log.warning("bitbucket_client_no_credentials")
    components.client = BitbucketClient(
        settings.bitbucket_url,
        components.catalog,
        headers=settings.auth_headers,
        timeout=settings.request_timeout,
        rate_limiter=TokenBucket(settings.rate_limit, settings.rate_limit),
        metrics=components.metrics,
    )

    # 4. Background stats task
    if settings.cache_stats_interval > 0:
        _stats_task = asyncio.create_task(_periodic_cache_stats())

    log.info("startup_complete")


async def shutdown():
    log.info("shutdown_begin")

    if _stats_task:
        _stats_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _stats_task

    if components.search_service:
        components.search_service.cache.log_stats()
        await components.search_service.close()

    if components.client:
        await components.client.aclose()

    log.info("shutdown_complete")


@contextlib.asynccontextmanager
async def lifespan(app: Starlette):
    """Initialise all components on startup; clean up on shutdown."""
    await startup()
    async with mcp_server.session_manager.run():
        # ---- yield (server runs here) ----
        yield
    await shutdown()


# ---------------------------------------------------------------------------
# HTTP endpoints
# ---------------------------------------------------------------------------
async def health(request: Request) -> JSONResponse:
    """Health check endpoint."""
    status: dict = {"status": "ok", "service": "Bitbucket Data Center MCP Server"}

    if components.catalog is not None:
        status["catalog"] = {"operations": len(components.catalog)}

    service = components.search_service
    if service is None or components.index is None or not components.index.ping():
        status["status"] = "degraded"
        status["index"] = {"error": "unavailable"}
    else:
        status["index"] = {"vectors": components.index.total_vectors}
        status["cache"] = {
            "available": service.cache.health_check(),
            **service.cache.get_stats(),
        }
        status["embedding_model_loaded"] = service.generator_ready

    return JSONResponse(status)


async def metrics(request: Request) -> Response:
    """Prometheus scrape endpoint."""
    if components.search_service is not None:
        components.metrics.update_cache(components.search_service.cache.get_stats())
    return Response(components.metrics.render(), media_type=components.metrics.content_type)


# ---------------------------------------------------------------------------
# Starlette application
# ---------------------------------------------------------------------------
app = Starlette(
    routes=[
        # Health check (public)
        Route("/health", health, methods=["GET"]),
        # Prometheus scrape target
        Route("/metrics", metrics, methods=["GET"]),
        # MCP Streamable HTTP transport
        Mount("/", app=mcp_server.streamable_http_app()),
    ],
    lifespan=lifespan,
)


async def _run_stdio():
    await startup()
    try:
        await mcp_server.run_stdio_async()
    finally:
        await shutdown()


def run():
    """Console entrypoint."""
    if settings.transport == "stdio":
        asyncio.run(_run_stdio())
        return

    import uvicorn

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


# ---------------------------------------------------------------------------
# CLI / Docker entrypoint
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run()
