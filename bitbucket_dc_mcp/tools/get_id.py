"""get_id MCP tool: full details for one Bitbucket operation."""

from __future__ import annotations

import copy
import json
import time
from typing import TYPE_CHECKING, Any, Optional

import structlog

from mcp.server.fastmcp import FastMCP

from bitbucket_dc_mcp.data.operations import Operation, OperationsCatalog
from bitbucket_dc_mcp.errors import OperationNotFoundError, ToolExecutionError
from bitbucket_dc_mcp.semantic.cache import QueryCache

if TYPE_CHECKING:
    from bitbucket_dc_mcp.main import Components

log = structlog.get_logger()

DETAIL_CACHE_SIZE = 500
DETAIL_CACHE_TTL = 60 * 60
DOCUMENTATION_URL = "https://developer.atlassian.com/server/bitbucket/rest/v1000/intro/"
EXAMPLE_BASE_URL = "https://bitbucket.example.com"
SUCCESS_STATUSES = ("200", "201", "204")


def _first_example(media: Optional[dict[str, Any]]) -> Any:
    if not media:
        return None
    if "example" in media:
        return media["example"]
    examples = media.get("examples") or {}
    for example in examples.values():
        if isinstance(example, dict):
            return example.get("value")
    return None


def request_example(operation: Operation) -> Any:
    if not operation.request_body:
        return None
    content = operation.request_body.get("content") or {}
    return _first_example(content.get("application/json"))


def response_example(operation: Operation) -> Any:
    for status in SUCCESS_STATUSES:
        response = operation.responses.get(status)
        if response and response.get("content"):
            return _first_example(response["content"].get("application/json"))
    return None


def curl_example(operation: Operation, base_url: str = EXAMPLE_BASE_URL) -> str:
    """Build a copy-pasteable curl command with <placeholders>."""
    path = operation.path
    for param in operation.params_in("path"):
        path = path.replace("{%s}" % param["name"], "<%s>" % param["name"])

    query = operation.params_in("query")[:2]
    if query:
        path += "?" + "&".join(f"{p['name']}=<{p['name']}>" for p in query)

    lines = [
        f"curl -X {operation.method} '{base_url.rstrip('/')}{path}'",
        "  -H 'Authorization: Bearer <token>'",
        "  -H 'Content-Type: application/json'",
    ]
    if operation.request_body and operation.method != "GET":
        body = request_example(operation) or {}
        lines.append(f"  -d '{json.dumps(body, indent=2)}'")
    return " \\\n".join(lines)


def operation_details(operation: Operation, base_url: str = EXAMPLE_BASE_URL) -> dict:
    details = {
        "operation_id": operation.operation_id,
        "path": operation.path,
        "method": operation.method,
        "summary": operation.summary,
        "description": operation.description,
        "parameters": operation.parameters,
        "requestBody": operation.request_body,
        "responses": operation.responses,
        "examples": {
            "curl": curl_example(operation, base_url),
            "request": request_example(operation),
            "response": response_example(operation),
        },
        "documentation_url": DOCUMENTATION_URL,
        "deprecated": operation.deprecated,
    }
    if details["requestBody"] is None:
        del details["requestBody"]
    return details


async def run_get_id(
    catalog: OperationsCatalog,
    cache: QueryCache[dict],
    operation_id: str,
    base_url: str = EXAMPLE_BASE_URL,
) -> dict:
    """Return operation details, served from `cache` when possible.

    Raises:
        ToolExecutionError: `operation_id` is empty.
        OperationNotFoundError: The id is not in the catalog.
    """
    if not isinstance(operation_id, str) or not operation_id.strip():
        raise ToolExecutionError("Invalid input: operation_id cannot be empty")
    operation_id = operation_id.strip()

    started = time.perf_counter()
    cached = cache.get(operation_id)
    if cached is not None:
        log.info("get_id.success", operation_id=operation_id, cache_hit=True)
        return copy.deepcopy(cached)

    operation = catalog.get_operation(operation_id)
    if operation is None:
        log.warning("get_id.not_found", operation_id=operation_id)
        raise OperationNotFoundError(operation_id)

    details = copy.deepcopy(operation_details(operation, base_url))
    cache.set(operation_id, details)

    log.info(
        "get_id.success",
        operation_id=operation_id,
        cache_hit=False,
        deprecated=operation.deprecated,
        latency_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return copy.deepcopy(details)


def register_get_id_tool(mcp: FastMCP, components: "Components"):
    """Register the get_id tool on the given FastMCP server."""

    @mcp.tool()
    async def get_id(operation_id: str) -> str:
        """Get the full definition of a Bitbucket operation.

        Args:
            operation_id: Operation id returned by search_ids, e.g. "getPullRequests".

        Returns:
            JSON with path, method, parameters, requestBody, responses,
            a curl example and a documentation link.
        """
        with components.metrics.track_tool("get_id"):
            if components.catalog is None:
                raise ToolExecutionError("Operations catalog is not loaded")
            details = await run_get_id(
                components.catalog,
                components.detail_cache,
                operation_id,
                base_url=components.settings.bitbucket_url,
            )
        return json.dumps(details, indent=2)

    return get_id
