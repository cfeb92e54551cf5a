"""call_id MCP tool: execute a Bitbucket operation with caller-supplied parameters."""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Any, Optional, Union

import structlog

from mcp.server.fastmcp import FastMCP

from bitbucket_dc_mcp.data.operations import Operation, OperationsCatalog
from bitbucket_dc_mcp.errors import (
    BitbucketClientError,
    OperationNotFoundError,
    RateLimitError,
    ToolExecutionError,
)
from bitbucket_dc_mcp.tools.sanitizer import sanitize
from bitbucket_dc_mcp.tools.validators import type_errors

if TYPE_CHECKING:
    from bitbucket_dc_mcp.client.bitbucket import BitbucketClient
    from bitbucket_dc_mcp.main import Components

log = structlog.get_logger()


def parse_parameters(parameters: Union[dict, str, None]) -> dict[str, Any]:
    """Accept a dict or a JSON string holding an object."""
    if parameters is None:
        return {}
    if isinstance(parameters, dict):
        return parameters
    if isinstance(parameters, str):
        if not parameters.strip():
            return {}
        try:
            parsed = json.loads(parameters)
        except json.JSONDecodeError as e:
            raise ToolExecutionError(f"Invalid input: invalid JSON string: {e}") from e
        if not isinstance(parsed, dict):
            raise ToolExecutionError("Invalid input: parameters must be a JSON object")
        return parsed
    raise ToolExecutionError("Invalid input: parameters must be an object or JSON string")


def validate_parameters(operation: Operation, params: dict[str, Any]) -> list[dict[str, str]]:
    """Check required parameters, required request bodies and declared value types."""
    errors = []
    for param in operation.params_in("path"):
        if params.get(param["name"]) in (None, ""):
            errors.append({
                "field": param["name"],
                "message": "Required path parameter is missing",
            })

    for param in operation.params_in("query"):
        if param.get("required") and params.get(param["name"]) is None:
            errors.append({
                "field": param["name"],
                "message": "Required query parameter is missing",
            })

    body = operation.request_body or {}
    if body.get("required") and operation.method in ("POST", "PUT", "PATCH"):
        declared = {p["name"] for p in operation.parameters}
        has_body = any(k in params for k in ("body", "fields", "text")) or any(
            k not in declared for k in params
        )
        if not has_body:
            errors.append({"field": "body", "message": "Request body is required"})

    errors.extend(type_errors(operation, params))
    return errors


def _error_payload(error: BitbucketClientError) -> dict:
    payload = {
        "error": type(error).__name__,
        "message": str(error),
        "status_code": error.status_code,
        "operation_id": error.operation_id,
    }
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        payload["retry_after"] = error.retry_after
    if error.response is not None:
        payload["details"] = error.response
    return payload


async def run_call_id(
    catalog: OperationsCatalog,
    client: "BitbucketClient",
    operation_id: str,
    parameters: Union[dict, str, None] = None,
) -> dict:
    """Validate parameters and execute the operation.

    Returns a dict with either `result` or `error`; Bitbucket failures are
    reported in the payload rather than raised.
    """
    if not isinstance(operation_id, str) or not operation_id.strip():
        raise ToolExecutionError("Invalid input: operation_id cannot be empty")
    operation_id = operation_id.strip()

    operation = catalog.get_operation(operation_id)
    if operation is None:
        raise OperationNotFoundError(operation_id)

    params = parse_parameters(parameters)
    log.info("call_id.execution_start", operation_id=operation_id, method=operation.method)
    started = time.perf_counter()

    errors = validate_parameters(operation, params)
    if errors:
        log.warning("call_id.validation_failed", operation_id=operation_id, errors=errors)
        return {
            "error": "ValidationError",
            "message": "Invalid operation parameters",
            "errors": errors,
        }

    if operation.is_mutation:
        log.info(
            "call_id.audit",
            operation_id=operation_id,
            method=operation.method,
            parameters=sanitize(params),
        )

    try:
        result = await client.execute_operation(operation_id, params)
    except BitbucketClientError as e:
        log.error(
            "call_id.error",
            operation_id=operation_id,
            error_type=type(e).__name__,
            status_code=e.status_code,
            error=str(e),
        )
        return _error_payload(e)

    log.info(
        "call_id.success",
        operation_id=operation_id,
        latency_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return {"operation_id": operation_id, "result": result}


def register_call_id_tool(mcp: FastMCP, components: "Components"):
    """Register the call_id tool on the given FastMCP server."""

    @mcp.tool()
    async def call_id(operation_id: str, parameters: Optional[Union[dict, str]] = None) -> str:
        """Execute a Bitbucket Data Center REST operation.

        Args:
            operation_id: Operation id from search_ids / get_id.
            parameters: Path, query and body values as an object or JSON
                string. Put the request body under "body" (or "fields");
                otherwise remaining keys are sent as the body of
                POST/PUT/PATCH calls.

        Returns:
            JSON with "result" on success, or "error" / "message" /
            "status_code" when Bitbucket rejects the call.
        """
        with components.metrics.track_tool("call_id"):
            if components.catalog is None or components.client is None:
                raise ToolExecutionError("Bitbucket client is not initialised")
            payload = await run_call_id(
                components.catalog, components.client, operation_id, parameters
            )
        return json.dumps(payload, indent=2, default=str)

    return call_id
