"""Async Bitbucket Data Center REST client.

Executes catalog operations: substitutes path parameters, splits the rest
into query string and JSON body, and maps error statuses onto the
BitbucketClientError hierarchy. Requests pass through an optional token bucket
and are counted in the optional Prometheus metrics. No retries; callers decide.
"""

from __future__ import annotations

import re
import time
from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from bitbucket_dc_mcp.client.rate_limiter import TokenBucket
from bitbucket_dc_mcp.data.operations import Operation, OperationsCatalog
from bitbucket_dc_mcp.errors import (
    AuthError,
    BitbucketClientError,
    BitbucketValidationError,
    NotFoundError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
)
from bitbucket_dc_mcp.metrics import Metrics

log = structlog.get_logger()

BODY_METHODS = ("POST", "PUT", "PATCH")
BODY_KEYS = ("body", "fields")
_PLACEHOLDER = re.compile(r"\{([^}]+)\}")
_ENCODED_SLASH = re.compile(r"%(25)?2F", re.IGNORECASE)


def normalize_bitbucket_path(path: str) -> str:
    """Decode %2F (and double-encoded %252F) back to '/' in the path part."""
    head, sep, query = path.partition("?")
    return _ENCODED_SLASH.sub("/", head) + sep + query


class BitbucketClient:
    """Thin httpx wrapper bound to one Bitbucket instance."""

    def __init__(
        self,
        base_url: str,
        catalog: OperationsCatalog,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[TokenBucket] = None,
        metrics: Optional[Metrics] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._catalog = catalog
        self._timeout = timeout
        self._rate_limiter = rate_limiter
        self._metrics = metrics
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                **(headers or {}),
            },
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_path(self, operation: Operation, params: dict[str, Any]) -> str:
        def substitute(match: re.Match) -> str:
            value = params.get(match.group(1))
            if value is None:
                return match.group(0)
            return quote(str(value), safe="")

        return normalize_bitbucket_path(_PLACEHOLDER.sub(substitute, operation.path))

    def build_query(self, operation: Operation, params: dict[str, Any]) -> dict[str, Any]:
        path_names = set(_PLACEHOLDER.findall(operation.path))
        declared = {p["name"] for p in operation.params_in("query")}
        query = {}
        for key, value in params.items():
            if key in path_names or key in BODY_KEYS or value is None:
                continue
            if operation.method in BODY_METHODS and key not in declared:
                continue
            query[key] = value
        return query

    def build_body(self, operation: Operation, params: dict[str, Any]) -> Any:
        if operation.method not in BODY_METHODS:
            return None
        for key in BODY_KEYS:
            if key in params:
                return params[key]
        if "text" in params:
            return {"text": params["text"]}

        path_names = set(_PLACEHOLDER.findall(operation.path))
        declared = {p["name"] for p in operation.params_in("query")}
        body = {k: v for k, v in params.items() if k not in path_names and k not in declared}
        return body or None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_operation(
        self, operation_id: str, params: Optional[dict[str, Any]] = None
    ) -> Any:
        """Call the REST endpoint behind `operation_id` and return decoded JSON."""
        operation = self._catalog.get_operation(operation_id)
        if operation is None:
            raise BitbucketClientError(
                f"Operation '{operation_id}' not found in operations catalog",
                0,
                operation_id,
            )

        params = params or {}
        url = self._base_url + self.build_path(operation, params)
        query = self.build_query(operation, params)
        body = self.build_body(operation, params)

        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()

        log.info(
            "bitbucket_client.request_start",
            operation_id=operation_id,
            method=operation.method,
            path=operation.path,
        )
        started = time.perf_counter()

        try:
            response = await self._client.request(
                operation.method, url, params=query or None, json=body
            )
        except httpx.TimeoutException as e:
            self._observe(operation_id, "timeout", started)
            log.error(
                "bitbucket_client.timeout",
                operation_id=operation_id,
                timeout=self._timeout,
            )
            raise RequestTimeoutError(
                f"Request timed out after {self._timeout}s", operation_id
            ) from e
        except httpx.HTTPError as e:
            self._observe(operation_id, "transport_error", started)
            log.error(
                "bitbucket_client.transport_error",
                operation_id=operation_id,
                error=str(e),
            )
            raise BitbucketClientError(
                f"Request to Bitbucket failed: {e}", 0, operation_id
            ) from e

        elapsed = self._observe(operation_id, str(response.status_code), started)
        log.info(
            "bitbucket_client.response_received",
            operation_id=operation_id,
            status=response.status_code,
            latency_ms=round(elapsed * 1000, 1),
        )

        if response.is_error:
            self._raise_for_status(response, operation_id)

        return self._decode(response)

    def _observe(self, operation_id: str, status: str, started: float) -> float:
        elapsed = time.perf_counter() - started
        if self._metrics is not None:
            self._metrics.observe_request(operation_id, status, elapsed)
        return elapsed

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        if "json" in response.headers.get("content-type", ""):
            return response.json()
        return response.text

    def _raise_for_status(self, response: httpx.Response, operation_id: str):
        try:
            body = response.json()
        except ValueError:
            body = response.text or None

        message = _extract_error_message(body, response.reason_phrase)
        status = response.status_code
        log.error(
            "bitbucket_client.error_response",
            operation_id=operation_id,
            status_code=status,
            error_message=message,
        )

        if status == 400:
            raise BitbucketValidationError(message, operation_id, body)
        if status in (401, 403):
            raise AuthError(message, status, operation_id, body)
        if status == 404:
            raise NotFoundError(message, operation_id, body)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                message,
                operation_id,
                body,
                int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 500:
            raise ServerError(message, status, operation_id, body)
        raise BitbucketClientError(message, status, operation_id, body)

    async def aclose(self):
        await self._client.aclose()


def _extract_error_message(body: Any, fallback: str) -> str:
    """Pull a readable message out of Bitbucket's `{"errors": [...]}` payload."""
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            messages = [e.get("message") for e in errors if isinstance(e, dict) and e.get("message")]
            if messages:
                return "; ".join(messages)
        if isinstance(body.get("message"), str):
            return body["message"]
    if isinstance(body, str) and body.strip():
        return body.strip()[:500]
    return fallback or "Unknown error"
