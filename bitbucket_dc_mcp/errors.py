"""Error taxonomy shared by the search core, the REST client and the tools."""

from __future__ import annotations

from typing import Any, Optional


# ---------------------------------------------------------------------------
# Semantic search core
# ---------------------------------------------------------------------------

class SearchError(Exception):
    """Base class for failures surfaced by the semantic search pipeline."""
    pass


class ValidationError(SearchError):
    """Raised when a caller supplies a malformed query. Never retried."""
    pass


class ModelLoadError(SearchError):
    """Raised when the embedding model cannot be loaded or run."""
    pass


class DatabaseError(SearchError):
    """Raised when the vector index cannot execute a similarity search."""
    pass


# ---------------------------------------------------------------------------
# Tool layer
# ---------------------------------------------------------------------------

class ToolExecutionError(Exception):
    """Raised by an MCP tool; the message is shown to the client."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class SearchTimeoutError(ToolExecutionError):
    """Raised when a semantic search exceeds the tool's time budget."""
    pass


class OperationNotFoundError(Exception):
    """Raised when an operation id is not in the catalog."""

    def __init__(self, operation_id: str):
        super().__init__(f"Operation '{operation_id}' not found")
        self.operation_id = operation_id


class DegradedModeError(ToolExecutionError):
    """Raised when a tool depends on a component that failed to start."""

    def __init__(self, component: str, message: str, available_features: list[str]):
        super().__init__(message, {"component": component})
        self.component = component
        self.available_features = available_features


# ---------------------------------------------------------------------------
# Bitbucket REST client
# ---------------------------------------------------------------------------

class BitbucketClientError(Exception):
    """Base class for Bitbucket REST failures."""

    def __init__(
        self,
        message: str,
        status_code: int,
        operation_id: str,
        response: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.operation_id = operation_id
        self.response = response


class BitbucketValidationError(BitbucketClientError):
    """400 Bad Request."""

    def __init__(self, message: str, operation_id: str, response: Any = None):
        super().__init__(message, 400, operation_id, response)


class AuthError(BitbucketClientError):
    """401 / 403: bad credentials or missing permission."""
    pass


class NotFoundError(BitbucketClientError):
    """404 Not Found."""

    def __init__(self, message: str, operation_id: str, response: Any = None):
        super().__init__(message, 404, operation_id, response)


class RateLimitError(BitbucketClientError):
    """429 Too Many Requests."""

    def __init__(
        self,
        message: str,
        operation_id: str,
        response: Any = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message, 429, operation_id, response)
        self.retry_after = retry_after


class ServerError(BitbucketClientError):
    """5xx from Bitbucket."""
    pass


class RequestTimeoutError(BitbucketClientError):
    """The HTTP request exceeded the configured timeout."""

    def __init__(self, message: str, operation_id: str):
        super().__init__(message, 0, operation_id)
