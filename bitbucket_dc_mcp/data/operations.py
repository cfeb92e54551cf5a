"""Operation catalog: Bitbucket REST operations extracted from the OpenAPI document.

`operations.json` has the shape::

    {"_metadata": {...}, "operations": [{"operationId": ..., "path": ...}, ...]}

The file is read lazily on first access and indexed by operation id.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog

log = structlog.get_logger()

DESCRIPTION_MAX_LENGTH = 2000


@dataclass(frozen=True)
class Operation:
    """One REST operation from the catalog."""
    operation_id: str
    path: str
    method: str
    summary: str
    description: str = ""
    tags: list[str] = field(default_factory=list)
    parameters: list[dict[str, Any]] = field(default_factory=list)
    request_body: Optional[dict[str, Any]] = None
    responses: dict[str, Any] = field(default_factory=dict)
    deprecated: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Operation":
        return cls(
            operation_id=raw["operationId"],
            path=raw["path"],
            method=raw["method"].upper(),
            summary=raw.get("summary") or "",
            description=raw.get("description") or "",
            tags=list(raw.get("tags") or []),
            parameters=list(raw.get("parameters") or []),
            request_body=raw.get("requestBody"),
            responses=dict(raw.get("responses") or {}),
            deprecated=bool(raw.get("deprecated", False)),
        )

    def params_in(self, location: str) -> list[dict[str, Any]]:
        """Parameters declared in `location` ('path', 'query', 'header')."""
        return [p for p in self.parameters if p.get("in") == location]

    @property
    def is_mutation(self) -> bool:
        return self.method in ("POST", "PUT", "PATCH", "DELETE")

    @property
    def embedding_text(self) -> str:
        """Text the indexer embeds: summary and description only."""
        parts = [s.strip() for s in (self.summary, self.description) if s and s.strip()]
        text = re.sub(r"\s+", " ", " - ".join(parts))
        return text[:DESCRIPTION_MAX_LENGTH]


class OperationsCatalog:
    """Read-only, id-indexed view of operations.json."""

    def __init__(self, path: Path | str):
        self._path = Path(path)
        self._operations: Optional[dict[str, Operation]] = None
        self.metadata: dict[str, Any] = {}

    def _load(self) -> dict[str, Operation]:
        if self._operations is not None:
            return self._operations

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            operations: dict[str, Operation] = {}
            for raw in data["operations"]:
                operation = Operation.from_dict(raw)
                operations[operation.operation_id] = operation
        except Exception as e:
            log.error("operations_catalog_load_error", path=str(self._path), error=str(e))
            raise RuntimeError(f"Failed to load operations: {e}") from e

        self.metadata = data.get("_metadata", {})
        self._operations = operations
        log.info("operations_catalog_loaded", total_operations=len(operations))
        return operations

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        return self._load().get(operation_id)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self._load().values())

    def __len__(self) -> int:
        return len(self._load())

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._load()
