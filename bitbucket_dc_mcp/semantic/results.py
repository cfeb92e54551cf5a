"""Search result model and the vector index contract the service consumes."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Protocol, Sequence


@dataclass(frozen=True)
class SearchResult:
    """One ranked operation. `similarity_score` is the raw index score."""
    operation_id: str
    summary: str
    description: str
    similarity_score: float

    def to_dict(self) -> dict:
        return asdict(self)


class EmbeddingsIndex(Protocol):
    """Top-N similarity search over stored operation vectors.

    Implementations return at most `limit` results ordered by descending
    `similarity_score` and raise `DatabaseError` when the store cannot be
    queried.
    """

    async def search(self, query_vector: Sequence[float], limit: int) -> list[SearchResult]:
        ...
