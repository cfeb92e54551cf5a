"""Tests for the FAISS operation index and the offline indexer."""

import json

import numpy as np
import pytest

faiss = pytest.importorskip("faiss")

from bitbucket_dc_mcp.data.operations import Operation, OperationsCatalog
from bitbucket_dc_mcp.errors import DatabaseError
from bitbucket_dc_mcp.semantic.embedder import SentenceTransformerEmbedder
from bitbucket_dc_mcp.semantic.faiss_index import META_FILENAME, OperationIndex
from bitbucket_dc_mcp.semantic.indexer import build_index


DIM = 4


def op(operation_id: str, summary: str = "", description: str = "") -> Operation:
    return Operation(
        operation_id=operation_id,
        path=f"/rest/api/latest/{operation_id}",
        method="GET",
        summary=summary or operation_id,
        description=description,
    )


def basis(i: int, scale: float = 1.0) -> np.ndarray:
    v = np.zeros(DIM, dtype=np.float32)
    v[i] = scale
    return v


@pytest.fixture
def index(tmp_path):
    idx = OperationIndex(tmp_path / "index", dimension=DIM)
    idx.add(
        [op("getProjects"), op("getRepositories"), op("getPullRequests")],
        np.stack([basis(0), basis(1), basis(2)]),
    )
    return idx


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_search_orders_by_descending_similarity(index):
    query = np.array([0.9, 0.4, 0.1, 0.0], dtype=np.float32)
    results = await index.search(query, 3)

    assert [r.operation_id for r in results] == ["getProjects", "getRepositories", "getPullRequests"]
    scores = [r.similarity_score for r in results]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_search_respects_limit(index):
    results = await index.search(basis(1), 1)
    assert len(results) == 1
    assert results[0].operation_id == "getRepositories"


@pytest.mark.asyncio
async def test_limit_above_total_returns_everything(index):
    results = await index.search(basis(0), 50)
    assert len(results) == 3


@pytest.mark.asyncio
async def test_scores_are_cosine_for_unnormalised_vectors(tmp_path):
    idx = OperationIndex(tmp_path, dimension=DIM)
    idx.add([op("a")], np.array([[10.0, 0.0, 0.0, 0.0]], dtype=np.float32))

    results = await idx.search(np.array([3.0, 3.0, 0.0, 0.0], dtype=np.float32), 1)
    assert results[0].similarity_score == pytest.approx(1 / np.sqrt(2), abs=1e-5)


@pytest.mark.asyncio
async def test_add_does_not_mutate_caller_vectors(tmp_path):
    idx = OperationIndex(tmp_path, dimension=DIM)
    vectors = np.array([[2.0, 0.0, 0.0, 0.0]], dtype=np.float32)
    idx.add([op("a")], vectors)
    assert vectors[0, 0] == 2.0


@pytest.mark.asyncio
async def test_results_carry_metadata(tmp_path):
    idx = OperationIndex(tmp_path, dimension=DIM)
    idx.add([op("getProjects", "Get projects", "Retrieve a page of projects")], basis(0)[None, :])

    (result,) = await idx.search(basis(0), 5)
    assert result.summary == "Get projects"
    assert result.description == "Retrieve a page of projects"


@pytest.mark.asyncio
async def test_empty_index_returns_empty_list(tmp_path):
    idx = OperationIndex(tmp_path, dimension=DIM)
    assert await idx.search(basis(0), 5) == []


@pytest.mark.asyncio
async def test_dimension_mismatch_raises_database_error(index):
    with pytest.raises(DatabaseError):
        await index.search(np.ones(DIM + 3, dtype=np.float32), 3)


def test_add_rejects_vector_count_mismatch(tmp_path):
    idx = OperationIndex(tmp_path, dimension=DIM)
    with pytest.raises(ValueError):
        idx.add([op("a"), op("b")], basis(0)[None, :])


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_save_and_load_roundtrip(index, tmp_path):
    index.save()

    loaded = OperationIndex(tmp_path / "index", dimension=DIM)
    assert loaded.load() is True
    assert loaded.total_vectors == 3
    assert loaded.dimension == DIM
    assert loaded.ping() is True

    results = await loaded.search(basis(2), 1)
    assert results[0].operation_id == "getPullRequests"


def test_load_missing_files_returns_false(tmp_path):
    idx = OperationIndex(tmp_path / "nowhere", dimension=DIM)
    assert idx.load() is False
    assert idx.total_vectors == 0


def test_load_corrupt_metadata_returns_false(index, tmp_path):
    index.save()
    (tmp_path / "index" / META_FILENAME).write_text("{not json", encoding="utf-8")

    idx = OperationIndex(tmp_path / "index", dimension=DIM)
    assert idx.load() is False
    assert idx.total_vectors == 0


def test_metadata_sidecar_is_keyed_by_vector_id(index, tmp_path):
    index.save()
    meta = json.loads((tmp_path / "index" / META_FILENAME).read_text(encoding="utf-8"))
    assert meta["0"]["operation_id"] == "getProjects"
    assert meta["2"]["operation_id"] == "getPullRequests"


# ---------------------------------------------------------------------------
# Indexer
# ---------------------------------------------------------------------------

class FakeModel:
    """Stands in for SentenceTransformer: one-hot vector per distinct text."""

    def __init__(self):
        self.seen: list[str] = []

    def encode(self, texts, **kwargs):
        rows = []
        for text in texts:
            if text not in self.seen:
                self.seen.append(text)
            rows.append(basis(self.seen.index(text) % DIM))
        return np.stack(rows)

    def get_sentence_embedding_dimension(self):
        return DIM


@pytest.mark.asyncio
async def test_build_index_embeds_catalog_in_order(tmp_path):
    catalog_path = tmp_path / "operations.json"
    catalog_path.write_text(json.dumps({
        "operations": [
            {"operationId": "getProjects", "path": "/projects", "method": "get",
             "summary": "Get projects", "description": "List projects"},
            {"operationId": "getRepositories", "path": "/repos", "method": "get",
             "summary": "Get repositories", "description": "List repositories"},
        ]
    }), encoding="utf-8")
    model = FakeModel()
    embedder = SentenceTransformerEmbedder(model, "fake")

    index = await build_index(OperationsCatalog(catalog_path), embedder, tmp_path / "idx", batch_size=1)

    assert model.seen == ["Get projects - List projects", "Get repositories - List repositories"]
    assert index.total_vectors == 2
    assert (tmp_path / "idx" / "index.faiss").exists()

    query = await embedder.generate("Get repositories - List repositories")
    results = await index.search(query, 1)
    assert results[0].operation_id == "getRepositories"
