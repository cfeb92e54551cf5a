"""Sentence-transformers embedding adapter.

The model is loaded once by `create_sentence_transformer_generator`; the
returned embedder only runs inference. Memoising the loaded instance is the
search service's job.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

import numpy as np
import structlog

from bitbucket_dc_mcp.errors import ModelLoadError

log = structlog.get_logger()

MODEL_NAME = "sentence-transformers/all-mpnet-base-v2"
EMBEDDING_DIM = 768


@runtime_checkable
class EmbeddingGenerator(Protocol):
    """Turns one text into a fixed-length float vector."""

    async def generate(self, text: str) -> np.ndarray:
        ...


class SentenceTransformerEmbedder:
    """Wraps a loaded SentenceTransformer for query and document embedding.

    Output is L2-normalised (mean pooling is the model's default) so inner
    product equals cosine similarity.
    """

    def __init__(self, model: Any, model_name: str = MODEL_NAME):
        self._model = model
        self.model_name = model_name

    async def generate(self, text: str) -> np.ndarray:
        """Embed a single query string.

        Returns:
            Float32 numpy array of shape (dim,).
        """
        vector = await asyncio.to_thread(
            self._model.encode,
            [text],
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(vector, dtype=np.float32)[0]

    async def embed_documents(self, texts: list[str], batch_size: int = 32) -> np.ndarray:
        """Embed a batch of operation descriptions.

        Returns:
            Float32 numpy array of shape (len(texts), dim).
        """
        vectors = await asyncio.to_thread(
            self._model.encode,
            texts,
            batch_size=batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(vectors, dtype=np.float32)

    @property
    def dimension(self) -> int:
        return int(self._model.get_sentence_embedding_dimension())

    def dispose(self) -> None:
        self._model = None
        log.info("embedder_disposed", model=self.model_name)


def _load_model(model_name: str):
    from sentence_transformers import SentenceTransformer
    return SentenceTransformer(model_name)


async def create_sentence_transformer_generator(
    model_name: str = MODEL_NAME,
) -> SentenceTransformerEmbedder:
    """Load the model in a worker thread and return a ready embedder."""
    log.info("embedder_loading_model", model=model_name)
    try:
        model = await asyncio.to_thread(_load_model, model_name)
    except Exception as e:
        raise ModelLoadError(
            f"Failed to initialise embedding model '{model_name}'"
        ) from e
    log.info("embedder_model_ready", model=model_name)
    return SentenceTransformerEmbedder(model, model_name)
