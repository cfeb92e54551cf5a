"""Offline ingestion: embed every catalog operation and persist the FAISS index.

Run once after refreshing operations.json::

    python -m bitbucket_dc_mcp.semantic.indexer
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from bitbucket_dc_mcp.data.operations import OperationsCatalog
from bitbucket_dc_mcp.semantic.embedder import (
    SentenceTransformerEmbedder,
    create_sentence_transformer_generator,
)
from bitbucket_dc_mcp.semantic.faiss_index import OperationIndex

log = structlog.get_logger()


async def build_index(
    catalog: OperationsCatalog,
    embedder: SentenceTransformerEmbedder,
    index_dir: Path,
    batch_size: int = 32,
) -> OperationIndex:
    """Embed all operations in catalog order and save the index to `index_dir`."""
    operations = list(catalog)
    index = OperationIndex(index_dir, dimension=embedder.dimension)

    if not operations:
        log.warning("indexer_no_operations")
        index.save()
        return index

    log.info("indexer_embedding", operations=len(operations))
    for start in range(0, len(operations), batch_size):
        batch = operations[start:start + batch_size]
        vectors = await embedder.embed_documents(
            [op.embedding_text for op in batch], batch_size=batch_size
        )
        index.add(batch, vectors)
        log.debug("indexer_batch_done", done=start + len(batch), total=len(operations))

    index.save()
    log.info("indexer_done", total_vectors=index.total_vectors)
    return index


async def _main():
    from bitbucket_dc_mcp.config import get_settings

    settings = get_settings()
    catalog = OperationsCatalog(settings.operations_path)
    embedder = await create_sentence_transformer_generator(settings.embedding_model)
    try:
        await build_index(catalog, embedder, settings.index_path)
    finally:
        embedder.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
