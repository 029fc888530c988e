"""Query-time retrieval over the letters index."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from .config import config
from .errors import EmbeddingError, VectorStoreError
from .models import RetrievalResult, RetrievedChunk

if TYPE_CHECKING:
    from .embeddings import EmbeddingService
    from .vector_store import BaseSQLiteStore

logger = config.get_logger(__name__)


class Retriever:
    """Embeds a query, searches the index and shapes the hits.

    Retrieval is advisory: failures are logged and reported on the result
    instead of being raised, so an answer can still be produced without it.
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: BaseSQLiteStore,
        index_name: str | None = None,
        default_top_k: int | None = None,
    ) -> None:
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.index_name = index_name or config.INDEX_NAME
        self.default_top_k = default_top_k or config.RETRIEVAL_TOP_K

    async def retrieve(self, query: str, top_k: int | None = None) -> RetrievalResult:
        """Return the chunks most similar to ``query``.

        Args:
            query: Free-text search query.
            top_k: Maximum number of chunks. Defaults to the configured value.

        Returns:
            RetrievalResult ranked by descending score. On embedding or index
            failure the result is empty and ``error`` describes the failure.
        """
        top_k = self.default_top_k if top_k is None else top_k
        if not query.strip() or top_k <= 0:
            return RetrievalResult(query=query)

        logger.info("Retrieving top %d chunks for query: %s", top_k, query)
        try:
            query_embedding = await self.embedding_service.embed(query)
            matches = await asyncio.to_thread(
                self.vector_store.query,
                self.index_name,
                query_embedding,
                top_k,
            )
        except (EmbeddingError, VectorStoreError) as exc:
            logger.warning("Retrieval failed for %r: %s", query, exc)
            return RetrievalResult(query=query, error=str(exc))

        chunks = [
            RetrievedChunk(
                text=match.metadata.text,
                metadata=match.metadata,
                score=match.score,
            )
            for match in matches
        ]
        for i, chunk in enumerate(chunks):
            logger.debug(
                "  Result %d: %s chunk %d (score: %.4f)",
                i + 1,
                chunk.source_id,
                chunk.metadata.chunk_index,
                chunk.score,
            )
        logger.info("Retrieved %d chunks", len(chunks))
        return RetrievalResult(query=query, chunks=chunks)
