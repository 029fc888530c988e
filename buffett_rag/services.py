"""Process-wide clients with an explicit startup/shutdown lifecycle."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Self

from .agent import AnswerGenerator
from .config import config
from .document_processing import DocumentLoader, TextChunker
from .embeddings import EmbeddingService, create_openai_client
from .memory import ThreadLocks, ThreadStore
from .pipeline import IngestionPipeline
from .retriever import Retriever
from .vector_store import get_vector_store

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

    from openai import AsyncOpenAI

    from .vector_store import BaseSQLiteStore

logger = config.get_logger(__name__)


class RAGServices:
    """Owns the OpenAI client, the vector store and the thread store.

    Components built from here share these objects, so one instance should
    live for the whole process::

        async with await RAGServices.create() as services:
            result = await services.generator().answer_question(thread_id, q)
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        vector_store: BaseSQLiteStore,
        thread_store: ThreadStore,
    ) -> None:
        self.client = client
        self.vector_store = vector_store
        self.thread_store = thread_store
        self.locks = ThreadLocks()
        self._closed = False

    @classmethod
    async def create(
        cls,
        *,
        api_key: str | None = None,
        database_url: str | None = None,
        backend: str | None = None,
        thread_db_path: Path | None = None,
    ) -> Self:
        """Open the shared clients.

        Returns:
            Ready-to-use services.

        Raises:
            ValueError: If DATABASE_URL or the backend name is invalid.
            VectorStoreError: If the store cannot be opened.
        """
        vector_store = await asyncio.to_thread(
            get_vector_store,
            backend or config.VECTOR_BACKEND,
            database_url=database_url,
        )
        thread_store = await asyncio.to_thread(
            ThreadStore, thread_db_path or config.THREAD_DB_PATH
        )
        client = create_openai_client(api_key)
        logger.info(
            "Services started (vector backend: %s, index: %s)",
            getattr(vector_store, "backend", "unknown"),
            config.INDEX_NAME,
        )
        return cls(client, vector_store, thread_store)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(self.vector_store.close)
        await self.client.close()
        logger.info("Services stopped")

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def embedding_service(self) -> EmbeddingService:
        return EmbeddingService(
            client=self.client,
            dimension=config.EMBEDDING_DIMENSION,
        )

    def retriever(self) -> Retriever:
        return Retriever(self.embedding_service(), self.vector_store)

    def generator(self) -> AnswerGenerator:
        return AnswerGenerator(
            self.retriever(),
            self.thread_store,
            self.client,
            locks=self.locks,
        )

    def pipeline(self) -> IngestionPipeline:
        return IngestionPipeline(
            loader=DocumentLoader(),
            chunker=TextChunker(
                chunk_size=config.CHUNK_SIZE,
                overlap=config.CHUNK_OVERLAP,
            ),
            embedder=self.embedding_service(),
            store=self.vector_store,
        )
