"""Ingestion pipeline: Extract -> Chunk -> Embed -> Store."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .config import config
from .errors import BuffettRAGError, ExtractionError, IndexWriteError
from .models import ChunkMetadata

if TYPE_CHECKING:
    from pathlib import Path

    from .document_processing import DocumentLoader, TextChunker
    from .embeddings import EmbeddingService
    from .vector_store import BaseSQLiteStore

logger = config.get_logger(__name__)


@dataclass
class DocumentReport:
    """Outcome of ingesting one document."""

    path: Path
    source_id: str
    year: str = ""
    chunks: int = 0
    replaced: int = 0
    error: str | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class IngestionSummary:
    reports: list[DocumentReport] = field(default_factory=list)

    @property
    def succeeded(self) -> list[DocumentReport]:
        return [report for report in self.reports if report.ok]

    @property
    def failed(self) -> list[DocumentReport]:
        return [report for report in self.reports if not report.ok]

    @property
    def total_chunks(self) -> int:
        return sum(report.chunks for report in self.succeeded)


class IngestionPipeline:
    """Turns letter files into entries of a named vector index.

    Re-ingesting a document replaces its previous entries in one transaction,
    so running the job twice over the same directory leaves one copy of every
    chunk and a failed write keeps the old copy.
    """

    def __init__(  # noqa: PLR0913
        self,
        loader: DocumentLoader,
        chunker: TextChunker,
        embedder: EmbeddingService,
        store: BaseSQLiteStore,
        index_name: str | None = None,
        dimension: int | None = None,
    ) -> None:
        self.loader = loader
        self.chunker = chunker
        self.embedder = embedder
        self.store = store
        self.index_name = index_name or config.INDEX_NAME
        self.dimension = dimension or config.EMBEDDING_DIMENSION

    async def prepare(self) -> bool:
        """Create the target index if needed.

        Returns:
            True if the index was created, False if it already existed.
        """
        return await asyncio.to_thread(
            self.store.create_index, self.index_name, self.dimension
        )

    async def ingest_document(self, file_path: Path) -> DocumentReport:
        """Process one document through the complete pipeline.

        Args:
            file_path: Letter to ingest. Its file name becomes the source id.

        Returns:
            DocumentReport with the number of chunks written.

        Raises:
            ExtractionError: If the document yields no text.
            EmbeddingError: If embedding the chunks fails.
            IndexWriteError: If metadata is invalid or the write fails.
        """
        started = time.perf_counter()
        source_id = file_path.name
        year = self.loader.year_from_path(file_path)
        logger.info("Starting ingestion for document: %s", file_path)

        text = await asyncio.to_thread(self.loader.load_document, file_path)
        chunks = self.chunker.chunk_text(text, source_id=source_id)
        if not chunks:
            msg = f"No chunks produced for {source_id}"
            raise ExtractionError(msg)

        embeddings = await self.embedder.embed_batch([chunk.text for chunk in chunks])

        metadata = [ChunkMetadata.from_chunk(chunk, year) for chunk in chunks]
        for item in metadata:
            try:
                item.validate()
            except ValueError as exc:
                msg = f"Invalid metadata for {source_id}: {exc}"
                raise IndexWriteError(msg) from exc

        ids, replaced = await asyncio.to_thread(
            self.store.replace_source,
            self.index_name,
            source_id,
            embeddings,
            metadata,
        )
        if replaced:
            logger.info("Replaced %d existing entries for %s", replaced, source_id)

        elapsed = time.perf_counter() - started
        logger.info(
            "Ingested %s: %d chunks in %.2fs", source_id, len(ids), elapsed
        )
        return DocumentReport(
            path=file_path,
            source_id=source_id,
            year=year,
            chunks=len(ids),
            replaced=replaced,
            elapsed=elapsed,
        )

    async def ingest_directory(self, directory: Path) -> IngestionSummary:
        """Ingest every PDF in ``directory``, one at a time.

        A document that fails is logged and skipped; the rest of the batch
        still runs.

        Returns:
            IngestionSummary with one report per file, in file name order.
        """
        summary = IngestionSummary()
        files = sorted(directory.glob("*.pdf"))
        logger.info("Found %d documents in %s", len(files), directory)

        for i, file_path in enumerate(files, start=1):
            logger.info("[%d/%d] %s", i, len(files), file_path.name)
            try:
                report = await self.ingest_document(file_path)
            except BuffettRAGError as exc:
                logger.error("Failed to ingest %s: %s", file_path.name, exc)  # noqa: TRY400
                report = DocumentReport(
                    path=file_path,
                    source_id=file_path.name,
                    error=str(exc),
                )
            summary.reports.append(report)

        logger.info(
            "Ingestion finished: %d succeeded, %d failed, %d chunks",
            len(summary.succeeded),
            len(summary.failed),
            summary.total_chunks,
        )
        return summary
