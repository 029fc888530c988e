"""Batch job that ingests the shareholder letters into the vector index.

Usage::

    DATABASE_URL=sqlite:///data/letters.db buffett-ingest

Everything is configured through the environment (see ``config.py``).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import TYPE_CHECKING

from .config import config
from .errors import ChunkingError, VectorStoreError
from .services import RAGServices

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = config.get_logger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Build the CLI parser; the job takes no options."""  # noqa: DOC201
    parser = argparse.ArgumentParser(
        description=(
            "Ingest Berkshire Hathaway shareholder letters (PDF) from "
            "DOCUMENTS_DIR into the vector index at DATABASE_URL."
        ),
    )
    return parser.parse_args(argv)


async def run() -> int:
    """Ingest every letter in the configured directory.

    Returns:
        Process exit code.
    """
    documents_dir = config.DOCUMENTS_DIR
    if not documents_dir.is_dir():
        logger.error("Documents directory not found: %s", documents_dir)
        return 1
    if not any(documents_dir.glob("*.pdf")):
        logger.error("No PDF files found in %s", documents_dir)
        return 1

    try:
        services = await RAGServices.create()
    except (ValueError, VectorStoreError):
        logger.exception("Vector store unavailable")
        return 1

    async with services:
        try:
            pipeline = services.pipeline()
            created = await pipeline.prepare()
        except ChunkingError:
            logger.exception("Invalid chunking configuration")
            return 1
        except VectorStoreError:
            logger.exception("Could not prepare index %s", config.INDEX_NAME)
            return 1
        logger.info(
            "%s index %s",
            "Created" if created else "Using existing",
            pipeline.index_name,
        )

        summary = await pipeline.ingest_directory(documents_dir)

    for report in summary.failed:
        logger.warning("Skipped %s: %s", report.source_id, report.error)
    if not summary.succeeded:
        logger.error("No documents were ingested")
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Validate configuration and run the ingestion job."""  # noqa: DOC201
    parse_args(argv)
    config.setup_logging()

    try:
        config.validate_ingestion()
    except ValueError:
        logger.exception("Configuration invalid")
        return 1

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Ingestion stopped by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
