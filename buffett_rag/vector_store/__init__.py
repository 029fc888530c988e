"""Vector store adapters and factory."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from buffett_rag.config import config

from .base import SIMILARITY_METRIC, BaseSQLiteStore, normalize_vectors
from .faiss_store import FaissVectorStore
from .sqlite_store import SQLiteVectorStore

VectorBackend = Literal["faiss", "sqlite"]

SQLITE_URL_PREFIX = "sqlite:///"


def resolve_database_path(database_url: str) -> Path:
    """Turn a DATABASE_URL into the SQLite file that holds the index.

    Accepts ``sqlite:///relative.db``, ``sqlite:////absolute.db`` or a plain
    filesystem path.

    Returns:
        Path of the SQLite database file.

    Raises:
        ValueError: If the URL is empty or uses an unsupported scheme.
    """
    if not database_url:
        msg = "DATABASE_URL is empty"
        raise ValueError(msg)
    if database_url.startswith(SQLITE_URL_PREFIX):
        location = database_url[len(SQLITE_URL_PREFIX) :].split("?", 1)[0]
        if not location:
            msg = f"DATABASE_URL has no database path: {database_url}"
            raise ValueError(msg)
        return Path(location)
    if "://" in database_url:
        scheme = database_url.split("://", 1)[0]
        msg = f"Unsupported DATABASE_URL scheme: {scheme}"
        raise ValueError(msg)
    return Path(database_url)


def get_vector_store(
    store: str = "faiss",
    *,
    database_url: str | None = None,
    index_dir: Path | None = None,
    raw_top_k_multiplier: int = 2,
) -> FaissVectorStore | SQLiteVectorStore:
    """Return a configured vector store instance.

    Raises:
        ValueError: If an unsupported backend is requested.
    """
    if database_url is None:
        database_url = config.get_database_url()
    db_path = resolve_database_path(database_url)
    backend = store.lower()

    if backend == "faiss":
        return FaissVectorStore(
            db_path=db_path,
            index_dir=index_dir if index_dir is not None else config.FAISS_INDEX_DIR,
            raw_top_k_multiplier=raw_top_k_multiplier,
        )

    if backend == "sqlite":
        return SQLiteVectorStore(db_path=db_path)

    msg = f"Unsupported vector store backend: {store}"
    raise ValueError(msg)


__all__ = [
    "SIMILARITY_METRIC",
    "BaseSQLiteStore",
    "FaissVectorStore",
    "SQLiteVectorStore",
    "VectorBackend",
    "get_vector_store",
    "normalize_vectors",
    "resolve_database_path",
]
