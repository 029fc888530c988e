"""FAISS-backed vector storage with SQLite metadata."""

from __future__ import annotations

import contextlib
import sqlite3
import threading
from pathlib import Path

import faiss
import numpy as np

from buffett_rag.config import config
from buffett_rag.errors import IndexQueryError, IndexWriteError
from buffett_rag.vector_store.base import BaseSQLiteStore

logger = config.get_logger(__name__)


class FaissVectorStore(BaseSQLiteStore):
    """Vector storage using FAISS for search and SQLite for entries.

    Each named index maps to an ``IndexIDMap(IndexFlatIP)`` persisted as
    ``<index_dir>/<name>.faiss``. FAISS ids are the SQLite entry ids, so the
    file can always be rebuilt from the database.
    """

    backend = "faiss"

    def __init__(
        self,
        db_path: Path = Path("data/vector_store.db"),
        index_dir: Path = Path("data/faiss"),
        raw_top_k_multiplier: int = 2,
    ) -> None:
        """Configure FAISS-backed vector store."""
        self.index_dir = Path(index_dir)
        self.index_dir.mkdir(exist_ok=True, parents=True)

        self.indexes: dict[str, faiss.IndexIDMap] = {}
        self._high_water: dict[str, int] = {}
        self.raw_top_k_multiplier = max(1, raw_top_k_multiplier)
        self._lock = threading.Lock()

        super().__init__(db_path)

    def index_path(self, name: str) -> Path:
        return self.index_dir / f"{name}.faiss"

    @staticmethod
    def _init_index(dimension: int) -> faiss.IndexIDMap:
        """Create an empty inner-product index that accepts explicit ids."""  # noqa: DOC201
        base_index = faiss.IndexFlatIP(dimension)
        logger.info("Initialized FAISS IndexIDMap with dimension %d", dimension)
        return faiss.IndexIDMap(base_index)

    def _rebuild_index(self, name: str, dimension: int) -> faiss.IndexIDMap:
        """Build a FAISS index from the vectors stored in SQLite."""  # noqa: DOC201
        ids, matrix = self._load_vectors(name, dimension)
        index = self._init_index(dimension)
        if len(ids):
            index.add_with_ids(matrix, ids)  # pyright: ignore[reportCallIssue]
        self._high_water[name] = int(ids.max()) if len(ids) else 0
        logger.info("Rebuilt FAISS index %s with %d vectors", name, index.ntotal)
        return index

    def _max_id(self, name: str) -> int:
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COALESCE(MAX(id), 0) FROM entries WHERE index_name = ?",
                (name,),
            )
            (max_id,) = cursor.fetchone()
        return int(max_id)

    @staticmethod
    def _read_index(path: Path) -> faiss.IndexIDMap | None:
        """Load a persisted index, or None when the file is unreadable."""  # noqa: DOC201
        try:
            index = faiss.read_index(str(path))
        except RuntimeError as exc:
            logger.warning("Could not read FAISS index %s, rebuilding: %s", path, exc)
            return None
        if not isinstance(index, (faiss.IndexIDMap, faiss.IndexIDMap2)):
            logger.warning(
                "Loaded FAISS index is %s; wrapping with IndexIDMap to enable IDs",
                type(index).__name__,
            )
            index = faiss.IndexIDMap(index)
        return index

    def _get_index(self, name: str, dimension: int) -> faiss.IndexIDMap:
        """Return the in-memory index, loading or rebuilding it on first use.

        A missing, unreadable or out-of-sync file is rebuilt from SQLite.
        Must be called with ``self._lock`` held.
        """  # noqa: DOC201
        index = self.indexes.get(name)
        if index is not None:
            return index

        path = self.index_path(name)
        expected = self.count(name)
        index = self._read_index(path) if path.exists() else None
        if index is not None and index.d == dimension and index.ntotal == expected:
            self._high_water[name] = self._max_id(name)
            logger.info(
                "Loaded FAISS index from %s with %d vectors", path, index.ntotal
            )
        else:
            if index is not None:
                logger.warning(
                    "FAISS index %s is out of sync with metadata (%d vs %d vectors)",
                    path,
                    index.ntotal,
                    expected,
                )
            index = self._rebuild_index(name, dimension)
            if path.exists():
                try:
                    self._save(name, index)
                except (RuntimeError, OSError) as exc:
                    logger.warning("Could not overwrite FAISS index %s: %s", path, exc)

        self.indexes[name] = index
        return index

    def _save(self, name: str, index: faiss.IndexIDMap) -> None:
        self.index_dir.mkdir(exist_ok=True, parents=True)
        faiss.write_index(index, str(self.index_path(name)))
        logger.debug("Saved FAISS index to %s", self.index_path(name))

    def _discard(self, name: str) -> None:
        """Forget an index so the next use rebuilds it from SQLite."""
        self.indexes.pop(name, None)
        self._high_water.pop(name, None)
        with contextlib.suppress(OSError):
            self.index_path(name).unlink(missing_ok=True)

    def _after_insert(
        self,
        name: str,
        dimension: int,
        ids: list[int],
        matrix: np.ndarray,
    ) -> None:
        ids_array = np.asarray(ids, dtype="int64")
        with self._lock:
            try:
                index = self._get_index(name, dimension)
                # Rows at or below the high-water mark were picked up by a rebuild.
                fresh = ids_array > self._high_water.get(name, 0)
                if fresh.any():
                    index.add_with_ids(matrix[fresh], ids_array[fresh])  # pyright: ignore[reportCallIssue]
                    self._high_water[name] = int(ids_array.max())
                self._save(name, index)
            except (RuntimeError, OSError, sqlite3.Error, IndexQueryError) as exc:
                logger.exception("FAISS index %s rejected new vectors", name)
                self._discard(name)
                msg = f"FAISS index {name} rejected new vectors: {exc}"
                raise IndexWriteError(msg) from exc
        logger.info("Added %d vectors to FAISS index %s", len(ids), name)

    def _after_delete(self, name: str, ids: list[int]) -> None:
        with self._lock:
            index = self.indexes.get(name)
            if index is None:
                # Stale on disk; rebuilt from SQLite on next use.
                self._discard(name)
                return
            try:
                index.remove_ids(np.asarray(ids, dtype="int64"))
                self._save(name, index)
            except (RuntimeError, OSError) as exc:
                logger.exception("FAISS index %s failed to remove vectors", name)
                self._discard(name)
                msg = f"FAISS index {name} failed to remove vectors: {exc}"
                raise IndexWriteError(msg) from exc

    def _search(
        self,
        name: str,
        dimension: int,
        query: np.ndarray,
        top_k: int,
    ) -> list[tuple[int, float]]:
        with self._lock:
            index = self._get_index(name, dimension)
            if index.ntotal == 0:
                return []

            # Over-fetch so ties at the cut-off can be re-ordered by insertion.
            raw_top_k = max(top_k, self.raw_top_k_multiplier * top_k)
            raw_top_k = min(raw_top_k, index.ntotal)
            try:
                scores, vector_ids = index.search(query.reshape(1, -1), raw_top_k)  # pyright: ignore[reportCallIssue]
            except RuntimeError as exc:
                logger.exception("FAISS search failed for index %s", name)
                msg = f"FAISS search failed for index {name}: {exc}"
                raise IndexQueryError(msg) from exc

        return [
            (int(vector_id), float(score))
            for score, vector_id in zip(scores[0], vector_ids[0], strict=True)
            if int(vector_id) != -1  # faiss returns -1 for empty results
        ]

    def save(self) -> None:
        """Persist every loaded FAISS index to disk."""
        with self._lock:
            for name, index in self.indexes.items():
                self._save(name, index)

    def close(self) -> None:
        self.save()
        with self._lock:
            self.indexes.clear()
