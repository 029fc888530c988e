"""SQLite-based vector storage with exact numpy search."""

from __future__ import annotations

import threading
from pathlib import Path

import numpy as np

from buffett_rag.config import config
from buffett_rag.vector_store.base import BaseSQLiteStore

logger = config.get_logger(__name__)


class SQLiteVectorStore(BaseSQLiteStore):
    """Vector storage that scans every vector of an index with numpy."""

    backend = "sqlite"

    def __init__(self, db_path: Path = Path("data/vector_store.db")) -> None:
        """Initialize the SQLiteVectorStore.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._matrices: dict[str, tuple[np.ndarray, np.ndarray]] = {}
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()
        super().__init__(db_path)

    def _embeddings_matrix(
        self, name: str, dimension: int
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return cached ids and vectors of an index, rebuilding when stale."""  # noqa: DOC201
        with self._lock:
            cached = self._matrices.get(name)
            generation = self._generations.get(name, 0)
        if cached is not None:
            return cached

        ids, matrix = self._load_vectors(name, dimension)
        with self._lock:
            # A write that landed while loading makes this copy stale.
            if self._generations.get(name, 0) == generation:
                self._matrices[name] = (ids, matrix)
        logger.info("Rebuilt embeddings matrix for %s with %d vectors", name, len(ids))
        return ids, matrix

    @staticmethod
    def cosine_similarity(
        query_embedding: np.ndarray,
        embeddings: np.ndarray,
    ) -> np.ndarray:
        """Calculate cosine similarity between a normalized query and rows.

        Returns:
            np.ndarray: One similarity score per row of ``embeddings``.
        """
        return embeddings @ query_embedding

    def _search(
        self,
        name: str,
        dimension: int,
        query: np.ndarray,
        top_k: int,
    ) -> list[tuple[int, float]]:
        ids, matrix = self._embeddings_matrix(name, dimension)
        if len(ids) == 0:
            return []

        similarities = self.cosine_similarity(query, matrix)
        top_indices = np.argsort(-similarities, kind="stable")[:top_k]
        return [(int(ids[idx]), float(similarities[idx])) for idx in top_indices]

    def _invalidate(self, name: str) -> None:
        with self._lock:
            self._matrices.pop(name, None)
            self._generations[name] = self._generations.get(name, 0) + 1

    def _after_insert(
        self,
        name: str,
        dimension: int,
        ids: list[int],
        matrix: np.ndarray,
    ) -> None:
        self._invalidate(name)

    def _after_delete(self, name: str, ids: list[int]) -> None:
        self._invalidate(name)

    def close(self) -> None:
        with self._lock:
            self._matrices.clear()
        logger.info("Data already persisted in SQLite database %s", self.db_path)
