"""Shared helpers for SQLite-backed vector stores.

Every backend keeps index definitions and entries (metadata JSON plus the
normalized float32 vector) in SQLite. Subclasses only provide the nearest
neighbour search over those vectors. Similarity is cosine: vectors are
L2-normalized on the way in and scored by inner product.
"""

from __future__ import annotations

import json
import re
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from buffett_rag.config import config
from buffett_rag.errors import IndexQueryError, IndexWriteError, VectorStoreError
from buffett_rag.models import ChunkMetadata, IndexMatch

if TYPE_CHECKING:
    from collections.abc import Sequence

SIMILARITY_METRIC = "cosine"
INDEX_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

logger = config.get_logger(__name__)


def normalize_vectors(vectors: np.ndarray) -> np.ndarray:
    """L2-normalize each row; all-zero rows are left untouched.

    Returns:
        Float32 matrix with unit-length rows.
    """
    matrix = np.atleast_2d(np.asarray(vectors, dtype="float32"))
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (matrix / norms).astype("float32")


class BaseSQLiteStore:
    """Common schema management and helpers for vector stores using SQLite."""

    backend = "base"

    def __init__(self, db_path: Path) -> None:
        """Initialize the metadata store and ensure the schema exists.

        Raises:
            VectorStoreError: If the database cannot be opened.
        """
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(exist_ok=True, parents=True)
            self._create_tables()
        except (OSError, sqlite3.Error) as exc:
            logger.exception("Vector store unavailable at %s", self.db_path)
            msg = f"Vector store unavailable at {self.db_path}: {exc}"
            raise VectorStoreError(msg) from exc

    def _create_tables(self) -> None:
        """Create index and entry tables if they don't exist."""
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS vector_indexes (
                    name TEXT PRIMARY KEY,
                    dimension INTEGER NOT NULL CHECK(dimension > 0),
                    metric TEXT NOT NULL DEFAULT 'cosine',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    index_name TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    year TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    total_chunks INTEGER NOT NULL,
                    metadata TEXT NOT NULL,
                    vector BLOB NOT NULL,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (index_name) REFERENCES vector_indexes (name)
                )
            """)

            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_entries_index ON entries(index_name)"
            )
            cursor.execute(
                (
                    "CREATE INDEX IF NOT EXISTS idx_entries_source "
                    "ON entries(index_name, source_id, chunk_index)"
                ),
            )
            conn.commit()

    @staticmethod
    def _check_name(name: str, error: type[VectorStoreError]) -> None:
        if not INDEX_NAME_PATTERN.match(name):
            msg = f"Invalid index name: {name!r}"
            raise error(msg)

    @staticmethod
    def _get_dimension(cursor: sqlite3.Cursor, name: str) -> int | None:
        cursor.execute("SELECT dimension FROM vector_indexes WHERE name = ?", (name,))
        row = cursor.fetchone()
        return int(row[0]) if row else None

    def create_index(self, name: str, dimension: int) -> bool:
        """Provision an index, treating an existing one as success.

        Returns:
            True if the index was created, False if it already existed.

        Raises:
            IndexWriteError: If the name is invalid, the dimension is not
                positive, or an index of another dimension already exists.
        """
        self._check_name(name, IndexWriteError)
        if dimension <= 0:
            msg = f"Index dimension must be positive, got {dimension}"
            raise IndexWriteError(msg)

        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                existing = self._get_dimension(cursor, name)
                if existing is None:
                    cursor.execute(
                        (
                            "INSERT INTO vector_indexes (name, dimension, metric) "
                            "VALUES (?, ?, ?)"
                        ),
                        (name, dimension, SIMILARITY_METRIC),
                    )
                    conn.commit()
        except sqlite3.Error as exc:
            logger.exception("Failed to create index %s", name)
            msg = f"Failed to create index {name}: {exc}"
            raise IndexWriteError(msg) from exc

        if existing is None:
            logger.info("Created index %s (dimension %d)", name, dimension)
            return True
        if existing != dimension:
            msg = (
                f"Index {name} already exists with dimension {existing}, "
                f"requested {dimension}"
            )
            raise IndexWriteError(msg)
        logger.info("Index %s already exists, continuing", name)
        return False

    def list_indexes(self) -> list[str]:
        """Return the names of all provisioned indexes.

        Raises:
            IndexQueryError: If the catalog cannot be read.
        """  # noqa: DOC201
        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT name FROM vector_indexes ORDER BY name")
                return [row[0] for row in cursor.fetchall()]
        except sqlite3.Error as exc:
            logger.exception("Failed to list indexes")
            msg = f"Failed to list indexes: {exc}"
            raise IndexQueryError(msg) from exc

    def describe_index(self, name: str) -> dict[str, object] | None:
        """Return name, dimension, metric and entry count of an index.

        Returns:
            Mapping describing the index, or None if it does not exist.

        Raises:
            IndexQueryError: If the catalog cannot be read.
        """
        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                dimension = self._get_dimension(cursor, name)
        except sqlite3.Error as exc:
            logger.exception("Failed to describe index %s", name)
            msg = f"Failed to describe index {name}: {exc}"
            raise IndexQueryError(msg) from exc
        if dimension is None:
            return None
        return {
            "name": name,
            "dimension": dimension,
            "metric": SIMILARITY_METRIC,
            "count": self.count(name),
        }

    def count(self, name: str) -> int:
        """Return the number of entries in an index (0 if it is missing).

        Raises:
            IndexQueryError: If the entries cannot be counted.
        """  # noqa: DOC201
        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT COUNT(*) FROM entries WHERE index_name = ?", (name,)
                )
                (total,) = cursor.fetchone()
        except sqlite3.Error as exc:
            logger.exception("Failed to count entries of index %s", name)
            msg = f"Failed to count entries of index {name}: {exc}"
            raise IndexQueryError(msg) from exc
        return int(total)

    def upsert(
        self,
        name: str,
        vectors: Sequence[np.ndarray],
        metadata: Sequence[ChunkMetadata],
    ) -> list[int]:
        """Append positionally aligned vectors and metadata to an index.

        Returns:
            The ids assigned to the new entries, in input order.

        Raises:
            IndexWriteError: On misaligned input, dimension mismatch, invalid
                metadata, unknown index or storage failure.
        """
        self._check_entries(name, vectors, metadata)
        if not vectors:
            return []

        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                dimension = self._get_dimension(cursor, name)
                if dimension is None:
                    msg = f"Index {name} does not exist"
                    raise IndexWriteError(msg)

                matrix = self._validated_matrix(vectors, dimension, IndexWriteError)
                ids = self._insert_entries(cursor, name, matrix, metadata)
                conn.commit()
        except sqlite3.Error as exc:
            logger.exception("Failed to write entries to index %s", name)
            msg = f"Failed to write entries to index {name}: {exc}"
            raise IndexWriteError(msg) from exc

        self._after_insert(name, dimension, ids, matrix)
        logger.info("Added %d entries to index %s", len(ids), name)
        return ids

    def replace_source(
        self,
        name: str,
        source_id: str,
        vectors: Sequence[np.ndarray],
        metadata: Sequence[ChunkMetadata],
    ) -> tuple[list[int], int]:
        """Swap all entries of one source document for a new set.

        The delete and the insert share one SQLite transaction: if the write
        fails, the previous entries are still in place.

        Returns:
            Tuple of (ids of the new entries, number of entries replaced).

        Raises:
            IndexWriteError: On invalid input, a metadata entry of another
                source, unknown index or storage failure.
        """
        self._check_entries(name, vectors, metadata)
        if not vectors:
            msg = f"No entries given to replace {source_id} in index {name}"
            raise IndexWriteError(msg)
        for item in metadata:
            if item.source_id != source_id:
                msg = f"Entry of {item.source_id} cannot replace {source_id}"
                raise IndexWriteError(msg)

        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                dimension = self._get_dimension(cursor, name)
                if dimension is None:
                    msg = f"Index {name} does not exist"
                    raise IndexWriteError(msg)

                matrix = self._validated_matrix(vectors, dimension, IndexWriteError)
                old_ids = self._source_ids(cursor, name, source_id)
                if old_ids:
                    cursor.execute(
                        "DELETE FROM entries WHERE index_name = ? AND source_id = ?",
                        (name, source_id),
                    )
                ids = self._insert_entries(cursor, name, matrix, metadata)
                conn.commit()
        except sqlite3.Error as exc:
            logger.exception("Failed to replace %s in index %s", source_id, name)
            msg = f"Failed to replace {source_id} in index {name}: {exc}"
            raise IndexWriteError(msg) from exc

        if old_ids:
            self._after_delete(name, old_ids)
        self._after_insert(name, dimension, ids, matrix)
        logger.info(
            "Replaced %d entries of %s in %s with %d",
            len(old_ids),
            source_id,
            name,
            len(ids),
        )
        return ids, len(old_ids)

    def _check_entries(
        self,
        name: str,
        vectors: Sequence[np.ndarray],
        metadata: Sequence[ChunkMetadata],
    ) -> None:
        self._check_name(name, IndexWriteError)
        if len(vectors) != len(metadata):
            msg = (
                f"Got {len(vectors)} vectors but {len(metadata)} metadata entries "
                f"for index {name}"
            )
            raise IndexWriteError(msg)
        for item in metadata:
            try:
                item.validate()
            except ValueError as exc:
                msg = f"Invalid metadata for index {name}: {exc}"
                raise IndexWriteError(msg) from exc

    @staticmethod
    def _source_ids(cursor: sqlite3.Cursor, name: str, source_id: str) -> list[int]:
        cursor.execute(
            "SELECT id FROM entries WHERE index_name = ? AND source_id = ?",
            (name, source_id),
        )
        return [int(row[0]) for row in cursor.fetchall()]

    @staticmethod
    def _validated_matrix(
        vectors: Sequence[np.ndarray],
        dimension: int,
        error: type[VectorStoreError],
    ) -> np.ndarray:
        rows = [np.asarray(vector, dtype="float32").ravel() for vector in vectors]
        for row in rows:
            if row.shape[0] != dimension:
                msg = (
                    f"Vector dimension {row.shape[0]} does not match "
                    f"index dimension {dimension}"
                )
                raise error(msg)
        return normalize_vectors(np.vstack(rows))

    @staticmethod
    def _insert_entries(
        cursor: sqlite3.Cursor,
        name: str,
        matrix: np.ndarray,
        metadata: Sequence[ChunkMetadata],
    ) -> list[int]:
        ids: list[int] = []
        for row, item in zip(matrix, metadata, strict=True):
            cursor.execute(
                """
                INSERT INTO entries (
                    index_name,
                    source_id,
                    year,
                    chunk_index,
                    total_chunks,
                    metadata,
                    vector
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    item.source_id,
                    item.year,
                    item.chunk_index,
                    item.total_chunks,
                    json.dumps(item.to_dict(), ensure_ascii=False),
                    row.astype("float32").tobytes(),
                ),
            )
            row_id = cursor.lastrowid
            if row_id is None:
                msg = "Failed to insert entry row"
                raise IndexWriteError(msg)
            ids.append(int(row_id))
        return ids

    def delete_source(self, name: str, source_id: str) -> int:
        """Remove every entry of one source document from an index.

        Returns:
            Number of entries removed.

        Raises:
            IndexWriteError: If the storage cannot be updated.
        """
        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                ids = self._source_ids(cursor, name, source_id)
                if ids:
                    cursor.execute(
                        "DELETE FROM entries WHERE index_name = ? AND source_id = ?",
                        (name, source_id),
                    )
                conn.commit()
        except sqlite3.Error as exc:
            logger.exception("Failed to delete %s from index %s", source_id, name)
            msg = f"Failed to delete {source_id} from index {name}: {exc}"
            raise IndexWriteError(msg) from exc

        if ids:
            self._after_delete(name, ids)
            logger.info("Removed %d entries of %s from %s", len(ids), source_id, name)
        return len(ids)

    def query(
        self,
        name: str,
        query_vector: np.ndarray,
        top_k: int = 10,
    ) -> list[IndexMatch]:
        """Return the ``top_k`` most similar entries of an index.

        Results are ordered by descending cosine similarity; equal scores keep
        insertion order. An empty index yields an empty list.

        Returns:
            Ranked list of IndexMatch objects.

        Raises:
            IndexQueryError: On unknown index, dimension mismatch or storage
                failure.
        """
        self._check_name(name, IndexQueryError)
        if top_k <= 0:
            return []

        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                dimension = self._get_dimension(cursor, name)
            if dimension is None:
                msg = f"Index {name} does not exist"
                raise IndexQueryError(msg)

            query = self._validated_matrix(
                [query_vector], dimension, IndexQueryError
            )[0]
            hits = self._search(name, dimension, query, top_k)
            hits.sort(key=lambda hit: (-hit[1], hit[0]))
            hits = hits[:top_k]

            with sqlite3.connect(str(self.db_path)) as conn:
                metadata = self._fetch_metadata(conn.cursor(), [hit[0] for hit in hits])
        except (sqlite3.Error, OSError, RuntimeError) as exc:
            # RuntimeError is how FAISS reports failures.
            logger.exception("Failed to query index %s", name)
            msg = f"Failed to query index {name}: {exc}"
            raise IndexQueryError(msg) from exc

        return [
            IndexMatch(vector_id=vector_id, metadata=metadata[vector_id], score=score)
            for vector_id, score in hits
            if vector_id in metadata
        ]

    @staticmethod
    def _fetch_metadata(
        cursor: sqlite3.Cursor,
        ids: list[int],
    ) -> dict[int, ChunkMetadata]:
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        cursor.execute(
            f"SELECT id, metadata FROM entries WHERE id IN ({placeholders})",  # noqa: S608
            ids,
        )
        metadata: dict[int, ChunkMetadata] = {}
        for row_id, payload in cursor.fetchall():
            try:
                metadata[int(row_id)] = ChunkMetadata.from_dict(json.loads(payload))
            except (ValueError, KeyError, TypeError) as exc:
                msg = f"Corrupt metadata for entry {row_id}: {exc}"
                raise IndexQueryError(msg) from exc
        return metadata

    def _load_vectors(self, name: str, dimension: int) -> tuple[np.ndarray, np.ndarray]:
        """Read all ids and vectors of an index in insertion order.

        Returns:
            Tuple of (int64 ids, float32 matrix of shape (n, dimension)).
        """
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, vector FROM entries WHERE index_name = ? ORDER BY id",
                (name,),
            )
            rows = cursor.fetchall()

        ids = np.asarray([row[0] for row in rows], dtype="int64")
        if not rows:
            return ids, np.empty((0, dimension), dtype="float32")
        matrix = np.vstack([
            np.frombuffer(row[1], dtype="float32") for row in rows
        ]).reshape(len(rows), dimension)
        return ids, matrix

    def _search(
        self,
        name: str,
        dimension: int,
        query: np.ndarray,
        top_k: int,
    ) -> list[tuple[int, float]]:
        """Return candidate ``(vector_id, score)`` pairs for a normalized query."""
        raise NotImplementedError

    def _after_insert(
        self,
        name: str,
        dimension: int,
        ids: list[int],
        matrix: np.ndarray,
    ) -> None:
        """Hook for backends that keep their own copy of the vectors."""

    def _after_delete(self, name: str, ids: list[int]) -> None:
        """Hook for backends that keep their own copy of the vectors."""

    def close(self) -> None:
        """Release backend resources; entries are already persisted."""
