"""Data models for the RAG application."""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

REQUIRED_METADATA_FIELDS = ("text", "source_id", "year", "chunk_index", "total_chunks")


@dataclass(frozen=True)
class Chunk:
    """A contiguous slice of a source document."""

    text: str
    source_id: str
    chunk_index: int
    total_chunks: int
    start_char: int
    end_char: int


@dataclass
class ChunkMetadata:
    """Metadata payload persisted next to every vector in the index."""

    text: str
    source_id: str
    year: str
    chunk_index: int
    total_chunks: int
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: Chunk, year: str, **extra: Any) -> ChunkMetadata:
        """Build metadata for a chunk produced by the chunker.

        Returns:
            ChunkMetadata carrying the chunk text and its position.
        """
        return cls(
            text=chunk.text,
            source_id=chunk.source_id,
            year=year,
            chunk_index=chunk.chunk_index,
            total_chunks=chunk.total_chunks,
            extra=dict(extra),
        )

    def validate(self) -> None:
        """Check the required fields before the payload reaches the index.

        Raises:
            ValueError: If a required field is missing or inconsistent.
        """
        if not self.text:
            msg = "Metadata text must not be empty"
            raise ValueError(msg)
        if not self.source_id:
            msg = "Metadata source_id must not be empty"
            raise ValueError(msg)
        if not self.year:
            msg = f"Metadata year must not be empty for {self.source_id}"
            raise ValueError(msg)
        if self.total_chunks < 1:
            msg = f"total_chunks must be positive, got {self.total_chunks}"
            raise ValueError(msg)
        if not 0 <= self.chunk_index < self.total_chunks:
            msg = (
                f"chunk_index {self.chunk_index} out of range "
                f"for {self.total_chunks} chunks"
            )
            raise ValueError(msg)
        clashing = set(self.extra) & set(REQUIRED_METADATA_FIELDS)
        if clashing:
            msg = f"Extension keys shadow required fields: {sorted(clashing)}"
            raise ValueError(msg)

    def to_dict(self) -> dict[str, Any]:
        """Flatten into the JSON document stored in the index.

        Returns:
            Mapping with the required fields followed by extension keys.
        """
        return {
            **self.extra,
            "text": self.text,
            "source_id": self.source_id,
            "year": self.year,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ChunkMetadata:
        """Rebuild metadata from a stored JSON document.

        Returns:
            ChunkMetadata with unknown keys collected into ``extra``.
        """
        extra = {
            key: value
            for key, value in payload.items()
            if key not in REQUIRED_METADATA_FIELDS
        }
        return cls(
            text=str(payload.get("text", "")),
            source_id=str(payload.get("source_id", "")),
            year=str(payload.get("year", "")),
            chunk_index=int(payload.get("chunk_index", 0)),
            total_chunks=int(payload.get("total_chunks", 0)),
            extra=extra,
        )


@dataclass(frozen=True)
class IndexMatch:
    """A raw hit returned by a vector store."""

    vector_id: int
    metadata: ChunkMetadata
    score: float


@dataclass(frozen=True)
class RetrievedChunk:
    """Retrieved text with its metadata and similarity score."""

    text: str
    metadata: ChunkMetadata
    score: float

    @property
    def year(self) -> str:
        return self.metadata.year

    @property
    def source_id(self) -> str:
        return self.metadata.source_id


@dataclass
class RetrievalResult:
    """Ranked retrieval output; ``error`` is set when the search itself failed."""

    query: str
    chunks: list[RetrievedChunk] = field(default_factory=list)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def __len__(self) -> int:
        return len(self.chunks)

    def __iter__(self) -> Iterator[RetrievedChunk]:
        return iter(self.chunks)

    def __bool__(self) -> bool:
        return bool(self.chunks)


class Role(enum.StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """One message of a conversation thread."""

    role: Role
    content: str
    created_at: str = field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.UTC).isoformat()
    )

    def as_chat_message(self) -> dict[str, str]:
        return {"role": str(self.role), "content": self.content}


class TurnOutcome(enum.StrEnum):
    """How an answer turn ended."""

    ANSWERED = "answered"
    NO_CONTEXT = "no_context"
    RETRIEVAL_UNAVAILABLE = "retrieval_unavailable"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Final state of a single user turn."""

    thread_id: str
    question: str
    answer: str
    outcome: TurnOutcome
    citations: list[str] = field(default_factory=list)
    retrieval: RetrievalResult | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.outcome is TurnOutcome.FAILED
