"""Exception hierarchy shared by ingestion, retrieval and generation."""


class BuffettRAGError(Exception):
    """Base class for all application errors."""


class ExtractionError(BuffettRAGError):
    """A source document could not be turned into text."""


class ChunkingError(BuffettRAGError):
    """Chunker configured with sizes that cannot produce valid chunks."""


class EmbeddingError(BuffettRAGError):
    """The embedding endpoint failed or returned an unusable response."""


class VectorStoreError(BuffettRAGError):
    """Base class for vector index failures."""


class IndexWriteError(VectorStoreError):
    """Entries could not be written to the index."""


class IndexQueryError(VectorStoreError):
    """The index could not be searched.

    Raised for connectivity or schema problems only; a search without
    matches returns an empty list instead.
    """


class GenerationError(BuffettRAGError):
    """The language model call failed and the turn cannot be answered."""


class TurnStateError(BuffettRAGError):
    """An answer turn attempted an illegal state transition."""
