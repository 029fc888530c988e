"""Buffett Letters RAG - question answering over Berkshire shareholder letters."""

from .agent import AnswerGenerator, TurnEvent, TurnState, TurnStateMachine
from .document_processing import DocumentLoader, TextChunker
from .embeddings import EmbeddingService, create_openai_client
from .errors import (
    BuffettRAGError,
    ChunkingError,
    EmbeddingError,
    ExtractionError,
    GenerationError,
    IndexQueryError,
    IndexWriteError,
    TurnStateError,
    VectorStoreError,
)
from .memory import ThreadLocks, ThreadStore
from .models import (
    Chunk,
    ChunkMetadata,
    RetrievalResult,
    RetrievedChunk,
    TurnOutcome,
    TurnResult,
)
from .pipeline import IngestionPipeline
from .retriever import Retriever
from .services import RAGServices
from .vector_store import FaissVectorStore, SQLiteVectorStore, get_vector_store

__all__ = [
    "AnswerGenerator",
    "BuffettRAGError",
    "Chunk",
    "ChunkMetadata",
    "ChunkingError",
    "DocumentLoader",
    "EmbeddingError",
    "EmbeddingService",
    "ExtractionError",
    "FaissVectorStore",
    "GenerationError",
    "IndexQueryError",
    "IndexWriteError",
    "IngestionPipeline",
    "RAGServices",
    "RetrievalResult",
    "RetrievedChunk",
    "Retriever",
    "SQLiteVectorStore",
    "TextChunker",
    "ThreadLocks",
    "ThreadStore",
    "TurnEvent",
    "TurnOutcome",
    "TurnResult",
    "TurnState",
    "TurnStateError",
    "TurnStateMachine",
    "VectorStoreError",
    "create_openai_client",
    "get_vector_store",
]
