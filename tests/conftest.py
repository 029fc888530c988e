"""Test configuration and fixtures for the Buffett letters RAG tests.

This module provides reusable test fixtures organized by functionality:
- Constants and test data
- Mock services and API responses
- Text processing fixtures
- Vector store fixtures
- Retrieval and answer generation fixtures
"""

import hashlib
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest

from buffett_rag import (
    AnswerGenerator,
    ChunkMetadata,
    EmbeddingError,
    Retriever,
    TextChunker,
    ThreadStore,
    get_vector_store,
)


class TestConstants:
    """Centralized test constants to avoid repetition across test files."""

    TEST_API_KEY = "test-key"
    TEST_OPENAI_MODEL = "text-embedding-3-small"
    DEFAULT_EMBEDDING_DIMENSION = 64
    TEST_INDEX = "test_index"

    SMALL_CHUNK_SIZE = 100
    SMALL_CHUNK_OVERLAP = 20
    DEFAULT_CHUNK_SIZE = 500
    DEFAULT_CHUNK_OVERLAP = 100


class MockEmbeddingService:
    """Mock embedding service for testing without API calls.

    Generates deterministic embeddings based on text content hash, so a query
    identical to a stored chunk scores 1.0 against it.
    """

    def __init__(
        self,
        dimension: int = TestConstants.DEFAULT_EMBEDDING_DIMENSION,
        *,
        fail: bool = False,
    ) -> None:
        self.dimension = dimension
        self.fail = fail
        self.calls: list[str] = []

    def vector(self, text: str) -> np.ndarray:
        seed = int.from_bytes(
            hashlib.sha256(text.lower().encode("utf-8")).digest()[:8],
            byteorder="big",
            signed=False,
        )
        rng = np.random.default_rng(seed)
        embedding = rng.normal(0, 1, self.dimension)
        return (embedding / np.linalg.norm(embedding)).astype(np.float32)

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.fail:
            msg = "Embedding request failed: service unavailable"
            raise EmbeddingError(msg)
        return self.vector(text)

    async def embed_batch(
        self,
        texts: list[str],
        batch_size: int | None = None,  # noqa: ARG002
    ) -> list[np.ndarray]:
        self.calls.extend(texts)
        if self.fail:
            msg = "Batch embedding request failed: service unavailable"
            raise EmbeddingError(msg)
        return [self.vector(text) for text in texts]


def create_mock_openai_response(
    embeddings: list[list[float]],
    order: list[int] | None = None,
) -> Mock:
    """Create a mock OpenAI embeddings API response.

    Args:
        embeddings: Embedding vectors, one per input, in input order.
        order: Order in which the items appear in ``data``; defaults to input
            order. Each item keeps its input position in ``index``.

    Returns:
        Mock object representing OpenAI embeddings API response.
    """
    items = [Mock(embedding=emb, index=i) for i, emb in enumerate(embeddings)]
    if order is not None:
        items = [items[i] for i in order]
    mock_response = Mock()
    mock_response.data = items
    return mock_response


def create_mock_chat_response(content: str | None) -> Mock:
    """Create a mock OpenAI chat completion response.

    Returns:
        Mock object representing OpenAI chat completion response.
    """
    mock_response = Mock()
    mock_response.choices = [Mock(message=Mock(content=content))]
    return mock_response


def create_stream_chunk(
    content: str | None = None,
    tool_calls: list[SimpleNamespace] | None = None,
) -> SimpleNamespace:
    """Create one streamed chat completion chunk."""  # noqa: DOC201
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


def create_tool_call_delta(
    index: int = 0,
    call_id: str | None = "call_1",
    name: str | None = "search_shareholder_letters",
    arguments: str | None = None,
) -> SimpleNamespace:
    """Create a streamed tool call fragment."""  # noqa: DOC201
    return SimpleNamespace(
        index=index,
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


class FakeChatStream:
    """Async iterable standing in for an OpenAI chat completion stream."""

    def __init__(self, chunks: list[SimpleNamespace], error: Exception | None = None):
        self.chunks = chunks
        self.error = error
        self.closed = False
        self.consumed = 0

    def __aiter__(self):  # noqa: ANN204
        return self._iterate()

    async def _iterate(self):  # noqa: ANN202
        for chunk in self.chunks:
            self.consumed += 1
            yield chunk
        if self.error is not None:
            raise self.error

    async def close(self) -> None:
        self.closed = True


def text_stream(*tokens: str) -> FakeChatStream:
    """Stream that emits each token as a content delta."""  # noqa: DOC201
    return FakeChatStream([create_stream_chunk(token) for token in tokens])


class MockChatClient:
    """Scripted AsyncOpenAI replacement for chat completions.

    Streaming calls consume ``streams`` in order; an exception in the list is
    raised instead of returning a stream. Non-streaming calls (query rewrite)
    return ``rewrite`` or raise it when it is an exception.
    """

    def __init__(
        self,
        streams: list[FakeChatStream | Exception] | None = None,
        rewrite: str | Exception = "standalone query",
    ) -> None:
        self.streams = list(streams or [])
        self.rewrite = rewrite
        self.calls: list[dict] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
        self.close = AsyncMock()

    async def _create(self, **kwargs):  # noqa: ANN202
        self.calls.append(kwargs)
        if kwargs.get("stream"):
            item = self.streams.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if isinstance(self.rewrite, Exception):
            raise self.rewrite
        return create_mock_chat_response(self.rewrite)

    @property
    def stream_calls(self) -> list[dict]:
        return [call for call in self.calls if call.get("stream")]

    @property
    def rewrite_calls(self) -> list[dict]:
        return [call for call in self.calls if not call.get("stream")]


@pytest.fixture
def openai_embeddings_client():
    """Mock AsyncOpenAI client whose embeddings.create is an AsyncMock."""
    client = Mock()
    client.embeddings.create = AsyncMock()
    return client


@pytest.fixture
def text_chunker_factory():
    """Factory fixture that creates ``TextChunker`` instances on demand."""
    presets: dict[str, tuple[int, int]] = {
        "small": (
            TestConstants.SMALL_CHUNK_SIZE,
            TestConstants.SMALL_CHUNK_OVERLAP,
        ),
        "default": (
            TestConstants.DEFAULT_CHUNK_SIZE,
            TestConstants.DEFAULT_CHUNK_OVERLAP,
        ),
    }

    def _create_chunker(
        name: str = "default",
        *,
        chunk_size: int | None = None,
        overlap: int | None = None,
    ) -> TextChunker:
        preset_chunk_size, preset_overlap = presets[name]
        return TextChunker(
            chunk_size=preset_chunk_size if chunk_size is None else chunk_size,
            overlap=preset_overlap if overlap is None else overlap,
        )

    return _create_chunker


@pytest.fixture
def text_chunker_small(text_chunker_factory):
    """Text chunker configured for small chunks (100/20)."""
    return text_chunker_factory("small")


@pytest.fixture
def mock_embedding_service():
    """MockEmbeddingService for consistent test embeddings."""
    return MockEmbeddingService()


@pytest.fixture
def metadata_factory():
    """Factory for valid ChunkMetadata payloads."""

    def _create_metadata(
        text: str = "Our favorite holding period is forever.",
        source_id: str = "1988.pdf",
        year: str = "1988",
        chunk_index: int = 0,
        total_chunks: int = 1,
        **extra,
    ) -> ChunkMetadata:
        return ChunkMetadata(
            text=text,
            source_id=source_id,
            year=year,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            extra=extra,
        )

    return _create_metadata


@pytest.fixture
def vector_store_factory(tmp_path):
    """Factory for temporary vector stores of either backend."""
    stores = []

    def _create_store(backend: str = "sqlite", db_name: str = "vectors.db"):  # noqa: ANN202
        store = get_vector_store(
            backend,
            database_url=f"sqlite:///{tmp_path / db_name}",
            index_dir=tmp_path / "faiss",
        )
        stores.append(store)
        return store

    yield _create_store

    for store in stores:
        store.close()


@pytest.fixture(params=["faiss", "sqlite"])
def vector_store(request, vector_store_factory):
    """Each test using this fixture runs against both backends."""
    return vector_store_factory(request.param)


@pytest.fixture
def letters_store(vector_store, mock_embedding_service, metadata_factory):
    """Vector store holding three short letter excerpts."""
    vector_store.create_index(
        TestConstants.TEST_INDEX, TestConstants.DEFAULT_EMBEDDING_DIMENSION
    )
    excerpts = [
        ("Year 2020 letter discusses moats.", "2020.pdf", "2020"),
        ("Float is money we hold but do not own.", "1996.pdf", "1996"),
        ("Rule number one: never lose money.", "1988.pdf", "1988"),
    ]
    vector_store.upsert(
        TestConstants.TEST_INDEX,
        [mock_embedding_service.vector(text) for text, _, _ in excerpts],
        [
            metadata_factory(text=text, source_id=source_id, year=year)
            for text, source_id, year in excerpts
        ],
    )
    return vector_store


@pytest.fixture
def retriever(letters_store, mock_embedding_service):
    """Retriever over ``letters_store`` using mock embeddings."""
    return Retriever(
        mock_embedding_service,
        letters_store,
        index_name=TestConstants.TEST_INDEX,
        default_top_k=3,
    )


@pytest.fixture
def thread_store(tmp_path):
    return ThreadStore(tmp_path / "threads.db")


@pytest.fixture
def generator_factory(retriever, thread_store):
    """Factory for AnswerGenerator instances driven by a MockChatClient."""

    def _create_generator(client: MockChatClient, **kwargs) -> AnswerGenerator:
        kwargs.setdefault("model", "test-model")
        kwargs.setdefault("top_k", 3)
        kwargs.setdefault("max_history_turns", 5)
        kwargs.setdefault("max_tool_rounds", 2)
        kwargs.setdefault("retriever", retriever)
        return AnswerGenerator(
            kwargs.pop("retriever"),
            thread_store,
            client,
            **kwargs,
        )

    return _create_generator
