"""OpenAI embeddings service."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import openai
from openai import AsyncOpenAI

from .config import config
from .errors import EmbeddingError

if TYPE_CHECKING:
    from openai.types import CreateEmbeddingResponse

logger = config.get_logger(__name__)


def create_openai_client(api_key: str | None = None) -> AsyncOpenAI:
    """Build the async OpenAI client shared by embeddings and chat.

    Returns:
        AsyncOpenAI client with timeout, retry and header settings applied.
    """
    default_headers = config.get_api_headers()
    return AsyncOpenAI(
        api_key=api_key or config.get_openai_api_key(),
        base_url=config.OPENAI_BASE_URL,
        timeout=config.OPENAI_TIMEOUT,
        max_retries=config.OPENAI_MAX_RETRIES,
        default_headers=default_headers or None,
    )


class EmbeddingService:
    """Handles OpenAI embeddings generation."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        dimension: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        """Initialize the EmbeddingService.

        Args:
            client: Shared AsyncOpenAI client. If None, one is created from config.
            model: Embedding model name. If None, uses config.EMBEDDING_MODEL.
            dimension: Expected vector dimension; responses of any other size
                are rejected. None disables the check.
            batch_size: Texts per request. If None, uses config.EMBEDDING_BATCH_SIZE.
        """
        self.client = client or create_openai_client()
        self.model = model or config.EMBEDDING_MODEL
        self.dimension = dimension
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE

    def _to_vectors(
        self,
        response: CreateEmbeddingResponse,
        expected: int,
    ) -> list[np.ndarray]:
        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != expected:
            msg = f"Embedding response has {len(data)} vectors for {expected} inputs"
            raise EmbeddingError(msg)

        vectors = [np.asarray(item.embedding, dtype="float32") for item in data]
        if self.dimension is not None:
            for vector in vectors:
                if vector.shape[0] != self.dimension:
                    msg = (
                        f"Embedding dimension {vector.shape[0]} does not match "
                        f"expected dimension {self.dimension}"
                    )
                    raise EmbeddingError(msg)
        return vectors

    async def embed(self, text: str) -> np.ndarray:
        """Get embedding for a single text.

        Args:
            text: The input text to generate an embedding for.

        Returns:
            np.ndarray: The embedding vector for the input text.

        Raises:
            EmbeddingError: If the API call fails or returns no vector.
        """
        try:
            response = await self.client.embeddings.create(
                model=self.model,
                input=text,
            )
        except openai.OpenAIError as exc:
            logger.exception("Error generating embedding")
            msg = f"Embedding request failed: {exc}"
            raise EmbeddingError(msg) from exc

        return self._to_vectors(response, expected=1)[0]

    async def embed_batch(
        self,
        texts: list[str],
        batch_size: int | None = None,
    ) -> list[np.ndarray]:
        """Get embeddings for multiple texts in batches.

        The call is atomic: when any request fails nothing is returned and the
        caller has to retry the whole list.

        Args:
            texts: List of input texts to generate embeddings for.
            batch_size: Number of texts to send in each request.

        Returns:
            list[np.ndarray]: One vector per input text, in input order.

        Raises:
            EmbeddingError: If any request fails or returns a bad response.
        """
        batch_size = batch_size or self.batch_size
        embeddings: list[np.ndarray] = []

        for i in range(0, len(texts), batch_size):
            batch_texts = texts[i : i + batch_size]
            try:
                response = await self.client.embeddings.create(
                    model=self.model,
                    input=batch_texts,
                )
            except openai.OpenAIError as exc:
                logger.exception(
                    "Error generating batch embeddings (batch %d)",
                    i // batch_size + 1,
                )
                msg = f"Batch embedding request failed: {exc}"
                raise EmbeddingError(msg) from exc

            embeddings.extend(self._to_vectors(response, expected=len(batch_texts)))
            logger.info("Generated embeddings for batch %d", i // batch_size + 1)

        return embeddings
