"""Tests for the fail-soft Retriever."""

import sqlite3

import pytest

from buffett_rag import Retriever
from conftest import MockEmbeddingService, TestConstants


@pytest.mark.asyncio
async def test_retrieve_ranks_matching_chunk_first(retriever):
    result = await retriever.retrieve("Year 2020 letter discusses moats.")

    assert not result.failed
    assert len(result) == 3
    top = result.chunks[0]
    assert top.text == "Year 2020 letter discusses moats."
    assert top.year == "2020"
    assert top.source_id == "2020.pdf"
    assert top.score == pytest.approx(1.0, abs=1e-5)
    scores = [chunk.score for chunk in result]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_retrieve_respects_top_k(retriever):
    result = await retriever.retrieve("float", top_k=1)

    assert len(result) == 1


@pytest.mark.parametrize(("query", "top_k"), [("", 3), ("   ", 3), ("moats", 0)])
@pytest.mark.asyncio
async def test_retrieve_trivial_requests_make_no_calls(
    retriever, mock_embedding_service, query, top_k
):
    result = await retriever.retrieve(query, top_k=top_k)

    assert len(result) == 0
    assert not result.failed
    assert mock_embedding_service.calls == []


@pytest.mark.asyncio
async def test_retrieve_embedding_failure_is_fail_soft(letters_store):
    retriever = Retriever(
        MockEmbeddingService(fail=True),
        letters_store,
        index_name=TestConstants.TEST_INDEX,
    )

    result = await retriever.retrieve("What is a moat?")

    assert result.failed
    assert len(result) == 0
    assert not result
    assert "Embedding request failed" in result.error


@pytest.mark.asyncio
async def test_retrieve_index_failure_is_fail_soft(
    letters_store, mock_embedding_service
):
    retriever = Retriever(mock_embedding_service, letters_store, index_name="missing")

    result = await retriever.retrieve("What is a moat?")

    assert result.failed
    assert "does not exist" in result.error


@pytest.mark.asyncio
async def test_retrieve_empty_index_is_not_a_failure(
    vector_store, mock_embedding_service
):
    vector_store.create_index("empty", TestConstants.DEFAULT_EMBEDDING_DIMENSION)
    retriever = Retriever(mock_embedding_service, vector_store, index_name="empty")

    result = await retriever.retrieve("What is a moat?")

    assert len(result) == 0
    assert not result.failed


@pytest.mark.asyncio
async def test_retrieve_corrupt_metadata_is_fail_soft(retriever, letters_store):
    with sqlite3.connect(letters_store.db_path) as conn:
        conn.execute("UPDATE entries SET metadata = '{broken'")

    result = await retriever.retrieve("What is a moat?")

    assert result.failed
    assert "Corrupt metadata" in result.error
