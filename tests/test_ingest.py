"""Tests for the ingestion batch job entry point."""

import os
from contextlib import ExitStack
from unittest.mock import AsyncMock, Mock, patch

import pytest

from buffett_rag import DocumentLoader, SQLiteVectorStore, ingest
from conftest import create_mock_openai_response

DIMENSION = 8
LETTER = "To the Shareholders of Berkshire Hathaway Inc.: " * 20


def fake_openai_client() -> Mock:
    async def create(*, model, input):  # noqa: A002, ARG001
        texts = [input] if isinstance(input, str) else input
        return create_mock_openai_response(
            [[1.0 + i] + [0.5] * (DIMENSION - 1) for i in range(len(texts))]
        )

    client = Mock()
    client.embeddings.create = AsyncMock(side_effect=create)
    client.close = AsyncMock()
    return client


@pytest.fixture
def job_env(tmp_path):
    """Point the job at temporary storage and a fake OpenAI client."""
    documents = tmp_path / "letters"
    documents.mkdir()
    env = {
        "OPENAI_API_KEY": "test-key",
        "DATABASE_URL": f"sqlite:///{tmp_path / 'letters.db'}",
    }
    client = fake_openai_client()
    with ExitStack() as stack:
        stack.enter_context(patch.dict(os.environ, env, clear=True))
        for name, value in {
            "DOCUMENTS_DIR": documents,
            "EMBEDDING_DIMENSION": DIMENSION,
            "FAISS_INDEX_DIR": tmp_path / "faiss",
            "THREAD_DB_PATH": tmp_path / "threads.db",
            "VECTOR_BACKEND": "faiss",
        }.items():
            stack.enter_context(patch.object(ingest.config, name, value))
        stack.enter_context(
            patch("buffett_rag.services.create_openai_client", return_value=client)
        )
        stack.enter_context(
            patch.object(
                DocumentLoader,
                "load_pdf",
                side_effect=lambda path: path.read_text(encoding="utf-8"),
            )
        )
        yield documents, client


def test_missing_database_url_fails(job_env):
    with patch.dict(os.environ, {"DATABASE_URL": ""}):
        assert ingest.main([]) == 1


def test_missing_api_key_fails(job_env):
    with patch.dict(os.environ, {"OPENAI_API_KEY": ""}):
        assert ingest.main([]) == 1


def test_missing_documents_directory_fails(job_env, tmp_path):
    with patch.object(ingest.config, "DOCUMENTS_DIR", tmp_path / "nowhere"):
        assert ingest.main([]) == 1


def test_directory_without_pdfs_fails(job_env):
    documents, client = job_env
    (documents / "notes.txt").write_text(LETTER, encoding="utf-8")

    assert ingest.main([]) == 1
    client.embeddings.create.assert_not_called()


def test_unsupported_database_url_fails(job_env):
    documents, _ = job_env
    (documents / "1977.pdf").write_text(LETTER, encoding="utf-8")

    with patch.dict(os.environ, {"DATABASE_URL": "postgresql://localhost/letters"}):
        assert ingest.main([]) == 1


def test_all_documents_failing_exits_nonzero(job_env):
    documents, client = job_env
    (documents / "1977.pdf").write_text("   ", encoding="utf-8")

    assert ingest.main([]) == 1
    client.close.assert_awaited_once()


def test_successful_run_exits_zero(job_env, tmp_path):
    documents, client = job_env
    (documents / "1977.pdf").write_text(LETTER, encoding="utf-8")
    (documents / "1978.pdf").write_text("", encoding="utf-8")

    assert ingest.main([]) == 0
    assert client.embeddings.create.await_count == 1
    client.close.assert_awaited_once()
    assert (tmp_path / "letters.db").exists()


def test_rerun_replaces_instead_of_duplicating(job_env, tmp_path):
    documents, _ = job_env
    (documents / "1977.pdf").write_text(LETTER, encoding="utf-8")
    store = SQLiteVectorStore(db_path=tmp_path / "letters.db")

    assert ingest.main([]) == 0
    first_count = store.count(ingest.config.INDEX_NAME)
    assert ingest.main([]) == 0

    assert first_count > 0
    assert store.count(ingest.config.INDEX_NAME) == first_count


def test_unknown_option_is_rejected():
    with pytest.raises(SystemExit):
        ingest.main(["--verbose"])
