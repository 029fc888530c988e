"""Tests for conversation threads and per-thread locking."""

import asyncio

import pytest

from buffett_rag import ThreadLocks, ThreadStore
from buffett_rag.models import Message, Role


def test_history_of_unknown_thread_is_empty(thread_store):
    assert thread_store.history("unknown") == []


def test_append_and_history_keep_order(thread_store):
    thread_store.append(
        "t1",
        [
            Message(role=Role.USER, content="What is float?"),
            Message(role=Role.ASSISTANT, content="Money we hold (1996)."),
        ],
    )
    thread_store.append("t1", [Message(role=Role.USER, content="And moats?")])

    history = thread_store.history("t1")

    assert [(message.role, message.content) for message in history] == [
        (Role.USER, "What is float?"),
        (Role.ASSISTANT, "Money we hold (1996)."),
        (Role.USER, "And moats?"),
    ]


def test_history_limit_keeps_most_recent(thread_store):
    thread_store.append(
        "t1",
        [Message(role=Role.USER, content=f"Question {i}") for i in range(6)],
    )

    history = thread_store.history("t1", limit=2)

    assert [message.content for message in history] == ["Question 4", "Question 5"]
    assert thread_store.history("t1", limit=0) == []


def test_threads_are_isolated(thread_store):
    thread_store.append("t1", [Message(role=Role.USER, content="one")])
    thread_store.append("t2", [Message(role=Role.USER, content="two")])

    assert [message.content for message in thread_store.history("t2")] == ["two"]


def test_history_survives_reopen(tmp_path):
    ThreadStore(tmp_path / "threads.db").append(
        "t1", [Message(role=Role.USER, content="persisted")]
    )

    history = ThreadStore(tmp_path / "threads.db").history("t1")

    assert history[0].content == "persisted"
    assert history[0].created_at


def test_new_thread_ids_are_unique():
    assert ThreadStore.new_thread_id() != ThreadStore.new_thread_id()


def test_message_as_chat_message():
    message = Message(role=Role.ASSISTANT, content="Hello")

    assert message.as_chat_message() == {"role": "assistant", "content": "Hello"}


@pytest.mark.asyncio
async def test_thread_locks_serialize_turns_in_submission_order():
    locks = ThreadLocks()
    order: list[str] = []

    async def turn(name: str, delay: float) -> None:
        async with locks.hold("t1"):
            order.append(f"{name} start")
            await asyncio.sleep(delay)
            order.append(f"{name} end")

    first = asyncio.create_task(turn("first", 0.05))
    await asyncio.sleep(0)
    assert locks.is_busy("t1")
    second = asyncio.create_task(turn("second", 0))
    await asyncio.gather(first, second)

    assert order == ["first start", "first end", "second start", "second end"]
    assert not locks.is_busy("t1")


@pytest.mark.asyncio
async def test_thread_locks_do_not_block_other_threads():
    locks = ThreadLocks()

    async with locks.hold("t1"):
        async with locks.hold("t2"):
            assert locks.is_busy("t1")
            assert locks.is_busy("t2")

    assert not locks.is_busy("unknown")
