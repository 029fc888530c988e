"""Answer generation: one user turn as an explicit state machine.

A turn moves through ``start -> decide -> [retrieve] -> compose -> generate``
and ends in ``done`` or ``failed``. While generating, the model may call the
letter search tool, which loops the turn back through ``retrieve`` and
``compose`` before generating again.
"""

from __future__ import annotations

import asyncio
import enum
import json
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import openai

from .config import config
from .errors import GenerationError, TurnStateError
from .memory import ThreadLocks
from .models import (
    Message,
    RetrievalResult,
    Role,
    TurnOutcome,
    TurnResult,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from openai import AsyncOpenAI

    from .memory import ThreadStore
    from .retriever import Retriever

logger = config.get_logger(__name__)

SEARCH_TOOL_NAME = "search_shareholder_letters"
MAX_TOOL_TOP_K = 20

SYSTEM_PROMPT = (
    "You are an analyst who specializes in Warren Buffett's investment "
    "philosophy. You answer questions using the Berkshire Hathaway shareholder "
    "letters (1977-2024).\n\n"
    "Guidelines:\n"
    "1. Base your answer on the letter excerpts supplied with the question. "
    "If they are not enough, call the "
    f"'{SEARCH_TOOL_NAME}' tool with a more specific query; include the year "
    "in the query for year-specific questions.\n"
    "2. If any excerpts were found, use them. Only say the letters do not "
    "cover a topic when no excerpts were found.\n"
    "3. Cite the letter year in parentheses after each point, for example "
    "(1996).\n"
    "4. Write in Buffett's plain, witty style and explain concepts such as "
    "moats, margin of safety and circle of competence in simple terms.\n"
    "5. Use the earlier conversation to resolve follow-up questions."
)

NO_CONTEXT_ANSWER = (
    "I couldn't find anything about that in the Berkshire Hathaway shareholder "
    "letters I have indexed. Try rephrasing the question or asking about a "
    "specific year."
)

GENERATION_FAILED_MESSAGE = (
    "Sorry, I couldn't generate an answer because {reason}. "
    "Your question was saved; please try again in a moment."
)

RETRIEVAL_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": SEARCH_TOOL_NAME,
        "description": (
            "Search Berkshire Hathaway shareholder letters for passages about "
            "Warren Buffett's investment philosophy."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search query for the shareholder letters.",
                },
                "top_k": {
                    "type": "integer",
                    "description": "Number of passages to retrieve.",
                    "minimum": 1,
                    "maximum": MAX_TOOL_TOP_K,
                },
            },
            "required": ["query"],
        },
    },
}

CITATION_PATTERN = re.compile(r"\((?:19|20)\d{2}\)")
SMALL_TALK = frozenset({
    "hi",
    "hello",
    "hey",
    "hi there",
    "hello there",
    "thanks",
    "thank you",
    "thanks a lot",
    "thank you very much",
    "ok",
    "okay",
    "bye",
    "goodbye",
})


def extract_citations(text: str) -> list[str]:
    """Return ``(YYYY)`` markers in order of first appearance, without repeats."""  # noqa: DOC201
    return list(dict.fromkeys(CITATION_PATTERN.findall(text)))


def needs_retrieval(question: str) -> bool:
    """Every substantive question searches the letters; small talk does not."""  # noqa: DOC201
    normalized = re.sub(r"[^\w\s]", "", question).strip().lower()
    return bool(normalized) and normalized not in SMALL_TALK


class TurnState(enum.StrEnum):
    START = "start"
    DECIDE = "decide"
    RETRIEVE = "retrieve"
    COMPOSE = "compose"
    GENERATE = "generate"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.START: frozenset({TurnState.DECIDE}),
    TurnState.DECIDE: frozenset({TurnState.RETRIEVE, TurnState.COMPOSE}),
    TurnState.RETRIEVE: frozenset({TurnState.COMPOSE}),
    TurnState.COMPOSE: frozenset({TurnState.GENERATE}),
    TurnState.GENERATE: frozenset({
        TurnState.RETRIEVE,
        TurnState.DONE,
        TurnState.FAILED,
    }),
    TurnState.DONE: frozenset(),
    TurnState.FAILED: frozenset(),
}


class EventKind(enum.StrEnum):
    STATE = "state"
    TOKEN = "token"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class TurnEvent:
    """Something the caller of a streaming turn can react to."""

    kind: EventKind
    state: TurnState
    text: str = ""
    result: TurnResult | None = None


class TurnStateMachine:
    """Tracks the state of one turn and rejects illegal transitions."""

    def __init__(self) -> None:
        self.state = TurnState.START
        self.trail: list[tuple[TurnState, str]] = [(TurnState.START, "turn started")]

    @property
    def finished(self) -> bool:
        return not TRANSITIONS[self.state]

    def advance(self, target: TurnState, trigger: str) -> TurnEvent:
        """Move to ``target`` and describe the move as an event.

        Returns:
            A STATE event for the new state.

        Raises:
            TurnStateError: If ``target`` is not reachable from the current state.
        """
        if target not in TRANSITIONS[self.state]:
            msg = f"Illegal transition {self.state} -> {target} ({trigger})"
            raise TurnStateError(msg)
        logger.debug("Turn %s -> %s: %s", self.state, target, trigger)
        self.state = target
        self.trail.append((target, trigger))
        return TurnEvent(kind=EventKind.STATE, state=target, text=trigger)


@dataclass
class _ToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class _Completion:
    tool_calls: dict[int, _ToolCall] = field(default_factory=dict)


def format_context(retrieval: RetrievalResult | None) -> str:
    """Render retrieved excerpts for the prompt.

    Returns:
        Excerpt block, or a note explaining why there are no excerpts.
    """
    if retrieval is None:
        return ""
    if retrieval.failed:
        return (
            "The shareholder letter search is unavailable right now, so no "
            "excerpts could be retrieved. Answer from general knowledge and say "
            "that the letters could not be consulted."
        )
    if not retrieval:
        return "No excerpts from the shareholder letters matched this question."

    sections = []
    for i, chunk in enumerate(retrieval, start=1):
        sections.append(
            f"[Excerpt {i}] {chunk.year} letter ({chunk.source_id}), "
            f"similarity {chunk.score:.3f}\n{chunk.text.strip()}"
        )
    return "\n\n".join(sections)


def _failure_reason(exc: BaseException | None) -> str:
    if isinstance(exc, openai.APITimeoutError):
        return "the language model timed out"
    if isinstance(exc, openai.RateLimitError):
        return "the language model is rate limited"
    if isinstance(exc, openai.BadRequestError):
        return "the request was rejected by the model provider"
    if isinstance(exc, openai.OpenAIError):
        return "the language model service is unavailable"
    return "the language model returned no answer"


def _merge_retrievals(retrievals: list[RetrievalResult]) -> RetrievalResult | None:
    if not retrievals:
        return None
    merged = RetrievalResult(query=retrievals[0].query)
    seen: set[tuple[str, int]] = set()
    for retrieval in retrievals:
        for chunk in retrieval:
            key = (chunk.source_id, chunk.metadata.chunk_index)
            if key not in seen:
                seen.add(key)
                merged.chunks.append(chunk)
    if not merged.chunks:
        merged.error = next((r.error for r in retrievals if r.failed), None)
    return merged


def _outcome(retrievals: list[RetrievalResult]) -> TurnOutcome:
    if not retrievals or any(retrievals):
        return TurnOutcome.ANSWERED
    if all(retrieval.failed for retrieval in retrievals):
        return TurnOutcome.RETRIEVAL_UNAVAILABLE
    return TurnOutcome.NO_CONTEXT


class AnswerGenerator:
    """Answers questions about the shareholder letters, one turn at a time."""

    def __init__(  # noqa: PLR0913
        self,
        retriever: Retriever,
        thread_store: ThreadStore,
        client: AsyncOpenAI,
        *,
        locks: ThreadLocks | None = None,
        model: str | None = None,
        top_k: int | None = None,
        max_history_turns: int | None = None,
        max_tool_rounds: int | None = None,
        rewrite_queries: bool = True,
    ) -> None:
        self.retriever = retriever
        self.thread_store = thread_store
        self.client = client
        self.locks = locks or ThreadLocks()
        self.model = model or config.CHAT_MODEL
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.max_history_turns = (
            config.MAX_HISTORY_TURNS if max_history_turns is None else max_history_turns
        )
        self.max_tool_rounds = (
            config.MAX_TOOL_ROUNDS if max_tool_rounds is None else max_tool_rounds
        )
        self.rewrite_queries = rewrite_queries

    async def generate_standalone_query(
        self,
        question: str,
        history: list[Message],
    ) -> str:
        """Rewrite a follow-up question so it can be searched on its own.

        Returns:
            The standalone question, or the original one when there is no
            history or the rewrite fails.
        """
        if not history or not self.rewrite_queries:
            return question

        context = "".join(
            f"{'Human' if message.role is Role.USER else 'Assistant'}: "
            f"{message.content}\n"
            for message in history[-6:]
        )
        prompt = (
            "Given the following conversation history and a follow-up question, "
            "rewrite the follow-up question as a standalone question that can be "
            "understood without the conversation context.\n\n"
            f"Conversation History:\n{context}\n\n"
            f"Follow-up Question: {question}\n\n"
            "Standalone Question:"
        )

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=config.QUERY_REWRITE_MAX_TOKENS,
                temperature=config.QUERY_REWRITE_TEMPERATURE,
            )
        except openai.OpenAIError:
            logger.exception("Query rewrite failed; searching with the raw question")
            return question

        standalone_query = response.choices[0].message.content
        standalone_query = standalone_query.strip() if standalone_query else question
        logger.info("Generated standalone query: %s", standalone_query)
        return standalone_query or question

    def compose_messages(
        self,
        question: str,
        history: list[Message],
        retrieval: RetrievalResult | None,
    ) -> list[dict[str, Any]]:
        """Build the chat messages for the model.

        Returns:
            System policy, recent history and the question with its excerpts.
        """
        messages: list[dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        if self.max_history_turns > 0:
            recent = history[-self.max_history_turns * 2 :]
            messages.extend(message.as_chat_message() for message in recent)

        if retrieval is None:
            content = question
        else:
            content = (
                "Relevant excerpts from the Berkshire Hathaway shareholder letters:"
                f"\n\n{format_context(retrieval)}\n\n"
                f"Question: {question}"
            )
        messages.append({"role": "user", "content": content})
        return messages

    async def _generate(
        self,
        messages: list[dict[str, Any]],
        completion: _Completion,
        *,
        allow_tools: bool,
    ) -> AsyncIterator[str]:
        extra: dict[str, Any] = {"tools": [RETRIEVAL_TOOL]} if allow_tools else {}
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=config.CHAT_MAX_TOKENS,
                temperature=config.CHAT_TEMPERATURE,
                stream=True,
                **extra,
            )
        except openai.OpenAIError as exc:
            logger.exception("Chat completion request failed")
            raise GenerationError(_failure_reason(exc)) from exc

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield delta.content
                for call in delta.tool_calls or []:
                    pending = completion.tool_calls.setdefault(call.index, _ToolCall())
                    if call.id:
                        pending.id = call.id
                    if call.function is not None:
                        pending.name += call.function.name or ""
                        pending.arguments += call.function.arguments or ""
        except openai.OpenAIError as exc:
            logger.exception("Chat completion stream failed")
            raise GenerationError(_failure_reason(exc)) from exc
        finally:
            await stream.close()

    async def _run_tool(self, call: _ToolCall) -> tuple[str, RetrievalResult | None]:
        if call.name != SEARCH_TOOL_NAME:
            logger.warning("Model requested unknown tool %s", call.name)
            return f"Unknown tool: {call.name}", None
        try:
            arguments = json.loads(call.arguments or "{}")
            query = str(arguments["query"])
            top_k = int(arguments.get("top_k", self.top_k))
        except (ValueError, KeyError, TypeError):
            logger.warning("Invalid tool arguments: %s", call.arguments)
            return "Invalid arguments: expected a JSON object with 'query'.", None

        top_k = min(max(top_k, 1), MAX_TOOL_TOP_K)
        retrieval = await self.retriever.retrieve(query, top_k=top_k)
        return format_context(retrieval), retrieval

    async def stream_turn(
        self,
        thread_id: str,
        question: str,
    ) -> AsyncIterator[TurnEvent]:
        """Run one turn, yielding state changes and answer tokens as they occur.

        The last event is DONE or FAILED and carries the TurnResult. Closing
        the iterator early abandons the turn: the model stream is closed and
        nothing is written to the thread.

        Raises:
            ValueError: If the question is empty.
        """
        question = question.strip()
        if not question:
            msg = "Question must not be empty"
            raise ValueError(msg)

        async with self.locks.hold(thread_id):
            machine = TurnStateMachine()
            history = await asyncio.to_thread(
                self.thread_store.history,
                thread_id,
                self.max_history_turns * 2,
            )
            logger.info("Processing question on thread %s: %s", thread_id, question)

            yield machine.advance(TurnState.DECIDE, "question received")

            retrievals: list[RetrievalResult] = []
            retrieval: RetrievalResult | None = None
            if needs_retrieval(question):
                yield machine.advance(TurnState.RETRIEVE, "substantive question")
                query = await self.generate_standalone_query(question, history)
                retrieval = await self.retriever.retrieve(query, top_k=self.top_k)
                retrievals.append(retrieval)

            yield machine.advance(TurnState.COMPOSE, "context ready")
            messages = self.compose_messages(question, history, retrieval)

            answer_parts: list[str] = []
            tool_rounds = 0
            try:
                while True:
                    yield machine.advance(TurnState.GENERATE, "prompt composed")
                    completion = _Completion()
                    allow_tools = tool_rounds < self.max_tool_rounds
                    async with aclosing(
                        self._generate(messages, completion, allow_tools=allow_tools)
                    ) as tokens:
                        async for token in tokens:
                            answer_parts.append(token)
                            yield TurnEvent(
                                kind=EventKind.TOKEN,
                                state=TurnState.GENERATE,
                                text=token,
                            )

                    if not completion.tool_calls or not allow_tools:
                        break

                    tool_rounds += 1
                    yield machine.advance(TurnState.RETRIEVE, "tool call")
                    pending = completion.tool_calls
                    calls = [pending[i] for i in sorted(pending)]
                    messages.append({
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": call.id,
                                "type": "function",
                                "function": {
                                    "name": call.name,
                                    "arguments": call.arguments,
                                },
                            }
                            for call in calls
                        ],
                    })
                    for call in calls:
                        content, tool_retrieval = await self._run_tool(call)
                        if tool_retrieval is not None:
                            retrievals.append(tool_retrieval)
                        messages.append({
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": content,
                        })
                    yield machine.advance(TurnState.COMPOSE, "tool results added")

                outcome = _outcome(retrievals)
                answer = "".join(answer_parts).strip()
                if not answer:
                    if outcome is TurnOutcome.ANSWERED:
                        raise GenerationError(_failure_reason(None))
                    answer = NO_CONTEXT_ANSWER
                    yield TurnEvent(
                        kind=EventKind.TOKEN,
                        state=TurnState.GENERATE,
                        text=answer,
                    )
            except GenerationError as exc:
                machine.advance(TurnState.FAILED, "generation error")
                logger.warning("Turn on thread %s failed: %s", thread_id, exc)
                result = TurnResult(
                    thread_id=thread_id,
                    question=question,
                    answer=GENERATION_FAILED_MESSAGE.format(reason=exc),
                    outcome=TurnOutcome.FAILED,
                    retrieval=_merge_retrievals(retrievals),
                    error=str(exc),
                )
                await self._persist(result)
                yield TurnEvent(
                    kind=EventKind.FAILED,
                    state=TurnState.FAILED,
                    text=result.answer,
                    result=result,
                )
                return

            machine.advance(TurnState.DONE, "answer complete")
            result = TurnResult(
                thread_id=thread_id,
                question=question,
                answer=answer,
                outcome=outcome,
                citations=extract_citations(answer),
                retrieval=_merge_retrievals(retrievals),
            )
            await self._persist(result)
            logger.info(
                "Answered on thread %s (%s, citations: %s)",
                thread_id,
                outcome,
                ", ".join(result.citations) or "none",
            )
            yield TurnEvent(
                kind=EventKind.DONE,
                state=TurnState.DONE,
                text=answer,
                result=result,
            )

    async def _persist(self, result: TurnResult) -> None:
        await asyncio.to_thread(
            self.thread_store.append,
            result.thread_id,
            [
                Message(role=Role.USER, content=result.question),
                Message(role=Role.ASSISTANT, content=result.answer),
            ],
        )

    async def answer_question(self, thread_id: str, question: str) -> TurnResult:
        """Run a turn to completion and return its result.

        Returns:
            TurnResult of the DONE or FAILED event.

        Raises:
            TurnStateError: If the turn ended without a final event.
        """
        async with aclosing(self.stream_turn(thread_id, question)) as events:
            async for event in events:
                if event.result is not None:
                    return event.result
        msg = "Turn ended without a result"
        raise TurnStateError(msg)
