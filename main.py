"""Command-line chat over the Berkshire Hathaway shareholder letters."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import TYPE_CHECKING, TextIO

from buffett_rag.agent import EventKind
from buffett_rag.config import config
from buffett_rag.errors import VectorStoreError
from buffett_rag.services import RAGServices

if TYPE_CHECKING:
    from collections.abc import Sequence

    from buffett_rag.agent import AnswerGenerator
    from buffett_rag.models import TurnResult

EXIT_COMMANDS = frozenset({"exit", "quit", ":q"})

logger = config.get_logger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Build the CLI parser and read command-line arguments."""  # noqa: DOC201
    parser = argparse.ArgumentParser(
        description="Ask questions about Warren Buffett's shareholder letters.",
    )
    parser.add_argument(
        "--thread",
        default=None,
        help="Continue an existing conversation thread instead of starting one.",
    )
    parser.add_argument(
        "--question",
        "-q",
        default=None,
        help="Ask a single question and exit instead of starting a session.",
    )
    parser.add_argument(
        "--show-sources",
        action="store_true",
        help="Print the retrieved excerpts after each answer.",
    )
    return parser.parse_args(argv)


def print_sources(result: TurnResult, out: TextIO) -> None:
    if result.retrieval is None:
        return
    if result.retrieval.failed:
        out.write("[sources unavailable: letter search failed]\n")
        return
    for i, chunk in enumerate(result.retrieval, start=1):
        preview = " ".join(chunk.text.split())[:120]
        out.write(
            f"  [{i}] {chunk.year} {chunk.source_id} ({chunk.score:.3f}) {preview}\n"
        )


async def ask(
    generator: AnswerGenerator,
    thread_id: str,
    question: str,
    *,
    show_sources: bool = False,
    out: TextIO = sys.stdout,
) -> TurnResult | None:
    """Stream one answer to ``out``.

    Returns:
        The turn result, or None if the turn produced none.
    """
    result = None
    async for event in generator.stream_turn(thread_id, question):
        if event.kind is EventKind.TOKEN:
            out.write(event.text)
            out.flush()
        elif event.kind is EventKind.FAILED:
            out.write(event.text)
            result = event.result
        elif event.kind is EventKind.DONE:
            result = event.result
    out.write("\n")

    if result is not None:
        if result.citations:
            out.write(f"Cited letters: {', '.join(result.citations)}\n")
        if show_sources:
            print_sources(result, out)
    return result


async def chat(args: argparse.Namespace) -> int:
    """Run a single question or an interactive session.

    Returns:
        Process exit code.
    """
    try:
        services = await RAGServices.create()
    except (ValueError, VectorStoreError):
        logger.exception("Vector store unavailable")
        return 1

    async with services:
        generator = services.generator()
        thread_id = args.thread or services.thread_store.new_thread_id()

        if args.question:
            result = await ask(
                generator, thread_id, args.question, show_sources=args.show_sources
            )
            return 1 if result is None or result.failed else 0

        print(f"Thread {thread_id}. Type 'exit' to quit.")
        while True:
            try:
                question = await asyncio.to_thread(input, "\nYou: ")
            except EOFError:
                break
            question = question.strip()
            if not question:
                continue
            if question.lower() in EXIT_COMMANDS:
                break
            await ask(generator, thread_id, question, show_sources=args.show_sources)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Validate configuration and start the chat."""  # noqa: DOC201
    args = parse_args(argv)

    config.setup_logging()

    try:
        config.validate()
    except ValueError:
        logger.exception("Configuration invalid")
        return 1

    try:
        return asyncio.run(chat(args))
    except KeyboardInterrupt:
        logger.info("Chat stopped by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
