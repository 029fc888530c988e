"""Document loading and text chunking functionality."""

import re
from pathlib import Path

import pypdf
from pypdf.errors import PyPdfError

from .config import config
from .errors import ChunkingError, ExtractionError
from .models import Chunk

logger = config.get_logger(__name__)

YEAR_PATTERN = re.compile(r"(?<!\d)((?:19|20)\d{2})(?!\d)")

# pypdf reports some malformed object trees as lookup or type errors.
PDF_READ_ERRORS = (
    OSError,
    PyPdfError,
    ValueError,
    KeyError,
    TypeError,
    AttributeError,
)

# Boundary levels tried in order: paragraph, line, sentence, word.
DEFAULT_SEPARATORS: tuple[tuple[str, ...], ...] = (
    ("\n\n",),
    ("\n",),
    (". ", "? ", "! "),
    (" ",),
)


class DocumentLoader:
    """Handles loading of PDF and TXT documents."""

    @staticmethod
    def load_pdf(file_path: Path) -> str:
        """Load text content from a PDF file.

        Returns:
            The text of all pages, separated by blank lines.

        Raises:
            ExtractionError: If the PDF cannot be opened or parsed.
        """
        try:
            with file_path.open("rb") as file:
                pdf_reader = pypdf.PdfReader(file)
                pages = [page.extract_text() or "" for page in pdf_reader.pages]
        except PDF_READ_ERRORS as exc:
            logger.exception("Error loading PDF %s", file_path)
            msg = f"Could not read PDF {file_path.name}: {exc}"
            raise ExtractionError(msg) from exc
        return "\n\n".join(pages)

    @staticmethod
    def load_txt(file_path: Path) -> str:
        """Load text content from a TXT file.

        Returns:
            The extracted text content from the TXT file as a string.

        Raises:
            ExtractionError: If the file cannot be read as UTF-8.
        """
        try:
            with file_path.open(encoding="utf-8") as file:
                text = file.read()
        except (OSError, UnicodeDecodeError) as exc:
            logger.exception("Error loading TXT %s", file_path)
            msg = f"Could not read text file {file_path.name}: {exc}"
            raise ExtractionError(msg) from exc
        return text

    @classmethod
    def load_document(cls, file_path: Path) -> str:
        """Load document based on file extension.

        Args:
            file_path: Path to the document file.

        Returns:
            The text content of the document as a string.

        Raises:
            ExtractionError: If the file is missing, unsupported, unreadable
                or yields no text.
        """
        file_ext = file_path.suffix.lower()
        if file_ext == ".pdf":
            loader = cls.load_pdf
        elif file_ext == ".txt":
            loader = cls.load_txt
        else:
            msg = f"Unsupported file type: {file_ext}"
            raise ExtractionError(msg)

        if not file_path.is_file():
            msg = f"Document not found: {file_path}"
            raise ExtractionError(msg)

        text = loader(file_path)
        if not text.strip():
            msg = f"No text content extracted from {file_path.name}"
            raise ExtractionError(msg)

        logger.info("Extracted %d characters from %s", len(text), file_path.name)
        return text

    @staticmethod
    def year_from_path(file_path: Path) -> str:
        """Derive the citation label for a letter from its filename.

        Returns:
            The first four-digit year in the file stem, or the stem itself.
        """
        match = YEAR_PATTERN.search(file_path.stem)
        if match:
            return match.group(1)
        return file_path.stem


class TextChunker:
    """Splits text into overlapping chunks, preferring natural boundaries.

    Chunk ends are chosen from the coarsest separator level available in the
    window: paragraphs, then lines, then sentences, then words, and finally a
    raw character cut. Every chunk after the first starts exactly ``overlap``
    characters before the previous chunk ends, so dropping the first
    ``overlap`` characters of each later chunk reconstructs the input.
    """

    def __init__(
        self,
        chunk_size: int = 512,
        overlap: int = 50,
        separators: tuple[tuple[str, ...], ...] = DEFAULT_SEPARATORS,
    ) -> None:
        """Initialize the TextChunker with chunk size and overlap.

        Args:
            chunk_size: Maximum number of characters per chunk.
            overlap: Number of characters shared by consecutive chunks.
            separators: Boundary levels, coarsest first.

        Raises:
            ChunkingError: If the sizes cannot produce progressing chunks.
        """
        if chunk_size <= 0:
            msg = f"chunk_size must be positive, got {chunk_size}"
            raise ChunkingError(msg)
        if overlap < 0 or overlap >= chunk_size:
            msg = f"overlap must be in [0, {chunk_size}), got {overlap}"
            raise ChunkingError(msg)
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.separators = separators

    def _find_break(self, text: str, start: int) -> int:
        limit = start + self.chunk_size
        floor = start + max(self.overlap + 1, self.chunk_size // 2)
        for level in self.separators:
            best = -1
            for separator in level:
                position = text.rfind(separator, floor, limit)
                if position != -1:
                    best = max(best, position + len(separator))
            if best != -1:
                return best
        return limit

    def split_spans(self, text: str) -> list[tuple[int, int]]:
        """Compute the ``(start, end)`` offsets of every chunk.

        Returns:
            Ordered, overlapping spans covering the whole text.
        """
        if not text:
            return []

        spans: list[tuple[int, int]] = []
        start = 0
        while len(text) - start > self.chunk_size:
            end = self._find_break(text, start)
            spans.append((start, end))
            start = end - self.overlap
        spans.append((start, len(text)))
        return spans

    def chunk_text(self, text: str, source_id: str = "document") -> list[Chunk]:
        """Split text into overlapping chunks.

        Returns:
            A list of Chunk objects in document order.
        """
        spans = self.split_spans(text)
        total = len(spans)
        chunks = [
            Chunk(
                text=text[start:end],
                source_id=source_id,
                chunk_index=index,
                total_chunks=total,
                start_char=start,
                end_char=end,
            )
            for index, (start, end) in enumerate(spans)
        ]

        logger.info("Text from %s split into %d chunks", source_id, total)
        return chunks

    def reconstruct(self, chunks: list[Chunk]) -> str:
        """Join chunks back into the source text by trimming overlaps.

        Returns:
            The original text the chunks were cut from.
        """
        if not chunks:
            return ""
        return chunks[0].text + "".join(
            chunk.text[self.overlap :] for chunk in chunks[1:]
        )
