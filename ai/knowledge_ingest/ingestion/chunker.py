"""Markdown chunking with header, paragraph and sentence boundary preference."""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, NamedTuple, Optional

from knowledge_ingest.core.config import ChunkingOptions, settings
from knowledge_ingest.core.constants import SEGMENT_SEPARATOR, UNTITLED_SECTION
from knowledge_ingest.core.utils import estimate_tokens
from knowledge_ingest.ingestion.accumulator import ChunkAccumulator
from knowledge_ingest.ingestion.models import DocumentChunk, DocumentMetadata

logger = logging.getLogger(__name__)

HEADER_RE = re.compile(r"^(#{1,6})\s+(.+?)(?:\s+#+)?\s*$")
FENCE_RE = re.compile(r"^(`{3,}|~{3,})")
SENTENCE_BREAK_RE = re.compile(r"(?<=[.!?])\s+")
WORD_RE = re.compile(r"\S+")


class MarkdownDocument(NamedTuple):
    """One document of a chunking batch."""

    document_id: str
    content: str
    metadata: DocumentMetadata


@dataclass(frozen=True)
class _Span:
    """Offsets into the original document."""

    start: int
    end: int
    atomic: bool = False


@dataclass(frozen=True)
class _Section:
    title: Optional[str]
    start: int
    end: int


class _FenceTracker:
    """Tracks whether lines fall inside a fenced code block."""

    def __init__(self):
        self.marker = ""

    @property
    def inside(self) -> bool:
        return bool(self.marker)

    def feed(self, stripped_line: str) -> bool:
        """Consume a line; True if it belongs to a fence (including its delimiters)."""
        if self.marker:
            if stripped_line.startswith(self.marker) and not stripped_line.strip(self.marker[0]):
                self.marker = ""
            return True
        match = FENCE_RE.match(stripped_line)
        if match:
            self.marker = match.group(1)
            return True
        return False


def _lines(text: str, start: int, end: int):
    """Yield (offset, line) pairs for text[start:end]."""
    pos = start
    for line in text[start:end].splitlines(keepends=True):
        yield pos, line
        pos += len(line)


def _trimmed(text: str, start: int, end: int, atomic: bool = False) -> _Span:
    segment = text[start:end]
    lead = len(segment) - len(segment.lstrip())
    trail = len(segment) - len(segment.rstrip())
    return _Span(start + lead, max(start + lead, end - trail), atomic)


def split_sections(text: str) -> list[_Section]:
    """Split markdown on ATX headers, ignoring '#' lines inside code fences."""
    sections = []
    fences = _FenceTracker()
    title: Optional[str] = None
    body_start = 0

    for offset, line in _lines(text, 0, len(text)):
        stripped = line.strip()
        if fences.feed(stripped):
            continue
        header = HEADER_RE.match(stripped)
        if header:
            sections.append(_Section(title, body_start, offset))
            title = header.group(2).strip()
            body_start = offset + len(line)

    sections.append(_Section(title, body_start, len(text)))
    return sections


def split_blocks(text: str, start: int, end: int) -> list[_Span]:
    """Split a section body into paragraphs; fenced code blocks stay whole."""
    blocks = []
    fences = _FenceTracker()
    block_start: Optional[int] = None
    pos = start

    for offset, line in _lines(text, start, end):
        pos = offset + len(line)
        stripped = line.strip()
        was_inside = fences.inside
        if fences.feed(stripped):
            if not was_inside:
                # Opening fence: close any pending paragraph
                if block_start is not None:
                    blocks.append(_trimmed(text, block_start, offset))
                block_start = offset
            elif not fences.inside:
                blocks.append(_trimmed(text, block_start, pos, atomic=True))
                block_start = None
            continue
        if not stripped:
            if block_start is not None:
                blocks.append(_trimmed(text, block_start, offset))
                block_start = None
            continue
        if block_start is None:
            block_start = offset

    if block_start is not None:
        blocks.append(_trimmed(text, block_start, pos, atomic=fences.inside))

    return [b for b in blocks if b.end > b.start]


def split_sentences(text: str, span: _Span) -> list[_Span]:
    """Split a span on sentence terminators."""
    sentences = []
    cursor = span.start
    for match in SENTENCE_BREAK_RE.finditer(text, span.start, span.end):
        sentences.append(_trimmed(text, cursor, match.start()))
        cursor = match.end()
    sentences.append(_trimmed(text, cursor, span.end))
    return [s for s in sentences if s.end > s.start]


def split_words(text: str, span: _Span, max_tokens: int, estimator: Callable[[str], int]) -> list[_Span]:
    """Group words greedily into pieces of at most ``max_tokens``."""
    pieces = []
    piece_start: Optional[int] = None
    piece_end = span.start
    for match in WORD_RE.finditer(text, span.start, span.end):
        if piece_start is None:
            piece_start = match.start()
        elif estimator(text[piece_start:match.end()]) > max_tokens:
            pieces.append(_Span(piece_start, piece_end))
            piece_start = match.start()
        piece_end = match.end()
    if piece_start is not None:
        pieces.append(_Span(piece_start, piece_end))
    return pieces


class _SectionAssembler:
    """Feeds one section's units through an accumulator and collects chunks."""

    def __init__(
        self,
        text: str,
        document_id: str,
        title: str,
        metadata: DocumentMetadata,
        accumulator: ChunkAccumulator,
        first_index: int,
        estimator: Callable[[str], int],
    ):
        self.text = text
        self.document_id = document_id
        self.title = title
        self.metadata = metadata
        self.acc = accumulator
        self.next_index = first_index
        self.estimate = estimator
        self.chunks: list[DocumentChunk] = []
        self.spans: list[_Span] = []
        self.overlap_start: Optional[int] = None

    def add(self, unit: _Span) -> None:
        segment = self.text[unit.start:unit.end]

        # Prefer closing the chunk at a unit boundary once the target is met
        if self.acc.has_reached_target and self.acc.has_new_content:
            self.flush()

        if self.estimate(segment) > self.acc.max_token_count:
            # Nothing smaller to split on: the unit becomes its own chunk
            self.flush(carry_overlap=False)
            self.acc.force_add(segment)
            self.spans.append(unit)
            self.flush()
            return

        if self.acc.try_add(segment):
            self.spans.append(unit)
            return

        self.flush()
        if not self.acc.try_add(segment):
            # Overlap seed plus this unit would overflow; start clean
            self.acc.reset(include_overlap=False)
            self.overlap_start = None
            self.acc.try_add(segment)
        self.spans.append(unit)

    def flush(self, carry_overlap: bool = True) -> None:
        if not self.acc.has_new_content:
            if not carry_overlap:
                self.acc.reset(include_overlap=False)
                self.overlap_start = None
            return

        start = self.overlap_start if self.overlap_start is not None else self.spans[0].start
        end = self.spans[-1].end
        chunk = self.acc.finalize(
            self.document_id,
            self.next_index,
            self.title,
            start,
            self.metadata,
            end_position=end,
        )
        if chunk is not None:
            self.chunks.append(chunk)
            self.next_index += 1

        overlap = self.acc.get_overlap_buffer() if carry_overlap else ""
        self.overlap_start = self._locate(overlap, start, end) if overlap else None
        self.acc.reset(include_overlap=carry_overlap)
        self.spans = []

    def _locate(self, overlap: str, start: int, end: int) -> int:
        """Original offset where the carried overlap begins."""
        head = overlap.split(SEGMENT_SEPARATOR, 1)[0]
        found = self.text.rfind(head, start, end)
        if found >= 0:
            return found
        return max(start, end - len(overlap))


class SemanticChunker:
    """Splits markdown into token-bounded chunks in document order."""

    def __init__(
        self,
        options: Optional[ChunkingOptions] = None,
        token_estimator: Callable[[str], int] = estimate_tokens,
    ):
        self.options = options or settings.chunking
        self.estimate = token_estimator
        # Fail at construction time on invalid bounds
        self._new_accumulator()

    def _new_accumulator(self) -> ChunkAccumulator:
        return ChunkAccumulator(
            self.options.min_token_count,
            self.options.target_token_count,
            self.options.max_token_count,
            self.options.overlap_percentage,
            self.estimate,
        )

    def _units(self, text: str, block: _Span) -> list[_Span]:
        """Break a block into units that fit the max budget where possible."""
        max_tokens = self.options.max_token_count
        if block.atomic or self.estimate(text[block.start:block.end]) <= max_tokens:
            return [block]

        units = []
        for sentence in split_sentences(text, block):
            if self.estimate(text[sentence.start:sentence.end]) <= max_tokens:
                units.append(sentence)
            else:
                units.extend(split_words(text, sentence, max_tokens, self.estimate))
        return units

    def chunk_markdown(
        self,
        content: str,
        document_id: str,
        metadata: DocumentMetadata,
    ) -> list[DocumentChunk]:
        """Chunk one markdown document.

        Sections come from headers and carry the header text as their title.
        Paragraphs are added whole when they fit, otherwise split by sentence
        and finally by word runs. Offsets refer to ``content``.
        """
        if not content or not content.strip():
            return []

        chunks: list[DocumentChunk] = []
        for section in split_sections(content):
            blocks = split_blocks(content, section.start, section.end)
            if not blocks:
                continue

            assembler = _SectionAssembler(
                content,
                document_id,
                section.title or UNTITLED_SECTION,
                metadata,
                self._new_accumulator(),
                len(chunks),
                self.estimate,
            )
            for block in blocks:
                for unit in self._units(content, block):
                    assembler.add(unit)
            assembler.flush()
            chunks.extend(assembler.chunks)

        logger.info(f"Created {len(chunks)} chunks from {document_id}")
        return chunks

    def chunk_documents(self, batch: Iterable[MarkdownDocument]) -> list[DocumentChunk]:
        """Chunk many documents; a failing document is logged and skipped."""
        chunks: list[DocumentChunk] = []
        for document in batch:
            try:
                chunks.extend(
                    self.chunk_markdown(document.content, document.document_id, document.metadata)
                )
            except Exception as e:
                logger.error(f"Error chunking document {document.document_id}: {e}", exc_info=True)
        return chunks
