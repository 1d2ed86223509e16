"""Token-budgeted buffer that assembles one chunk at a time."""

import re
from typing import Callable, Optional

from knowledge_ingest.core.constants import SEGMENT_SEPARATOR
from knowledge_ingest.ingestion.models import DocumentChunk, DocumentMetadata

_WORD_START_RE = re.compile(r"(?<=\s)\S")
_SENTENCE_START_RE = re.compile(r"(?<=[.!?])\s+(?=\S)")

# How many tokens the overlap may give up to start on a sentence boundary.
SENTENCE_SNAP_TOKENS = 8


class ChunkAccumulator:
    """Accumulates segments for a chunk within min/target/max token bounds.

    The first segment added to an empty accumulator is always accepted, so a
    single oversized unit becomes its own chunk. Later segments are rejected
    once they would push the total past ``max_token_count``; the caller then
    finalizes, resets (optionally seeding the overlap) and retries.
    """

    def __init__(
        self,
        min_token_count: int,
        target_token_count: int,
        max_token_count: int,
        overlap_percentage: float,
        token_estimator: Callable[[str], int],
    ):
        if token_estimator is None or not callable(token_estimator):
            raise TypeError("token_estimator must be a callable")
        if min_token_count <= 0:
            raise ValueError("min_token_count must be positive")
        if min_token_count >= target_token_count:
            raise ValueError("target_token_count must be greater than min_token_count")
        if target_token_count >= max_token_count:
            raise ValueError("max_token_count must be greater than target_token_count")
        if not 0.0 <= overlap_percentage <= 1.0:
            raise ValueError("overlap_percentage must be between 0 and 1")

        self.min_token_count = min_token_count
        self.target_token_count = target_token_count
        self.max_token_count = max_token_count
        self.overlap_percentage = overlap_percentage
        self._estimate = token_estimator

        self._segments: list[str] = []
        self._seeded_segments = 0
        self._overlap_buffer = ""
        self.current_token_count = 0

    @property
    def has_content(self) -> bool:
        return bool(self._segments)

    @property
    def has_new_content(self) -> bool:
        """True when something beyond the carried-over overlap was added."""
        return len(self._segments) > self._seeded_segments

    @property
    def has_reached_target(self) -> bool:
        return self.current_token_count >= self.target_token_count

    @property
    def is_near_max(self) -> bool:
        return self.current_token_count >= self.max_token_count

    def can_fit(self, segment: str) -> bool:
        """Check if a segment fits without exceeding the max limit."""
        if not segment or not segment.strip():
            return True
        return self._estimate(self._joined_with(segment)) <= self.max_token_count

    def try_add(self, segment: str) -> bool:
        """Append a segment unless it would overflow a non-empty chunk."""
        if not segment or not segment.strip():
            return True
        if self.has_content and not self.can_fit(segment):
            return False
        self._append(segment)
        return True

    def force_add(self, segment: str) -> None:
        """Append a segment regardless of the max limit."""
        if not segment or not segment.strip():
            return
        self._append(segment)

    def finalize(
        self,
        parent_document_id: str,
        chunk_index: int,
        title: Optional[str],
        start_position: int,
        metadata: DocumentMetadata,
        end_position: Optional[int] = None,
    ) -> Optional[DocumentChunk]:
        """Build the chunk from the buffered content and cache the next overlap.

        Returns None when the buffer is empty or whitespace-only.
        """
        content = SEGMENT_SEPARATOR.join(self._segments).strip()
        if not content:
            return None

        self._overlap_buffer = self._build_overlap(content)

        return DocumentChunk(
            id=DocumentChunk.make_id(parent_document_id, chunk_index),
            parent_document_id=parent_document_id,
            chunk_index=chunk_index,
            title=title,
            content=content,
            token_count=self._estimate(content),
            start_position=start_position,
            end_position=end_position if end_position is not None else start_position + len(content),
            metadata=metadata,
        )

    def get_overlap_buffer(self) -> str:
        return self._overlap_buffer

    def reset(self, include_overlap: bool = True) -> None:
        """Clear the buffer, optionally seeding it with the cached overlap."""
        self._segments = []
        self._seeded_segments = 0
        self.current_token_count = 0
        if include_overlap and self._overlap_buffer:
            self._segments.append(self._overlap_buffer)
            self._seeded_segments = 1
            self.current_token_count = self._estimate(self._overlap_buffer)

    def _append(self, segment: str) -> None:
        self._segments.append(segment)
        self.current_token_count = self._estimate(SEGMENT_SEPARATOR.join(self._segments))

    def _joined_with(self, segment: str) -> str:
        if not self._segments:
            return segment
        return SEGMENT_SEPARATOR.join(self._segments) + SEGMENT_SEPARATOR + segment

    def _build_overlap(self, content: str) -> str:
        """Tail of ``content`` worth about overlap_percentage * target tokens."""
        budget = int(self.overlap_percentage * self.target_token_count)
        if budget <= 0:
            return ""
        if self._estimate(content) <= budget:
            return content

        # Largest word-aligned tail that stays within the budget.
        cut = len(content)
        for match in _WORD_START_RE.finditer(content):
            if self._estimate(content[match.start():]) <= budget:
                cut = match.start()
                break
        if cut == len(content):
            return ""
        tail = content[cut:]

        # Prefer starting on a sentence when that costs only a few tokens.
        tail_tokens = self._estimate(tail)
        for match in _SENTENCE_START_RE.finditer(tail):
            candidate = tail[match.end():]
            if tail_tokens - self._estimate(candidate) <= SENTENCE_SNAP_TOKENS:
                return candidate.strip()
            break
        return tail.strip()
