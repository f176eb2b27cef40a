"""Text chunking with overlap for the answer pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
Window boundaries snap back to the last sentence terminator or newline when
one lies in the second half of the window.
"""
from typing import List
from dataclasses import dataclass
import structlog

from docqa import config

logger = structlog.get_logger()

# Fraction of the window a boundary must lie beyond to be used
BOUNDARY_SEARCH_RATIO = 0.5


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        max_chunk_size: int = None,
        overlap: int = None,
        min_chunk_length: int = None,
    ):
        """Initialize the text chunker.

        Args:
            max_chunk_size: Window size in characters (default from config)
            overlap: Characters shared between adjacent windows (default from config)
            min_chunk_length: Trimmed chunks this short or shorter are dropped
                as noise (default from config)

        Raises:
            ValueError: If max_chunk_size < 1 or overlap < 0
        """
        self.max_chunk_size = config.CHUNK_SIZE if max_chunk_size is None else max_chunk_size
        self.overlap = config.CHUNK_OVERLAP if overlap is None else overlap
        self.min_chunk_length = (
            config.MIN_CHUNK_LENGTH if min_chunk_length is None else min_chunk_length
        )

        if self.max_chunk_size < 1:
            raise ValueError(f"max_chunk_size must be at least 1, got {self.max_chunk_size}")
        if self.overlap < 0:
            raise ValueError(f"overlap must not be negative, got {self.overlap}")

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into overlapping chunks.

        Overlap may exceed the window size; the scan still advances by at
        least one character per window.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects, offsets pointing at the trimmed content
        """
        if not text:
            return []

        text_length = len(text)

        if text_length <= self.max_chunk_size:
            chunk = self._make_chunk(text, 0, text_length, 0)
            return [chunk] if chunk.content else []

        chunks = []
        start = 0

        while start < text_length:
            end = min(start + self.max_chunk_size, text_length)

            if end < text_length:
                end = self._find_boundary(text, start, end)

            chunk = self._make_chunk(text, start, end, len(chunks))
            if len(chunk.content) > self.min_chunk_length:
                chunks.append(chunk)

            if end >= text_length:
                break

            start = max(end - self.overlap, start + 1)

        logger.debug(
            "text_chunked",
            text_length=text_length,
            chunk_count=len(chunks),
        )

        return chunks

    def _find_boundary(self, text: str, start: int, end: int) -> int:
        """Move a window end back to just after the last '.' or newline.

        Only boundaries more than half a window past the start are used,
        which bounds how much shorter a chunk can get.
        """
        last_period = text.rfind(".", start, end + 1)
        last_newline = text.rfind("\n", start, end + 1)
        boundary = max(last_period, last_newline)

        if boundary > start + self.max_chunk_size * BOUNDARY_SEARCH_RATIO:
            return boundary + 1
        return end

    @staticmethod
    def _make_chunk(text: str, start: int, end: int, index: int) -> TextChunk:
        raw = text[start:end]
        content = raw.strip()
        char_start = start + (len(raw) - len(raw.lstrip()))
        return TextChunk(
            content=content,
            char_start=char_start,
            char_end=char_start + len(content),
            chunk_index=index,
        )

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.overlap,
        }


def split_text(text: str, max_chunk_size: int = 1000, overlap: int = 200) -> List[str]:
    """Chunk text and return only the chunk strings (convenience function).

    Args:
        text: Text to chunk
        max_chunk_size: Window size in characters
        overlap: Characters shared between adjacent windows

    Returns:
        List of chunk strings
    """
    chunker = TextChunker(max_chunk_size=max_chunk_size, overlap=overlap)
    return [c.content for c in chunker.chunk_text(text)]
