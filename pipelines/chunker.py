"""Text segmentation for DocSage.

Splits cleaned document text into overlapping chunks that prefer natural
boundaries: paragraph breaks first, then line breaks, sentence ends and
spaces, and a hard character cut only when nothing else fits.

Chunks are contiguous spans of the input. Each chunk after the first starts
exactly ``chunk_overlap`` characters before the end of the previous one, so
dropping that prefix from every later chunk and concatenating reproduces the
input.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_SEPARATORS = ("\n\n", "\n", ". ", " ")


@dataclass(frozen=True)
class Segment:
    """A chunk of text and its position in the source."""
    index: int
    text: str
    start: int
    end: int

    @property
    def size(self) -> int:
        return len(self.text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "text": self.text,
            "start": self.start,
            "end": self.end,
            "size": self.size
        }


class RecursiveChunker:
    """Splits text on the highest-priority separator that fits each window."""

    def __init__(self,
                 chunk_size: int = 1000,
                 chunk_overlap: int = 200,
                 separators: Optional[Sequence[str]] = None):
        """Initialize chunker.

        Args:
            chunk_size: Maximum chunk length in characters
            chunk_overlap: Characters each chunk repeats from the previous one
            separators: Boundary strings in priority order; a raw cut is the
                implicit last resort
        """
        if chunk_overlap < 0:
            raise ValueError("chunk_overlap must not be negative")
        if chunk_size <= chunk_overlap:
            raise ValueError(
                f"chunk_size ({chunk_size}) must be larger than chunk_overlap ({chunk_overlap})"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = tuple(s for s in (separators or DEFAULT_SEPARATORS) if s)

    def _find_boundary(self, text: str, min_end: int, max_end: int) -> int:
        """Pick the end offset of a chunk, within [min_end, max_end].

        The chunk ends right after the last occurrence of the first separator
        found in that range, so a separator is never cut in half.
        """
        for separator in self.separators:
            search_from = max(0, min_end - len(separator))
            pos = text.rfind(separator, search_from, max_end)
            if pos != -1:
                return pos + len(separator)
        return max_end

    def iter_segments(self, text: str) -> Iterator[Segment]:
        """Yield segments of ``text`` in order. Empty text yields nothing."""
        if not text:
            return

        length = len(text)
        start = 0
        index = 0
        while True:
            max_end = start + self.chunk_size
            if max_end >= length:
                yield Segment(index=index, text=text[start:], start=start, end=length)
                return

            # Leave room for the next chunk's overlap and always make progress
            min_end = start + self.chunk_overlap + 1
            end = self._find_boundary(text, min_end, max_end)
            yield Segment(index=index, text=text[start:end], start=start, end=end)

            start = end - self.chunk_overlap
            index += 1

    def split(self, text: str) -> List[Segment]:
        """Split text into a list of segments."""
        segments = list(self.iter_segments(text))
        logger.debug(f"Split {len(text or '')} characters into {len(segments)} chunks")
        return segments

    def split_text(self, text: str) -> List[str]:
        """Split text into chunk strings."""
        return [segment.text for segment in self.iter_segments(text)]


def segment(text: str, chunk_size: int = 1000, overlap: int = 200) -> List[str]:
    """Convenience function to split ``text`` into chunk strings.

    Args:
        text: Cleaned document text
        chunk_size: Maximum chunk length in characters
        overlap: Characters repeated at the start of each later chunk

    Returns:
        Chunk strings in order
    """
    return RecursiveChunker(chunk_size=chunk_size, chunk_overlap=overlap).split_text(text)
