"""Chunking service for splitting knowledge text before embedding.

Supports multiple chunking strategies:
- Paragraph-aware chunking (lore, legacy memories)
- Sentence-aware chunking (memories)
- Sliding word window (long documents)

Sizes are measured in estimated tokens (four characters per token).
Every strategy produces chunks no larger than the target size: oversized
paragraphs fall back to sentences, oversized sentences to hard cuts.
Output is deterministic for identical text and profile.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any

from lore_engine.config.models import ChunkProfile, ChunkingConfig
from lore_engine.services.token_counter import estimate_tokens, CHARS_PER_TOKEN

logger = logging.getLogger(__name__)


class ChunkMethod(Enum):
    """Chunking strategy."""
    PARAGRAPH = "paragraph"
    SENTENCE = "sentence"
    SLIDING = "sliding"
    SEMANTIC = "semantic"  # Alias of sentence accumulation


@dataclass
class Chunk:
    """Container for one chunk of entry text."""
    index: int
    text: str
    total_chunks: int
    start_char: int = 0
    end_char: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        """Return character count."""
        return len(self.content)

    @property
    def content(self) -> str:
        return self.text


_PARAGRAPH_SPLIT = re.compile(r'\n\s*\n|\n(?=\s)')
_SENTENCE = re.compile(r'[^.!?]*[.!?]+|[^.!?]+$')


class ChunkingService:
    """Service for splitting entry text into bounded, overlapping chunks."""

    def __init__(self, config: ChunkingConfig = None):
        """
        Initialize chunking service.

        Args:
            config: Chunk profiles keyed by content type
        """
        self.config = config or ChunkingConfig()

        logger.info(f"ChunkingService initialized (profiles: {', '.join(sorted(self.config.profiles))})")

    def chunk_text(self, text: str, content_type: str = "lore") -> List[Chunk]:
        """
        Chunk text using the profile for a content type.

        Args:
            text: Raw entry text
            content_type: Profile key (lore, memory, legacy_memory, document)

        Returns:
            Ordered chunks with total_chunks set
        """
        return self.chunk_with_profile(text, self.config.profile_for(content_type))

    def chunk_with_profile(self, text: str, profile: ChunkProfile) -> List[Chunk]:
        """
        Chunk text with an explicit profile.

        Text that fits in one chunk is returned as a single chunk.
        """
        if not text or not text.strip():
            logger.warning("Empty content provided for chunking")
            return []

        if estimate_tokens(text.strip()) <= profile.chunk_size:
            stripped = text.strip()
            return [Chunk(index=0, text=stripped, total_chunks=1, start_char=0, end_char=len(text),
                          metadata={'chunk_method': profile.method})]

        method = ChunkMethod(profile.method)

        if method == ChunkMethod.PARAGRAPH:
            pieces = self._chunk_by_paragraph(text, profile.chunk_size, profile.overlap)
        elif method in (ChunkMethod.SENTENCE, ChunkMethod.SEMANTIC):
            pieces = self._chunk_by_sentence(text, profile.chunk_size, profile.overlap)
        elif method == ChunkMethod.SLIDING:
            pieces = self._chunk_sliding(text, profile.chunk_size, profile.overlap)
        else:
            raise ValueError(f"Unknown chunking method: {method}")

        chunks = self._finalize(text, pieces, method)
        logger.debug(f"Chunked {len(text)} chars into {len(chunks)} chunks using {method.value}")
        return chunks

    def _finalize(self, source: str, pieces: List[str], method: ChunkMethod) -> List[Chunk]:
        """Number the pieces and locate them in the source text."""
        pieces = [p.strip() for p in pieces if p and p.strip()]
        chunks = []
        search_from = 0

        for index, piece in enumerate(pieces):
            # Locate by the first line so overlap prefixes still resolve
            probe = piece[:64]
            start = source.find(probe, search_from)
            if start == -1:
                start = search_from
            end = min(len(source), start + len(piece))

            chunks.append(Chunk(
                index=index,
                text=piece,
                total_chunks=len(pieces),
                start_char=start,
                end_char=end,
                metadata={'chunk_method': method.value}
            ))

        return chunks

    def _chunk_by_paragraph(self, text: str, chunk_size: int, overlap: int) -> List[str]:
        """Accumulate whole paragraphs; oversized paragraphs fall back to sentences."""
        units = []
        for para in self._split_into_paragraphs(text):
            if estimate_tokens(para) <= chunk_size:
                units.append(para)
            else:
                units.extend(self._bounded_sentences(para, chunk_size))

        return self._accumulate(units, chunk_size, overlap, joiner="\n\n")

    def _chunk_by_sentence(self, text: str, chunk_size: int, overlap: int) -> List[str]:
        """Accumulate sentences up to the target size."""
        units = self._bounded_sentences(text, chunk_size)
        return self._accumulate(units, chunk_size, overlap, joiner=" ")

    def _chunk_sliding(self, text: str, chunk_size: int, overlap: int) -> List[str]:
        """
        Fixed word window with overlap.

        Window width is derived from the token target (0.75 words per token)
        and then hard-capped so no window exceeds the target size.
        """
        words = text.split()
        if not words:
            return []

        words_per_chunk = max(1, int(chunk_size * 0.75))
        overlap_words = min(int(overlap * 0.75), words_per_chunk - 1)
        step = max(1, words_per_chunk - overlap_words)

        pieces = []
        position = 0
        while position < len(words):
            window = " ".join(words[position:position + words_per_chunk])
            pieces.extend(self._hard_cut(window, chunk_size))
            if position + words_per_chunk >= len(words):
                break
            position += step

        return pieces

    def _accumulate(self, units: List[str], chunk_size: int, overlap: int, joiner: str) -> List[str]:
        """
        Greedily pack units into chunks, seeding each new chunk with trailing
        sentences of the previous one up to the overlap allowance.
        """
        pieces = []
        current: List[str] = []

        for unit in units:
            candidate = joiner.join(current + [unit])
            if current and estimate_tokens(candidate) > chunk_size:
                pieces.append(joiner.join(current))
                seed = self._overlap_tail(current, overlap)
                # Overlap never pushes the next chunk past the target size
                if seed and estimate_tokens(seed + joiner + unit) <= chunk_size:
                    current = [seed, unit]
                else:
                    current = [unit]
            else:
                current.append(unit)

        if current:
            pieces.append(joiner.join(current))

        return pieces

    def _overlap_tail(self, units: List[str], overlap: int) -> str:
        """Trailing sentences of a chunk, up to `overlap` tokens."""
        if overlap <= 0:
            return ""

        sentences = self._split_into_sentences(" ".join(units))
        tail: List[str] = []
        tail_tokens = 0
        for sentence in reversed(sentences):
            cost = estimate_tokens(sentence)
            if tail_tokens + cost > overlap:
                break
            tail.insert(0, sentence)
            tail_tokens += cost

        return " ".join(tail)

    def _bounded_sentences(self, text: str, chunk_size: int) -> List[str]:
        """Sentences of text, with any sentence over the target size hard-cut."""
        units = []
        for sentence in self._split_into_sentences(text):
            if estimate_tokens(sentence) <= chunk_size:
                units.append(sentence)
            else:
                units.extend(self._hard_cut(sentence, chunk_size))
        return units

    @staticmethod
    def _hard_cut(text: str, chunk_size: int) -> List[str]:
        """Cut text into pieces of at most chunk_size tokens, preferring word boundaries."""
        max_chars = chunk_size * CHARS_PER_TOKEN
        pieces = []
        start = 0

        while start < len(text):
            end = start + max_chars
            if end < len(text):
                # Look for space within last 10% of the piece
                space_pos = text.rfind(' ', start + int(max_chars * 0.9), end)
                if space_pos > start:
                    end = space_pos
            piece = text[start:end].strip()
            if piece:
                pieces.append(piece)
            start = end

        return pieces

    @staticmethod
    def _split_into_paragraphs(text: str) -> List[str]:
        """Split on blank lines or newlines followed by indentation."""
        return [p.strip() for p in _PARAGRAPH_SPLIT.split(text) if p and p.strip()]

    @staticmethod
    def _split_into_sentences(text: str) -> List[str]:
        """
        Split text into sentences on . ! ? terminators.

        Text without terminators is returned as one sentence.
        """
        sentences = [s.strip() for s in _SENTENCE.findall(text) if s.strip()]
        if not sentences and text.strip():
            sentences = [text.strip()]
        return sentences


def validate_chunks(chunks: List[Chunk]) -> List[str]:
    """
    Check chunk quality.

    Returns:
        List of issue descriptions (empty when chunks look healthy)
    """
    issues = []

    if not chunks:
        issues.append("No chunks generated")
        return issues

    empty = [c for c in chunks if not c.text.strip()]
    if empty:
        issues.append(f"{len(empty)} empty chunks found")

    if len({c.text for c in chunks}) != len(chunks):
        issues.append("Duplicate chunks detected")

    if any(c.total_chunks != len(chunks) for c in chunks):
        issues.append("total_chunks does not match chunk count")

    return issues
