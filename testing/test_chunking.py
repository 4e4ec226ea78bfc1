"""
Tests for the chunking service.

Tests cover:
- Single-chunk short text and empty text
- Size bound for every strategy
- Determinism and chunk numbering
"""

import pytest

from lore_engine.config.models import ChunkingConfig, ChunkProfile
from lore_engine.services.chunking import ChunkingService, validate_chunks
from lore_engine.services.token_counter import estimate_tokens


def long_text(paragraphs: int = 6) -> str:
    sentence = "The lighthouse keeper trimmed the wick and watched the grey water roll in."
    return "\n\n".join(" ".join([sentence] * 4) for _ in range(paragraphs))


class TestChunkingService:

    def test_short_text_is_one_chunk(self):
        chunks = ChunkingService().chunk_text("A short note.")
        assert len(chunks) == 1
        assert chunks[0].text == "A short note."
        assert chunks[0].total_chunks == 1

    def test_empty_text(self):
        assert ChunkingService().chunk_text("   ") == []

    @pytest.mark.parametrize("method", ["paragraph", "sentence", "sliding"])
    def test_chunks_respect_size(self, method):
        profile = ChunkProfile(chunk_size=60, overlap=15, method=method)
        chunks = ChunkingService().chunk_with_profile(long_text(), profile)

        assert len(chunks) > 1
        assert all(estimate_tokens(c.text) <= 60 for c in chunks)
        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert all(c.total_chunks == len(chunks) for c in chunks)
        assert "total_chunks does not match chunk count" not in validate_chunks(chunks)
        assert all(c.text.strip() for c in chunks)

    def test_oversized_sentence_is_hard_cut(self):
        profile = ChunkProfile(chunk_size=10, overlap=0, method="paragraph")
        chunks = ChunkingService().chunk_with_profile("word " * 100, profile)
        assert all(estimate_tokens(c.text) <= 10 for c in chunks)
        assert len(chunks) >= 10

    def test_deterministic(self):
        service = ChunkingService()
        first = [c.text for c in service.chunk_text(long_text(20), "document")]
        second = [c.text for c in service.chunk_text(long_text(20), "document")]
        assert first == second

    def test_overlap_carries_trailing_sentence(self):
        text = " ".join(f"Sentence number {i} is here." for i in range(40))
        profile = ChunkProfile(chunk_size=40, overlap=10, method="sentence")
        chunks = ChunkingService().chunk_with_profile(text, profile)

        first_tail = chunks[0].text.split(". ")[-1]
        assert chunks[1].text.startswith(first_tail.rstrip("."))

    def test_unknown_content_type_uses_default_profile(self):
        config = ChunkingConfig(
            profiles={"lore": ChunkProfile(chunk_size=20, overlap=0, method="paragraph")},
            default_profile="lore",
        )
        chunks = ChunkingService(config).chunk_text(long_text(2), "unheard-of")
        assert all(estimate_tokens(c.text) <= 20 for c in chunks)

    def test_sentence_split_keeps_leading_punctuation(self):
        sentences = ChunkingService._split_into_sentences("...and then the fog lifted. Ships returned!")
        assert sentences == ["...", "and then the fog lifted.", "Ships returned!"]
