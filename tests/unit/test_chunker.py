"""Unit tests for retrieval.chunker module."""

import pytest

from cortexflow.retrieval.chunker import (
    ChunkSpan,
    chunk_document,
    estimate_token_count,
    get_recommended_chunk_size,
    merge_small_chunks,
    split_oversized_chunk,
)
from cortexflow.retrieval.rag_config import ChunkingConfig


def _config(**overrides) -> ChunkingConfig:
    values = {"chunk_size": 1000, "chunk_overlap": 0, "min_chunk_size": 5, "max_chunk_size": 2000}
    values.update(overrides)
    return ChunkingConfig(**values)


LONG_TEXT = "\n\n".join(
    f"Paragraph {i} talks about topic {i}. It has a second sentence! And a third one?"
    for i in range(30)
)


@pytest.mark.unit
class TestChunkDocument:
    """Tests shared by all strategies."""

    @pytest.mark.parametrize("strategy", ["paragraph", "sentence", "fixed", "semantic"])
    def test_blank_input_returns_no_chunks(self, strategy):
        """Test that empty and whitespace-only text produce no chunks."""
        config = _config(strategy=strategy)
        assert chunk_document("", config) == []
        assert chunk_document("   \n\n\t ", config) == []

    @pytest.mark.parametrize("strategy", ["paragraph", "sentence", "fixed", "semantic"])
    def test_offsets_and_indices_are_consistent(self, strategy):
        """Test offset bounds and dense 0-based indices for every strategy."""
        config = _config(strategy=strategy, chunk_size=300, chunk_overlap=50, max_chunk_size=400)
        chunks = chunk_document(LONG_TEXT, config)

        assert len(chunks) > 1
        assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
        for chunk in chunks:
            assert 0 <= chunk.start_offset < chunk.end_offset <= len(LONG_TEXT)
            assert chunk.content == chunk.content.strip()

    def test_crlf_is_normalised(self):
        """Test that CRLF line endings behave like LF."""
        chunks = chunk_document("Para one here.\r\n\r\nPara two here.", _config())

        assert len(chunks) == 1
        assert chunks[0].content == "Para one here.\n\nPara two here."


@pytest.mark.unit
class TestParagraphStrategy:
    """Tests for the paragraph strategy."""

    def test_small_paragraphs_are_merged(self):
        """Test that paragraphs are joined while they fit in max_chunk_size."""
        text = "Intro paragraph.\n\nSecond paragraph about authentication."
        chunks = chunk_document(text, _config())

        assert len(chunks) == 1
        assert chunks[0].content == text
        assert (chunks[0].start_offset, chunks[0].end_offset) == (0, len(text))

    def test_flushes_when_max_size_would_be_exceeded(self):
        """Test two chunks with exact offsets when the merge would pass max_chunk_size."""
        text = "Intro paragraph.\n\nSecond paragraph about authentication."
        chunks = chunk_document(text, _config(max_chunk_size=40, min_chunk_size=10))

        assert [c.content for c in chunks] == [
            "Intro paragraph.",
            "Second paragraph about authentication.",
        ]
        assert (chunks[0].start_offset, chunks[0].end_offset) == (0, 16)
        assert (chunks[1].start_offset, chunks[1].end_offset) == (18, 56)
        for chunk in chunks:
            assert text[chunk.start_offset : chunk.end_offset] == chunk.content

    def test_undersized_buffer_keeps_absorbing(self):
        """Test that a buffer below min_chunk_size is not flushed early."""
        text = "abc\n\ndefghijklmnopqrstuvwxyz"
        chunks = chunk_document(text, _config(max_chunk_size=20, min_chunk_size=10))

        assert len(chunks) == 1
        assert chunks[0].content == text

    def test_text_below_min_size_is_dropped(self):
        """Test that a lone paragraph shorter than min_chunk_size yields nothing."""
        assert chunk_document("Tiny", _config(min_chunk_size=20)) == []


@pytest.mark.unit
class TestSentenceStrategy:
    """Tests for the sentence strategy."""

    def test_accumulates_up_to_chunk_size(self):
        """Test that sentences are grouped without exceeding chunk_size."""
        text = "First sentence here. Second one follows! Third?"
        chunks = chunk_document(text, _config(strategy="sentence", chunk_size=30))

        assert [c.content for c in chunks] == ["First sentence here.", "Second one follows! Third?"]
        assert (chunks[1].start_offset, chunks[1].end_offset) == (21, 47)

    def test_text_without_punctuation_is_one_sentence(self):
        """Test that unterminated text is treated as a single sentence."""
        text = "no punctuation at all here"
        chunks = chunk_document(text, _config(strategy="sentence"))

        assert len(chunks) == 1
        assert chunks[0].content == text

    def test_short_buffers_are_dropped(self):
        """Test that flushed buffers below min_chunk_size are discarded."""
        text = "Hi. This sentence is long enough to keep."
        chunks = chunk_document(text, _config(strategy="sentence", chunk_size=20, min_chunk_size=10))

        assert [c.content for c in chunks] == ["This sentence is long enough to keep."]


@pytest.mark.unit
class TestFixedStrategy:
    """Tests for the fixed strategy."""

    def test_windows_advance_by_size_minus_overlap(self):
        """Test window offsets on text without spaces."""
        text = "a" * 250
        chunks = chunk_document(
            text,
            _config(strategy="fixed", chunk_size=100, chunk_overlap=20, min_chunk_size=10),
        )

        assert [(c.start_offset, c.end_offset) for c in chunks] == [(0, 100), (80, 180), (160, 250)]

    def test_windows_retract_to_word_boundaries(self):
        """Test that windows do not end in the middle of a word."""
        text = "alpha beta gamma delta epsilon zeta"
        chunks = chunk_document(
            text,
            _config(strategy="fixed", chunk_size=12, chunk_overlap=2, min_chunk_size=3),
        )

        assert chunks[0].content == "alpha beta"
        for chunk in chunks:
            assert chunk.end_offset == len(text) or text[chunk.end_offset] == " "
            assert text[chunk.start_offset : chunk.end_offset] == chunk.content
        assert chunks[-1].end_offset == len(text)

    def test_short_tail_is_not_emitted(self):
        """Test that a remaining tail shorter than min_chunk_size stops the window."""
        text = "b" * 105
        chunks = chunk_document(
            text,
            _config(strategy="fixed", chunk_size=100, chunk_overlap=0, min_chunk_size=10),
        )

        assert [(c.start_offset, c.end_offset) for c in chunks] == [(0, 100)]


@pytest.mark.unit
class TestSemanticStrategy:
    """Tests for the semantic strategy."""

    def test_headers_open_sections(self):
        """Test preamble plus one chunk per header section."""
        text = (
            "Preamble text that is long enough.\n\n"
            "# Title\n\nIntro under title.\n\n"
            "## Section Two\n\nBody of section two."
        )
        chunks = chunk_document(text, _config(strategy="semantic"))

        assert len(chunks) == 3
        assert chunks[0].content == "Preamble text that is long enough."
        assert chunks[1].content.startswith("# Title")
        assert chunks[2].content.startswith("## Section Two")
        assert [c.index for c in chunks] == [0, 1, 2]
        for chunk in chunks:
            assert text[chunk.start_offset : chunk.end_offset] == chunk.content

    def test_oversized_section_is_split_with_absolute_offsets(self):
        """Test paragraph re-splitting of long sections."""
        text = (
            "Intro.\n\n# Big\n\nFirst paragraph of the big section.\n\n"
            "Second paragraph of the big section."
        )
        chunks = chunk_document(text, _config(strategy="semantic", max_chunk_size=45, min_chunk_size=7))

        assert [c.content for c in chunks] == [
            "# Big\n\nFirst paragraph of the big section.",
            "Second paragraph of the big section.",
        ]
        for chunk in chunks:
            assert text[chunk.start_offset : chunk.end_offset] == chunk.content

    def test_without_headers_falls_back_to_paragraphs(self):
        """Test that header-less text is chunked like the paragraph strategy."""
        text = "Intro paragraph.\n\nSecond paragraph about authentication."
        semantic = chunk_document(text, _config(strategy="semantic", max_chunk_size=40, min_chunk_size=10))
        paragraph = chunk_document(text, _config(strategy="paragraph", max_chunk_size=40, min_chunk_size=10))

        assert semantic == paragraph


@pytest.mark.unit
class TestChunkUtilities:
    """Tests for merge/split helpers and size estimates."""

    def test_merge_small_chunks(self):
        """Test that adjacent small chunks are merged and re-indexed."""
        chunks = [
            ChunkSpan("a", 0, 1, 0),
            ChunkSpan("b", 3, 4, 1),
            ChunkSpan("long enough content", 6, 25, 2),
        ]
        merged = merge_small_chunks(chunks, min_size=5)

        assert [c.content for c in merged] == ["a\n\nb", "long enough content"]
        assert [c.index for c in merged] == [0, 1]
        assert (merged[0].start_offset, merged[0].end_offset) == (0, 4)
        assert chunks[0].content == "a"

    def test_split_oversized_chunk_on_word_boundaries(self):
        """Test splitting a long chunk into word-aligned pieces."""
        chunk = ChunkSpan("one two three four five", 10, 33, 4)
        pieces = split_oversized_chunk(chunk, max_size=10)

        assert [p.content for p in pieces] == ["one two", "three", "four five"]
        assert [(p.start_offset, p.end_offset) for p in pieces] == [(10, 17), (18, 23), (24, 33)]
        assert [p.index for p in pieces] == [0, 1, 2]
        assert all(len(p.content) <= 10 for p in pieces)

    def test_split_keeps_fitting_chunk(self):
        """Test that a chunk within max_size is returned unchanged."""
        chunk = ChunkSpan("short", 0, 5, 0)
        assert split_oversized_chunk(chunk, max_size=10) == [chunk]

    def test_estimate_token_count(self):
        """Test the four-characters-per-token estimate."""
        assert estimate_token_count("") == 0
        assert estimate_token_count("abcde") == 2

    def test_recommended_chunk_size(self):
        """Test 80% of the model token limit converted to characters."""
        assert get_recommended_chunk_size("text-embedding-3-small") == 26211
        assert get_recommended_chunk_size("unknown-model") == 1638
