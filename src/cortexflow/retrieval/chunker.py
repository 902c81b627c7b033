"""
Document chunking strategies.

Splits document text into ordered spans suitable for embedding and keyword
search. Four strategies are available:
    - paragraph: blank-line separated paragraphs, small ones merged together
    - sentence: sentences accumulated up to chunk_size
    - fixed: sliding character window with overlap, word-boundary aware
    - semantic: Markdown header sections, oversized ones split by paragraph

Offsets always refer to the (CRLF-normalised) input text and point at the
trimmed span; chunk content may differ from the raw slice when paragraphs
or sentences are joined.
"""

import math
import re
from collections.abc import Iterator
from dataclasses import dataclass, replace

from cortexflow.retrieval.rag_config import ChunkingConfig

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_END = re.compile(r"[.!?]+(?=\s)")
_HEADER = re.compile(r"^#{1,6}[ \t]+\S.*$", re.MULTILINE)

# Token limits of common embedding models
_MODEL_TOKEN_LIMITS = {
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
    "text-embedding-ada-002": 8191,
    "sentence-transformers/all-MiniLM-L6-v2": 512,
    "all-MiniLM-L6-v2": 512,
    "voyage-2": 4000,
    "embed-english-v3.0": 512,
}


@dataclass
class ChunkSpan:
    """A chunk produced by a strategy, before it is persisted."""

    content: str
    """The chunk text."""

    start_offset: int
    end_offset: int
    """Character offsets of the span in the source text."""

    index: int
    """0-based position among the chunks of the document."""


def chunk_document(text: str, config: ChunkingConfig) -> list[ChunkSpan]:
    """
    Split text into chunks using the configured strategy.

    Args:
        text: Document text to chunk
        config: Chunking configuration (strategy and size limits)

    Returns:
        Ordered list of ChunkSpan objects; empty for blank input
    """
    if not text or not text.strip():
        return []

    normalized = text.replace("\r\n", "\n")

    if config.strategy == "sentence":
        return _chunk_by_sentence(normalized, config)
    if config.strategy == "fixed":
        return _chunk_by_fixed(normalized, config)
    if config.strategy == "semantic":
        return _chunk_by_semantic(normalized, config)
    return _chunk_by_paragraph(normalized, config)


# =============================================================================
# Strategies
# =============================================================================

def _chunk_by_paragraph(text: str, config: ChunkingConfig) -> list[ChunkSpan]:
    """
    Group blank-line separated paragraphs into chunks.

    A buffer is flushed when the next paragraph would push it past
    max_chunk_size, provided it already holds min_chunk_size characters;
    otherwise the paragraph is absorbed anyway. A trailing buffer shorter
    than min_chunk_size is dropped.
    """
    chunks: list[ChunkSpan] = []
    parts: list[str] = []
    start = end = 0
    length = 0

    for para, para_start, para_end in _trimmed_segments(text, _PARAGRAPH_BREAK):
        if parts and length + 2 + len(para) > config.max_chunk_size:
            if length >= config.min_chunk_size:
                chunks.append(ChunkSpan("\n\n".join(parts), start, end, len(chunks)))
                parts, length = [], 0

        if not parts:
            start = para_start
            length = len(para)
        else:
            length += 2 + len(para)
        parts.append(para)
        end = para_end

    if parts and length >= config.min_chunk_size:
        chunks.append(ChunkSpan("\n\n".join(parts), start, end, len(chunks)))

    return chunks


def _chunk_by_sentence(text: str, config: ChunkingConfig) -> list[ChunkSpan]:
    """
    Accumulate sentences until the buffer would exceed chunk_size.

    Gated on chunk_size rather than max_chunk_size. Buffers shorter than
    min_chunk_size are dropped when flushed.
    """
    chunks: list[ChunkSpan] = []
    parts: list[str] = []
    start = end = 0
    length = 0

    for sentence, sent_start, sent_end in _sentences(text):
        if parts and length + 1 + len(sentence) > config.chunk_size:
            if length >= config.min_chunk_size:
                chunks.append(ChunkSpan(" ".join(parts), start, end, len(chunks)))
            parts, length = [], 0

        if not parts:
            start = sent_start
            length = len(sentence)
        else:
            length += 1 + len(sentence)
        parts.append(sentence)
        end = sent_end

    if parts and length >= config.min_chunk_size:
        chunks.append(ChunkSpan(" ".join(parts), start, end, len(chunks)))

    return chunks


def _chunk_by_fixed(text: str, config: ChunkingConfig) -> list[ChunkSpan]:
    """
    Slide a chunk_size window over the text.

    A window ending mid-word is retracted to the preceding space unless that
    would leave less than min_chunk_size characters. The window advances by
    chunk_size - chunk_overlap and stops once the remaining tail is shorter
    than min_chunk_size.
    """
    chunks: list[ChunkSpan] = []
    total = len(text)
    start = 0

    while start < total:
        end = min(start + config.chunk_size, total)

        if end < total and not text[end].isspace() and not text[end - 1].isspace():
            last_space = text.rfind(" ", start, end)
            if last_space - start >= config.min_chunk_size and last_space > start:
                end = last_space

        span = _trim_span(text, start, end)
        if span is not None and len(span[0]) >= config.min_chunk_size:
            chunks.append(ChunkSpan(span[0], span[1], span[2], len(chunks)))

        if end >= total:
            break

        next_start = end - config.chunk_overlap
        if next_start <= start:
            next_start = end
        if total - next_start < config.min_chunk_size:
            break
        start = next_start

    return chunks


def _chunk_by_semantic(text: str, config: ChunkingConfig) -> list[ChunkSpan]:
    """
    Split on Markdown headers; each header opens a section.

    Oversized sections are re-split with the paragraph strategy and their
    offsets translated back to document positions. Without any headers the
    whole text is chunked by paragraph.
    """
    headers = [match.start() for match in _HEADER.finditer(text)]
    if not headers:
        return _chunk_by_paragraph(text, config)

    chunks: list[ChunkSpan] = []

    preamble = _trim_span(text, 0, headers[0])
    if preamble is not None and len(preamble[0]) >= config.min_chunk_size:
        chunks.append(ChunkSpan(preamble[0], preamble[1], preamble[2], 0))

    bounds = headers[1:] + [len(text)]
    for section_start, section_end in zip(headers, bounds):
        span = _trim_span(text, section_start, section_end)
        if span is None:
            continue
        section, start, end = span

        if len(section) > config.max_chunk_size:
            for sub in _chunk_by_paragraph(section, config):
                chunks.append(
                    ChunkSpan(sub.content, start + sub.start_offset, start + sub.end_offset, 0)
                )
        elif len(section) >= config.min_chunk_size:
            chunks.append(ChunkSpan(section, start, end, 0))

    for index, chunk in enumerate(chunks):
        chunk.index = index

    return chunks


# =============================================================================
# Post-processing
# =============================================================================

def merge_small_chunks(chunks: list[ChunkSpan], min_size: int) -> list[ChunkSpan]:
    """
    Coalesce adjacent under-sized chunks.

    A chunk shorter than min_size absorbs its successor as long as the merged
    text stays under three times min_size. The result is re-indexed from 0.

    Args:
        chunks: Chunks in document order
        min_size: Size below which a chunk is considered too small

    Returns:
        New list of chunks; the input is not modified
    """
    merged: list[ChunkSpan] = []
    current: ChunkSpan | None = None

    for chunk in chunks:
        if current is None:
            current = replace(chunk)
            continue

        if (
            len(current.content) < min_size
            and len(current.content) + len(chunk.content) < min_size * 3
        ):
            current = ChunkSpan(
                content=current.content + "\n\n" + chunk.content,
                start_offset=current.start_offset,
                end_offset=chunk.end_offset,
                index=current.index,
            )
        else:
            merged.append(replace(current, index=len(merged)))
            current = replace(chunk)

    if current is not None:
        merged.append(replace(current, index=len(merged)))

    return merged


def split_oversized_chunk(chunk: ChunkSpan, max_size: int) -> list[ChunkSpan]:
    """
    Split a chunk longer than max_size on word boundaries.

    Pieces carry absolute offsets (chunk.start_offset plus the position
    inside the chunk); they are indexed from 0 and callers re-index them
    within the document.

    Args:
        chunk: Chunk to split
        max_size: Maximum piece length

    Returns:
        [chunk] when it already fits, otherwise the pieces in order
    """
    if max_size <= 0:
        raise ValueError(f"max_size must be positive, got {max_size}")

    content = chunk.content
    if len(content) <= max_size:
        return [chunk]

    pieces: list[ChunkSpan] = []
    start = 0
    while start < len(content):
        end = min(start + max_size, len(content))
        if end < len(content):
            last_space = content.rfind(" ", start, end + 1)
            if last_space > start:
                end = last_space

        span = _trim_span(content, start, end)
        if span is not None:
            pieces.append(
                ChunkSpan(
                    content=span[0],
                    start_offset=chunk.start_offset + span[1],
                    end_offset=chunk.start_offset + span[2],
                    index=len(pieces),
                )
            )
        start = end

    return pieces


# =============================================================================
# Utilities
# =============================================================================

def estimate_token_count(text: str) -> int:
    """Rough token estimate (about 4 characters per token)."""
    return math.ceil(len(text) / 4)


def get_recommended_chunk_size(model: str) -> int:
    """
    Recommended chunk size in characters for an embedding model.

    Uses 80% of the model's token limit (unknown models assume 512 tokens)
    to leave room for special tokens, converted at 4 characters per token.
    """
    max_tokens = _MODEL_TOKEN_LIMITS.get(model, 512)
    return math.floor(max_tokens * 0.8 * 4)


def _trim_span(text: str, start: int, end: int) -> tuple[str, int, int] | None:
    """
    Strip whitespace from text[start:end] and return (content, start, end).

    Returns:
        The trimmed span with adjusted offsets, or None if it is blank
    """
    raw = text[start:end]
    stripped = raw.strip()
    if not stripped:
        return None
    lead = len(raw) - len(raw.lstrip())
    return stripped, start + lead, start + lead + len(stripped)


def _trimmed_segments(text: str, separator: re.Pattern[str]) -> Iterator[tuple[str, int, int]]:
    """Yield the non-blank trimmed pieces between separator matches."""
    position = 0
    for match in separator.finditer(text):
        span = _trim_span(text, position, match.start())
        if span is not None:
            yield span
        position = match.end()
    span = _trim_span(text, position, len(text))
    if span is not None:
        yield span


def _sentences(text: str) -> Iterator[tuple[str, int, int]]:
    """
    Yield sentences ending in ., ! or ? followed by whitespace.

    Text without terminal punctuation is yielded as a single sentence.
    """
    position = 0
    for match in _SENTENCE_END.finditer(text):
        span = _trim_span(text, position, match.end())
        if span is not None:
            yield span
        position = match.end()
    span = _trim_span(text, position, len(text))
    if span is not None:
        yield span
