"""
Deterministic Text Chunker
══════════════════════════

Splits extracted document text into bounded, overlapping chunks sized for
downstream consumers (embedding, retrieval, preview).

Algorithm
─────────
  1. Split on blank lines into paragraphs (each trimmed of surrounding
     whitespace, empty paragraphs dropped).
  2. Accumulate paragraphs into a buffer.  When appending the next paragraph
     would push the buffer past `chunk_size` and the buffer is non-empty,
     emit the buffer as a chunk.
  3. Seed the next buffer with the trailing `overlap` characters of the
     emitted chunk, followed by the paragraph that triggered the flush.
  4. Emit whatever remains.

  Sentence fallback: when the paragraph pass yields at most two chunks but
  the text is longer than `chunk_size` (one huge paragraph, say), the same
  accumulate / overlap / flush pass is run over sentences (split on terminal
  punctuation).  The sentence result wins if it produces more chunks.

Every chunk is an exact slice of the source text: the buffer is tracked as a
(start, end) span and `content == text[start_char:end_char]`.  Two
consequences fall out of that for free:
  - the leading overlap region of chunk N+1 is byte-identical to the
    trailing region of chunk N;
  - the same (text, chunk_size, overlap) always yields identical output.

The chunker is pure: no I/O, no logging on the hot path, no global state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")


@dataclass(frozen=True)
class Chunk:
    """One contiguous slice of a document's extracted text."""
    index:      int            # 0-based, contiguous within a document
    content:    str            # == full_text[start_char:end_char]
    start_char: int
    end_char:   int
    metadata:   dict = field(default_factory=dict)


def validate_chunk_params(chunk_size: int, overlap: int) -> None:
    """Raise ValueError for parameter combinations the chunker cannot honour."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ValueError(f"chunk_overlap must not be negative, got {overlap}")
    if overlap >= chunk_size:
        raise ValueError(
            f"chunk_overlap ({overlap}) must be smaller than chunk_size ({chunk_size})"
        )


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 200) -> list[Chunk]:
    """
    Chunk `text` into an ordered list of Chunk objects.

    Returns [] for empty or whitespace-only text, and a single chunk spanning
    the whole text when it already fits in `chunk_size`.
    """
    validate_chunk_params(chunk_size, overlap)

    if not text or not text.strip():
        return []

    if len(text) <= chunk_size:
        return [
            Chunk(
                index=0,
                content=text,
                start_char=0,
                end_char=len(text),
                metadata={
                    "split": "whole",
                    "word_count": len(text.split()),
                    "overlap_chars": 0,
                },
            )
        ]

    chunks = _accumulate(text, _paragraph_spans(text), chunk_size, overlap, "paragraph")

    if len(chunks) <= 2:
        by_sentence = _accumulate(text, _sentence_spans(text), chunk_size, overlap, "sentence")
        if len(by_sentence) > len(chunks):
            chunks = by_sentence

    return chunks


# ---------------------------------------------------------------------------
# Span detection
# ---------------------------------------------------------------------------

def _trimmed(text: str, start: int, end: int) -> tuple[int, int] | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return (start, end) if start < end else None


def _paragraph_spans(text: str) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    cursor = 0
    for brk in _PARAGRAPH_BREAK_RE.finditer(text):
        span = _trimmed(text, cursor, brk.start())
        if span:
            spans.append(span)
        cursor = brk.end()
    span = _trimmed(text, cursor, len(text))
    if span:
        spans.append(span)
    return spans


def _sentence_spans(text: str) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    for match in _SENTENCE_RE.finditer(text):
        span = _trimmed(text, match.start(), match.end())
        if span:
            spans.append(span)
    return spans


# ---------------------------------------------------------------------------
# Accumulate / flush / overlap
# ---------------------------------------------------------------------------

def _accumulate(
    text:       str,
    spans:      list[tuple[int, int]],
    chunk_size: int,
    overlap:    int,
    split:      str,
) -> list[Chunk]:
    unit_key = "paragraph_count" if split == "paragraph" else "sentence_count"
    chunks: list[Chunk] = []

    buf_start: int | None = None
    buf_end = 0
    units = 0
    seeded = 0   # overlap chars carried over from the previous chunk

    def emit() -> None:
        content = text[buf_start:buf_end]
        chunks.append(
            Chunk(
                index=len(chunks),
                content=content,
                start_char=buf_start,
                end_char=buf_end,
                metadata={
                    "split": split,
                    "word_count": len(content.split()),
                    unit_key: units,
                    "overlap_chars": seeded,
                },
            )
        )

    for start, end in spans:
        if buf_start is not None and end - buf_start > chunk_size:
            emit()
            if overlap > 0:
                seed = max(buf_start, buf_end - overlap)
                # skip whitespace at the head of the carried-over region
                while seed < buf_end and text[seed].isspace():
                    seed += 1
                seeded = buf_end - seed
                buf_start = seed if seeded else start
            else:
                seeded = 0
                buf_start = start
            units = 0

        if buf_start is None:
            buf_start = start
        buf_end = end
        units += 1

    if buf_start is not None:
        emit()

    return chunks
