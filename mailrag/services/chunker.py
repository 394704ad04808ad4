from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass

from mailrag.services.text_normalizer import clean_text, count_words, normalize_whitespace

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


@dataclass(frozen=True)
class ChunkingOptions:
    target_words: int = 400
    min_words: int = 300
    max_words: int = 500
    overlap_words: int = 50

    @classmethod
    def from_settings(cls) -> "ChunkingOptions":
        from mailrag.core.config import settings

        return cls(
            target_words=settings.CHUNK_TARGET_WORDS,
            min_words=settings.CHUNK_MIN_WORDS,
            max_words=settings.CHUNK_MAX_WORDS,
            overlap_words=settings.CHUNK_OVERLAP_WORDS,
        )


@dataclass(frozen=True)
class TextChunk:
    index: int
    text: str
    word_count: int


def split_units(text: str) -> list[str]:
    """Sentence-like units, falling back to paragraphs when nothing ends a sentence."""
    cleaned = clean_text(text, collapse_whitespace=False)
    if not cleaned:
        return []
    sentences = [normalize_whitespace(s) for s in _SENTENCE_SPLIT_RE.split(cleaned)]
    sentences = [s for s in sentences if s]
    if len(sentences) > 1:
        return sentences
    paragraphs = [normalize_whitespace(p) for p in _PARAGRAPH_SPLIT_RE.split(cleaned)]
    paragraphs = [p for p in paragraphs if p]
    if len(paragraphs) > 1:
        return paragraphs
    whole = normalize_whitespace(cleaned)
    return [whole] if whole else []


def _overlap_tail(units: list[str], overlap_words: int) -> tuple[list[str], int]:
    tail: list[str] = []
    total = 0
    for unit in reversed(units):
        words = count_words(unit)
        if total + words > overlap_words:
            break
        tail.insert(0, unit)
        total += words
    return tail, total


def iter_chunks(text: str, options: ChunkingOptions | None = None) -> Iterator[TextChunk]:
    opts = options or ChunkingOptions()
    units = split_units(text)
    if not units:
        return

    # the last closed chunk is held back so an undersized remainder can be merged into it
    pending: str | None = None
    next_index = 0
    buffer: list[str] = []
    buffer_words = 0
    seeded = 0

    def close() -> str | None:
        nonlocal buffer, buffer_words, seeded
        closed = " ".join(buffer).strip()
        if count_words(closed) < opts.min_words:
            return None
        buffer, buffer_words = _overlap_tail(buffer, opts.overlap_words)
        seeded = len(buffer)
        return closed

    for unit in units:
        unit_words = count_words(unit)
        if buffer and buffer_words + unit_words > opts.max_words:
            closed = close()
            if closed is not None:
                if pending is not None:
                    yield TextChunk(next_index, pending, count_words(pending))
                    next_index += 1
                pending = closed
        buffer.append(unit)
        buffer_words += unit_words

        if buffer_words >= opts.target_words:
            closed = close()
            if closed is not None:
                if pending is not None:
                    yield TextChunk(next_index, pending, count_words(pending))
                    next_index += 1
                pending = closed

    fresh = buffer[seeded:] if pending is not None else buffer
    if fresh:
        remainder = " ".join(buffer).strip()
        if pending is None:
            pending = remainder
        elif count_words(remainder) >= opts.min_words:
            yield TextChunk(next_index, pending, count_words(pending))
            next_index += 1
            pending = remainder
        else:
            pending = f"{pending} {' '.join(fresh)}"

    if pending is not None:
        yield TextChunk(next_index, pending, count_words(pending))


def chunk_text(text: str, options: ChunkingOptions | None = None) -> list[TextChunk]:
    return list(iter_chunks(text, options))
