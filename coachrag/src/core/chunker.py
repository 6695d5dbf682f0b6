"""
CoachRAG - Sentence Chunker
============================
Splits a document into bounded, sentence-respecting chunks with overlap.

Algorithm
---------
1. Split on sentence boundaries: ``.``, ``?`` or ``!`` followed by
   whitespace.
2. Greedily accumulate sentences into a buffer while the buffer stays
   within ``max_size`` characters.
3. When the next sentence would overflow, emit the buffer and seed the
   next one with the trailing ``overlap`` characters of the emitted chunk,
   trimmed forward to the first whole word.  A seed that cannot share a
   buffer with the incoming sentence is dropped.
4. A single sentence longer than ``max_size`` is hard-split into windows
   of ``max_size`` advancing by ``max_size - overlap``.
5. Whatever is left in the buffer is emitted last.

The function is pure: identical input always yields identical chunks.
"""

from __future__ import annotations

import re

_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.?!])\s+")


def split_sentences(text: str) -> list[str]:
    """Split *text* at sentence boundaries, dropping empty pieces."""
    return [s.strip() for s in _SENTENCE_BOUNDARY_RE.split(text) if s.strip()]


def chunk(text: str, max_size: int, overlap: int) -> list[str]:
    """
    Split *text* into ordered chunks of at most *max_size* characters.

    Raises
    ------
    ValueError
        If ``max_size < 1``, ``overlap < 0`` or ``overlap >= max_size``.
    """
    if max_size < 1:
        raise ValueError(f"max_size must be ≥ 1, got {max_size}")
    if not 0 <= overlap < max_size:
        raise ValueError(f"overlap must be in [0, max_size), got overlap={overlap}, max_size={max_size}")

    chunks: list[str] = []
    current = ""

    for sentence in split_sentences(text):
        candidate = f"{current} {sentence}".strip()
        if len(candidate) <= max_size:
            current = candidate
            continue

        if current:
            chunks.append(current)
            seed = _overlap_tail(current, overlap)
            seeded = f"{seed} {sentence}".strip()
            if seed and len(seeded) <= max_size:
                current = seeded
                continue

        if len(sentence) > max_size:
            chunks.extend(_hard_split(sentence, max_size, overlap))
            current = ""
        else:
            current = sentence

    if current:
        chunks.append(current)
    return chunks


def _overlap_tail(emitted: str, overlap: int) -> str:
    """Trailing *overlap* characters of *emitted*, starting at a word boundary."""
    if overlap == 0:
        return ""
    start = len(emitted) - overlap
    if start <= 0:
        return emitted
    tail = emitted[start:]
    if not emitted[start - 1].isspace() and not tail[0].isspace():
        # Starts mid-word: skip to the next whole word
        cut = tail.find(" ")
        tail = tail[cut + 1:] if cut >= 0 else ""
    return tail.strip()


def _hard_split(sentence: str, max_size: int, overlap: int) -> list[str]:
    """Fixed-size windows over an oversized sentence; never yields an empty window."""
    step = max_size - overlap
    windows: list[str] = []
    for start in range(0, len(sentence), step):
        windows.append(sentence[start:start + max_size])
        if start + max_size >= len(sentence):
            break
    return windows
