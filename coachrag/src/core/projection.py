"""
CoachRAG - Dimension Projector
===============================
Deterministically reconciles an embedding's width with the fixed width
of the vector index.

- Same width      → a copy of the input.
- Wider source    → block averaging over ``target`` contiguous blocks,
  block ``j`` spanning ``[floor(j*m/t), floor((j+1)*m/t))``.
- Narrower source → nearest-neighbour upsampling, output ``j`` taking
  source index ``floor(j*m/t)`` clamped to ``m - 1``.

No randomness and no learned parameters: the output depends only on
``(vector, target_width)``, so vectors ingested months apart stay
comparable after a provider changes its native width.
"""

from __future__ import annotations

import math
from collections.abc import Sequence


def project(vector: Sequence[float], target_width: int) -> list[float]:
    """
    Return *vector* resized to exactly *target_width* values.

    Raises
    ------
    ValueError
        If *vector* is empty or *target_width* is not positive.
    """
    if target_width < 1:
        raise ValueError(f"target_width must be ≥ 1, got {target_width}")
    m = len(vector)
    if m == 0:
        raise ValueError("cannot project an empty vector")

    if m == target_width:
        return [float(v) for v in vector]

    if m > target_width:
        out: list[float] = []
        for j in range(target_width):
            start = (j * m) // target_width
            end = ((j + 1) * m) // target_width or start + 1
            out.append(_block_mean(vector[start:end]))
        return out

    return [float(vector[min(m - 1, (j * m) // target_width)]) for j in range(target_width)]


def _block_mean(block: Sequence[float]) -> float:
    # Shifted mean: a block of equal values returns that value exactly
    pivot = float(block[0])
    return pivot + math.fsum(v - pivot for v in block) / len(block)


def l2_norm(vector: Sequence[float]) -> float:
    return sum(v * v for v in vector) ** 0.5
