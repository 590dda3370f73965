"""Vector helpers shared by the profile store and the matcher."""

from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np

from .errors import DimensionMismatchError


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Normalized dot product clamped to ``[0, 1]``.

    Zero-norm input scores 0. Vectors of different length raise
    DimensionMismatchError: that only happens when embeddings come from
    different models.
    """

    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape != vb.shape:
        raise DimensionMismatchError(
            f"cannot compare embeddings of dimension {va.size} and {vb.size}"
        )
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    score = float(np.dot(va, vb) / (norm_a * norm_b))
    return min(1.0, max(0.0, score))


def unit_mean(vectors: Iterable[Sequence[float] | np.ndarray]) -> np.ndarray | None:
    """Arithmetic mean scaled to unit length, or None for no input."""
    stacked = [np.asarray(v, dtype=np.float64).reshape(-1) for v in vectors]
    if not stacked:
        return None
    dims = {v.size for v in stacked}
    if len(dims) != 1:
        raise DimensionMismatchError(f"mixed embedding dimensions {sorted(dims)}")
    mean = np.mean(np.vstack(stacked), axis=0)
    norm = float(np.linalg.norm(mean))
    if norm == 0.0:
        return mean
    return mean / norm


__all__ = ["cosine_similarity", "unit_mean"]
