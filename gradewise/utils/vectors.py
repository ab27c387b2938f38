"""Embedding-vector similarity and ranking."""
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity ``dot(a, b) / (|a| * |b|)``.

    Symmetric and clamped to [-1, 1]. Returns 0.0 when either vector has zero
    norm instead of NaN.

    Raises:
        ValueError: If either vector is missing or the lengths differ
    """
    if a is None or b is None:
        raise ValueError("Vectors must be non-null")

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.ndim != 1 or va.shape != vb.shape:
        raise ValueError(f"Vectors must have equal length (got {va.shape} and {vb.shape})")

    denominator = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denominator == 0.0:
        return 0.0

    score = float(np.dot(va, vb) / denominator)
    return max(-1.0, min(1.0, score))


def rank_by_similarity(
    query: Sequence[float],
    items: Sequence[T],
    embedding_of: Callable[[T], Optional[Sequence[float]]],
    top_k: Optional[int] = None,
) -> List[Tuple[T, float]]:
    """Score ``items`` against ``query`` and return them best-first.

    Items with no embedding are skipped. The sort is stable, so ties keep the
    order in which items were supplied and repeated calls rank identically.

    Args:
        query: Query embedding
        items: Candidates to rank
        embedding_of: Accessor returning an item's embedding (or None)
        top_k: Optional cap on the number of results

    Returns:
        List of (item, score) pairs sorted by descending score
    """
    scored = []
    for item in items:
        embedding = embedding_of(item)
        if embedding is None or len(embedding) == 0:
            continue
        scored.append((item, cosine_similarity(query, embedding)))

    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:top_k] if top_k is not None else scored
