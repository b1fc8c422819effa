"""Similarity primitives: token-set overlap, cosine matrices and score blending.

Kept free of provider and model code so they can be unit tested directly.
"""
from __future__ import annotations

from typing import Sequence

import numpy as np


def token_set(text: str) -> frozenset[str]:
    """Tokens of length >= 2 from an already-normalized string."""
    return frozenset(t for t in text.split() if len(t) >= 2)


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    """Jaccard index of two token sets; 0 when either is empty."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def overlap(text_a: str, text_b: str) -> float:
    """Lexical overlap of two normalized descriptions, in [0, 1]."""
    return jaccard(token_set(text_a), token_set(text_b))


def as_matrix(vectors: Sequence[Sequence[float]], dim: int | None = None) -> np.ndarray:
    """Stack vectors into a float matrix, zero-filling empty ones.

    Empty vectors come from blank texts the provider was never asked to embed.

    Raises:
        ValueError: A non-empty vector does not have ``dim`` components
    """
    if dim is None:
        dim = max((len(v) for v in vectors), default=0)
    matrix = np.zeros((len(vectors), dim), dtype=np.float64)
    for i, vec in enumerate(vectors):
        if not vec:
            continue
        if len(vec) != dim:
            raise ValueError(f"Vector {i} has {len(vec)} components, expected {dim}")
        matrix[i] = vec
    return matrix


def unit_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; zero rows stay zero instead of becoming NaN."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    return matrix / safe


def cosine_matrix(queries: np.ndarray, documents: np.ndarray) -> np.ndarray:
    """Pairwise cosine similarities, shape (len(queries), len(documents))."""
    if queries.shape[1] != documents.shape[1]:
        return np.zeros((queries.shape[0], documents.shape[0]), dtype=np.float64)
    return unit_rows(queries) @ unit_rows(documents).T


def blend(primary, secondary, weight: float = 0.85):
    """``weight * primary + (1 - weight) * secondary``.

    Used for cosine vs. lexical scores (elementwise on arrays) and for
    reconciling two models' confidences.
    """
    return weight * primary + (1.0 - weight) * secondary
