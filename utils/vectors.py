"""
Vector helpers shared by the store (nearest-neighbour queries) and the
clustering agent (centroid maintenance).
"""

from typing import List, Sequence

import numpy as np
from sklearn.preprocessing import normalize


def mean_vector(vectors: Sequence[Sequence[float]]) -> List[float]:
    """Per-dimension arithmetic mean of equal-length vectors."""
    if len(vectors) == 0:
        raise ValueError("Cannot calculate centroid of empty embedding list")
    arr = np.asarray(vectors, dtype=float)
    if arr.ndim != 2:
        raise ValueError("Embeddings must all have the same dimensionality")
    return arr.mean(axis=0).tolist()


def cosine_similarities(matrix: Sequence[Sequence[float]], vector: Sequence[float]) -> np.ndarray:
    """
    Cosine similarity of every row in `matrix` against `vector`.
    Zero-norm rows (or a zero-norm query) score 0.
    """
    mat = np.asarray(matrix, dtype=float)
    vec = np.asarray(vector, dtype=float)
    if mat.size == 0:
        return np.zeros(0)
    if mat.ndim != 2 or vec.ndim != 1 or mat.shape[1] != vec.shape[0]:
        raise ValueError(
            f"Dimension mismatch: matrix {mat.shape} vs vector {vec.shape}"
        )
    # L2-normalised rows; all-zero rows stay zero
    rows = normalize(mat, norm="l2")
    query = normalize(vec.reshape(1, -1), norm="l2")[0]
    return rows @ query
