"""Embedding comparison functions.

Pure numpy helpers used by clustering and face search. All functions accept
numpy arrays or plain sequences of floats and never mutate their inputs.
"""

from typing import Sequence, Tuple, Union
import numpy as np

from .errors import DimensionMismatch

Vector = Union[np.ndarray, Sequence[float]]


def _as_vectors(a: Vector, b: Vector) -> Tuple[np.ndarray, np.ndarray]:
    """Convert both inputs to float64 vectors and check their lengths."""
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(va.shape[0], vb.shape[0])
    return va, vb


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Compute cosine similarity between two embeddings.

    Args:
        a: First embedding
        b: Second embedding

    Returns:
        Similarity in [-1, 1]. Returns 0.0 when either vector has zero
        magnitude, so degenerate embeddings never match anything.

    Raises:
        DimensionMismatch: If the vectors have different lengths
    """
    va, vb = _as_vectors(a, b)

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(va, vb) / (norm_a * norm_b))
    # Rounding can push |v.v| / |v|^2 marginally past 1
    return max(-1.0, min(1.0, similarity))


def euclidean_distance(a: Vector, b: Vector) -> float:
    """Compute L2 distance between two embeddings.

    Raises:
        DimensionMismatch: If the vectors have different lengths
    """
    va, vb = _as_vectors(a, b)
    return float(np.linalg.norm(va - vb))


def mean_similarity(query: Vector, members: Sequence[Vector]) -> float:
    """Average cosine similarity of a query against every member embedding.

    This is the cluster "centroid" comparison: not a dot product against a
    stored mean vector, but the mean of the per-member similarities,
    recomputed from scratch on every call.

    Args:
        query: Embedding to compare
        members: Member embeddings of one cluster

    Returns:
        Mean similarity, or 0.0 for an empty member list
    """
    if len(members) == 0:
        return 0.0

    total = 0.0
    for member in members:
        total += cosine_similarity(query, member)
    return total / len(members)
