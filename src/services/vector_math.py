"""Vector normalisation and similarity helpers"""

from collections.abc import Sequence

import numpy as np

UNIT_LENGTH_TOLERANCE = 1e-3


class ZeroNormVectorError(ValueError):
    """Raised when a vector cannot be normalised"""

    def __init__(self, message: str = "Cannot normalise a zero-norm vector"):
        super().__init__(message)


def to_unit_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    """
    Normalise a vector to unit length

    Args:
        values: Raw embedding values

    Returns:
        np.ndarray: float32 unit vector

    Raises:
        ZeroNormVectorError: If the vector is empty, non-finite, or has zero norm
    """
    array = np.asarray(values, dtype=np.float32)
    if array.size == 0:
        raise ZeroNormVectorError("Cannot normalise an empty vector")
    if not np.all(np.isfinite(array)):
        raise ZeroNormVectorError("Vector contains non-finite values")

    norm = float(np.linalg.norm(array))
    if norm == 0.0 or not np.isfinite(norm):
        raise ZeroNormVectorError()
    return array / norm


def is_unit_length(values: Sequence[float] | np.ndarray, tolerance: float = UNIT_LENGTH_TOLERANCE) -> bool:
    norm = float(np.linalg.norm(np.asarray(values, dtype=np.float32)))
    return abs(norm - 1.0) <= tolerance


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm"""
    left = np.asarray(a, dtype=np.float32)
    right = np.asarray(b, dtype=np.float32)
    if left.shape != right.shape:
        raise ValueError(f"Dimension mismatch: {left.shape[0]} != {right.shape[0]}")

    denominator = float(np.linalg.norm(left)) * float(np.linalg.norm(right))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(left, right)) / denominator
