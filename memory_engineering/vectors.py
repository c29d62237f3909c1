"""
Vector helpers - packing for SQLite storage and similarity math.

Embeddings themselves come from the remote provider (see embeddings.py);
this module only stores, validates and compares them.
"""

import logging
import struct
from typing import List, Optional, Sequence

import numpy as np

from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)


def encode(vector: Optional[Sequence[float]]) -> Optional[bytes]:
    """
    Pack a vector as bytes for SQLite storage.

    Returns None for a missing vector so callers can clear the column directly.
    """
    if vector is None:
        return None
    return struct.pack(f'{len(vector)}f', *vector)


def decode(data: Optional[bytes]) -> Optional[List[float]]:
    """Decode vector bytes back to a list of floats."""
    if not data:
        return None

    num_floats = len(data) // 4  # 4 bytes per float
    return list(struct.unpack(f'{num_floats}f', data))


def validate_dimension(vector: Sequence[float], expected: int) -> None:
    """Reject vectors whose length differs from the index dimension."""
    if len(vector) != expected:
        raise DimensionMismatchError(expected, len(vector))


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors."""
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))
