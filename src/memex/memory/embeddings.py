"""Vector helpers for semantic retrieval."""

from collections.abc import Sequence
from datetime import datetime

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero vectors."""
    if len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def similarity_score(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity clamped to [0, 1]; missing vectors score 0."""
    if a is None or b is None:
        return 0.0
    return min(1.0, max(0.0, cosine_similarity(a, b)))


def encode_embedding(vector: Sequence[float] | None) -> bytes | None:
    """Pack as little-endian float32 for BLOB storage."""
    if vector is None:
        return None
    return np.asarray(vector, dtype="<f4").tobytes()


def decode_embedding(blob: bytes | None) -> list[float] | None:
    if not blob:
        return None
    return np.frombuffer(blob, dtype="<f4").astype(float).tolist()


def is_stale(
    generated_at: datetime | None,
    max_age_seconds: float,
    now: datetime,
) -> bool:
    """True when an embedding is older than max_age (<= 0 disables the check)."""
    if max_age_seconds <= 0 or generated_at is None:
        return False
    return (now - generated_at).total_seconds() > max_age_seconds
