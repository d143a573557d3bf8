from __future__ import annotations

from typing import Sequence

import numpy as np


def encode_embedding(values: Sequence[float] | None) -> bytes | None:
    if values is None:
        return None
    arr = np.asarray(values, dtype="<f4")
    if arr.ndim != 1 or arr.size == 0 or not np.isfinite(arr).all():
        return None
    return arr.tobytes()


def decode_embedding(blob: bytes | None) -> np.ndarray | None:
    """None for missing or corrupt (non-finite) vectors."""
    if not blob:
        return None
    arr = np.frombuffer(blob, dtype="<f4")
    if not np.isfinite(arr).all():
        return None
    return arr


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Raw cosine in [-1, 1]. Zero or non-finite vectors compare as 0.0."""
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if not (np.isfinite(na) and np.isfinite(nb)) or na == 0.0 or nb == 0.0:
        return 0.0
    cos = float(np.dot(a, b) / (na * nb))
    return cos if np.isfinite(cos) else 0.0


def similarity_score(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine mapped onto [0, 1] so higher is always more similar."""
    score = (cosine_similarity(a, b) + 1.0) / 2.0
    return max(0.0, min(1.0, score))
