from typing import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors; 0.0 when either is all zeros."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Embedding dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def entry_embedding_text(type: str, content: str, topics: Sequence[str]) -> str:
    """Text embedded for an entry, so stored entries and fresh candidates share one rendering."""
    type_value = getattr(type, "value", type)
    topic_part = f" (topics: {', '.join(topics)})" if topics else ""
    return f"[{type_value}] {content}{topic_part}"
