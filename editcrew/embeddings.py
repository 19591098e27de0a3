"""
Embedding boundary for outcome memory.

Uses LiteLLM embeddings; a failed call is logged and returns None so that
callers can fall back to keyword search.
"""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)

# Maximum content length for embedding
MAX_EMBED_CHARS = 8000


class Embedder:
    """Text in, vector out."""

    def __init__(self, model: str = "text-embedding-3-small"):
        self.model = model

    def embed(self, text: str) -> list[float] | None:
        if not text.strip():
            return None
        try:
            import litellm

            response = litellm.embedding(
                model=self.model,
                input=[text[:MAX_EMBED_CHARS]],
            )
            return [float(value) for value in response.data[0]["embedding"]]
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Embedding failed: {e}")
            return None


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Compute cosine similarity between two vectors; 0.0 for mismatched or zero vectors."""
    a_arr = np.asarray(a, dtype=float)
    b_arr = np.asarray(b, dtype=float)
    if a_arr.shape != b_arr.shape or a_arr.size == 0:
        return 0.0
    denominator = np.linalg.norm(a_arr) * np.linalg.norm(b_arr)
    if denominator == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / denominator)
