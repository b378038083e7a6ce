"""
Embedding provider interface and vector similarity.
"""

import math
from typing import Optional, Protocol, Sequence


class EmbeddingProvider(Protocol):
    """Returns a vector for ``text``; raises EmbeddingUnavailableError on failure."""

    async def embed(self, text: str) -> Optional[list[float]]: ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, zero-norm or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
