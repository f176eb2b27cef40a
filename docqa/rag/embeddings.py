"""Embedding generation on top of the model server client.

Handles:
- Single and batched text embedding
- Batch contract enforcement (one vector per input, same order)
- Cosine similarity between vectors
- Embedding model health check
"""
from typing import List, Dict, Any
import numpy as np
import structlog

from docqa import config
from docqa.errors import EmbeddingCountMismatch
from docqa.llm_client import OllamaClient

logger = structlog.get_logger()


class EmbeddingClient:
    """Converts text into fixed-dimension vectors via the embedding model."""

    def __init__(self, llm_client: OllamaClient, model: str = None):
        """Initialize the embedding client.

        Args:
            llm_client: Model server client used for the embed requests
            model: Embedding model name (default from config)
        """
        self.llm_client = llm_client
        self.model = model or config.EMBEDDING_MODEL

    async def embed(self, text: str) -> List[float]:
        """Embed a single text.

        Raises:
            EmbeddingCountMismatch: If the model returns no vector
            httpx.HTTPError: On API errors
        """
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts in one request.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingCountMismatch: If the model returns a different number
                of vectors than texts submitted
            httpx.HTTPError: On API errors
        """
        if not texts:
            return []

        vectors = await self.llm_client.embed(texts, model=self.model)

        if len(vectors) != len(texts):
            logger.error(
                "embedding_count_mismatch",
                model=self.model,
                expected=len(texts),
                received=len(vectors),
            )
            raise EmbeddingCountMismatch(len(texts), len(vectors))

        return vectors

    async def health_check(self) -> Dict[str, Any]:
        """Embed a probe string and report the model's vector dimension."""
        vector = await self.embed("test")
        return {
            "status": "connected",
            "model": self.model,
            "dimension": len(vector),
        }


def cosine_similarity(a: List[float], b: List[float]) -> float:
    """Cosine similarity of two vectors.

    Returns:
        Value in [-1, 1]; 0.0 when either vector has zero norm

    Raises:
        ValueError: If the vectors differ in length
    """
    if len(a) != len(b):
        raise ValueError(f"Vectors must have the same length ({len(a)} != {len(b)})")

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(va, vb) / (norm_a * norm_b))
    return max(-1.0, min(1.0, similarity))
