"""Embedding provider seam.

The engine never computes embeddings itself. Callers that want text queries
(``VectorSearchEngine.search_text``) or text inserts plug in any object that
satisfies ``EmbeddingClient``.
"""

from typing import Protocol

from pydantic import BaseModel, Field


class EmbeddingConfig(BaseModel):
    """Configuration describing the embeddings stored in the engine.

    Attributes:
        model: Model identifier (informational)
        version: Version tag; changing it invalidates stored embeddings
        dimensions: Embedding dimensionality enforced by the codec
        batch_size: Maximum texts per ``embed_batch`` call
    """

    model: str = "external"
    version: str = "v1"
    dimensions: int | None = Field(default=None, ge=1, le=65536)
    batch_size: int = Field(default=100, ge=1, le=500)


class EmbeddingClient(Protocol):
    """Protocol for embedding client implementations."""

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a batch of texts.

        Args:
            texts: List of input texts (max batch_size)

        Returns:
            List of embedding vectors (same order as inputs)
        """
        ...

    async def embed_single(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        ...
