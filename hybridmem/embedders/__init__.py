"""Text embedding providers."""

from __future__ import annotations

from typing import Optional

from ..errors import ValidationError
from .base import EmbedderBase, EmbeddingConfig
from .hashing import HashingEmbedder
from .transformers_embedder import TransformersEmbedder


def create_embedder(config: Optional[EmbeddingConfig] = None) -> EmbedderBase:
    config = config or EmbeddingConfig()
    if config.provider == "hashing":
        return HashingEmbedder(config)
    if config.provider == "transformers":
        return TransformersEmbedder(config)
    raise ValidationError(f"Unknown embedding provider: {config.provider}")


__all__ = [
    "EmbedderBase",
    "EmbeddingConfig",
    "HashingEmbedder",
    "TransformersEmbedder",
    "create_embedder",
]
