"""
Embedder Base - Contract for text -> vector providers

WHAT: Abstract embedder plus the shared configuration dataclass
WHERE: hybridmem/embedders/base.py
WHO: Orchestrator (store/search), tests supplying scripted embedders
TIME: Provider dependent

Embedders are synchronous; the orchestrator runs them off the event loop.
Every vector an embedder returns has exactly ``dimension`` components.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence


@dataclass(slots=True)
class EmbeddingConfig:
    provider: str = "hashing"
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    device: str = "cpu"
    batch_size: int = 32
    normalize: bool = True
    max_length: int = 512


class EmbedderBase(ABC):
    """Turns text into fixed-length vectors."""

    def __init__(self, config: Optional[EmbeddingConfig] = None) -> None:
        self.config = config or EmbeddingConfig()

    @property
    def dimension(self) -> int:
        return self.config.dimension

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Embed a single text."""

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        return [self.embed(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self.embed(text)


__all__ = ["EmbedderBase", "EmbeddingConfig"]
