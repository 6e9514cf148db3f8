"""Deterministic bag-of-words embedder.

Tokens are hashed into ``dimension`` buckets with blake2b and the counts are
L2-normalised. Texts sharing words get similar vectors; nothing is learned.
Useful offline and in tests.
"""

from __future__ import annotations

import hashlib
import re
from typing import List, Optional

import numpy as np

from .base import EmbedderBase, EmbeddingConfig

_TOKEN = re.compile(r"\w+")


class HashingEmbedder(EmbedderBase):
    def __init__(self, config: Optional[EmbeddingConfig] = None, *, dimension: Optional[int] = None) -> None:
        super().__init__(config)
        if dimension is not None:
            self.config.dimension = dimension

    def _bucket(self, token: str) -> int:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "little") % self.dimension

    def embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in _TOKEN.findall(text.lower()):
            vector[self._bucket(token)] += 1.0
        if self.config.normalize:
            norm = float(np.linalg.norm(vector))
            if norm > 0:
                vector /= norm
        return vector.tolist()


__all__ = ["HashingEmbedder"]
