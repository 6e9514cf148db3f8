import asyncio
import sys

import numpy as np
import pytest

from hybridmem import MemoryEngineConfig, MemoryOrchestrator, StoreOptions
from hybridmem.embedders import EmbeddingConfig, HashingEmbedder, TransformersEmbedder, create_embedder
from hybridmem.errors import MissingDependencyError, ValidationError
from hybridmem.runtime.memory.models import NodeType


def test_hashing_embedder_is_deterministic_and_normalised():
    embedder = create_embedder(EmbeddingConfig(provider="hashing", dimension=64))
    assert isinstance(embedder, HashingEmbedder)
    first = embedder.embed("Refund policy")
    assert first == embedder.embed("refund POLICY")
    assert len(first) == 64
    assert np.linalg.norm(first) == pytest.approx(1.0, abs=1e-6)
    assert embedder.embed("") == [0.0] * 64


def test_shared_words_mean_similar_vectors():
    embedder = HashingEmbedder(dimension=256)
    a, b, c = (np.array(embedder.embed(t)) for t in ("the cat sat", "the cat slept", "quarterly tax filing"))
    assert float(a @ b) > float(a @ c)


def test_unknown_provider_is_rejected():
    with pytest.raises(ValidationError):
        create_embedder(EmbeddingConfig(provider="word2vec"))


def test_transformers_embedder_names_missing_extra(monkeypatch):
    monkeypatch.setitem(sys.modules, "torch", None)
    embedder = create_embedder(EmbeddingConfig(provider="transformers"))
    assert isinstance(embedder, TransformersEmbedder)
    assert not embedder.is_loaded
    assert TransformersEmbedder.dependencies_available() is False
    with pytest.raises(MissingDependencyError, match="hybridmem\\[transformers\\]"):
        embedder.embed("hello")


def test_store_without_embedding_dependencies_still_succeeds(monkeypatch):
    monkeypatch.setitem(sys.modules, "torch", None)
    config = MemoryEngineConfig(enable_auto_consolidation=False)
    orchestrator = MemoryOrchestrator(config=config, embedder=TransformersEmbedder())
    result = asyncio.run(orchestrator.store("Backups run nightly", StoreOptions(node_type=NodeType.FACT)))
    assert result.ok
    assert result.value.embedding is None
