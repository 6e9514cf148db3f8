"""
Transformers Embedder - Sentence embeddings from a Hugging Face encoder

WHAT: Mean-pooled, L2-normalised embeddings from an AutoModel checkpoint
WHERE: hybridmem/embedders/transformers_embedder.py
WHO: Orchestrator when configured with provider="transformers"
TIME: ~5-20ms per short text on CPU for MiniLM-class models

torch and transformers are optional; they are imported on ``load`` and a
MissingDependencyError names the extra to install when they are absent.
"""

from __future__ import annotations

import importlib
import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from ..errors import EmbeddingFailedError, MissingDependencyError
from .base import EmbedderBase, EmbeddingConfig

logger = logging.getLogger(__name__)

REQUIRED_PACKAGES = ("torch", "transformers")


class TransformersEmbedder(EmbedderBase):
    """Loads the model lazily on first use."""

    def __init__(self, config: Optional[EmbeddingConfig] = None) -> None:
        super().__init__(config)
        self._tokenizer: Any = None
        self._model: Any = None
        self._modules: Dict[str, Any] = {}
        self._lock = threading.Lock()

    @staticmethod
    def dependencies_available() -> bool:
        for package in REQUIRED_PACKAGES:
            try:
                importlib.import_module(package)
            except ImportError:
                return False
        return True

    def _ensure_dependencies(self) -> None:
        missing: list[str] = []
        modules = {}
        for package in REQUIRED_PACKAGES:
            try:
                modules[package] = importlib.import_module(package)
            except ImportError:
                missing.append(package)
        if missing:
            raise MissingDependencyError(
                "Missing embedding dependencies: "
                + ", ".join(missing)
                + ". Install with `pip install hybridmem[transformers]`."
            )
        self._modules = modules

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        with self._lock:
            if self._model is not None:
                return
            self._ensure_dependencies()
            transformers = self._modules["transformers"]
            logger.info(f"Loading embedding model {self.config.model_name} on {self.config.device}")
            self._tokenizer = transformers.AutoTokenizer.from_pretrained(self.config.model_name)
            model = transformers.AutoModel.from_pretrained(self.config.model_name)
            model.to(self.config.device)
            model.eval()
            self._model = model
            hidden = getattr(model.config, "hidden_size", None)
            if hidden and hidden != self.config.dimension:
                logger.info(f"Embedding dimension set to {hidden} from model config")
                self.config.dimension = int(hidden)

    def unload(self) -> None:
        with self._lock:
            self._model = None
            self._tokenizer = None

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        if not self.is_loaded:
            self.load()
        torch = self._modules["torch"]
        vectors: List[List[float]] = []
        try:
            for start in range(0, len(texts), self.config.batch_size):
                batch = list(texts[start : start + self.config.batch_size])
                encoded = self._tokenizer(
                    batch,
                    padding=True,
                    truncation=True,
                    max_length=self.config.max_length,
                    return_tensors="pt",
                ).to(self.config.device)
                with torch.no_grad():
                    output = self._model(**encoded)
                mask = encoded["attention_mask"].unsqueeze(-1).float()
                pooled = (output.last_hidden_state * mask).sum(dim=1) / mask.sum(dim=1).clamp(min=1e-9)
                if self.config.normalize:
                    pooled = torch.nn.functional.normalize(pooled, p=2, dim=1)
                vectors.extend(pooled.cpu().tolist())
        except MissingDependencyError:
            raise
        except Exception as exc:
            raise EmbeddingFailedError(f"Embedding with {self.config.model_name} failed: {exc}") from exc
        return vectors

    def embed(self, text: str) -> List[float]:
        return self.embed_documents([text])[0]


__all__ = ["TransformersEmbedder", "REQUIRED_PACKAGES"]
