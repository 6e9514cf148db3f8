"""hybridmem - hybrid graph + vector memory engine."""

from .config import MemoryEngineConfig, resolve_engine_config
from .errors import (
    BackingStoreError,
    EmbeddingFailedError,
    IndexUnavailableError,
    MemoryEngineError,
    MissingDependencyError,
    NotFoundError,
    ReferentialIntegrityError,
    Result,
    ValidationError,
)
from .runtime.memory import MemoryOrchestrator, SearchOptions, StoreOptions

__version__ = "0.1.0"

__all__ = [
    "MemoryEngineConfig",
    "resolve_engine_config",
    "BackingStoreError",
    "EmbeddingFailedError",
    "IndexUnavailableError",
    "MemoryEngineError",
    "MissingDependencyError",
    "NotFoundError",
    "ReferentialIntegrityError",
    "Result",
    "ValidationError",
    "MemoryOrchestrator",
    "SearchOptions",
    "StoreOptions",
]
