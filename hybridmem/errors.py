"""
Engine Errors - Typed failures and explicit operation results

WHAT: Exception hierarchy shared by every layer plus the Result envelope
WHERE: hybridmem/errors.py - imported by database, embedders and runtime
WHO: Graph store, vector index, working memory raise; orchestrator converts
TIME: n/a

Lower layers raise the exceptions defined here. The orchestrator's public
operations never raise them to callers; they come back wrapped in a
``Result`` so that search and store can degrade instead of failing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class MemoryEngineError(Exception):
    """Base class for all engine failures."""

    kind: str = "engine_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class NotFoundError(MemoryEngineError):
    """A node or edge id does not resolve."""

    kind = "not_found"


class ValidationError(MemoryEngineError):
    """Schema or shape violation (bad type, wrong embedding length, ...)."""

    kind = "validation"


class ReferentialIntegrityError(MemoryEngineError):
    """An edge references a node that does not exist."""

    kind = "referential_integrity"


class IndexUnavailableError(MemoryEngineError):
    """The vector index is degraded; callers continue without it."""

    kind = "index_unavailable"


class EmbeddingFailedError(MemoryEngineError):
    """The embedding provider could not produce a vector."""

    kind = "embedding_failed"


class BackingStoreError(MemoryEngineError):
    """Wraps a failure raised by the backing graph database."""

    kind = "backing_store"


class MissingDependencyError(MemoryEngineError):
    """An optional package required by the selected backend is not installed."""

    kind = "missing_dependency"


class OperationCancelledError(MemoryEngineError):
    """A cooperative cancellation token was triggered mid-operation."""

    kind = "cancelled"


@dataclass(slots=True)
class Result(Generic[T]):
    """Explicit success/failure envelope returned by orchestrator operations."""

    value: Optional[T] = None
    error: Optional[MemoryEngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: MemoryEngineError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


__all__ = [
    "MemoryEngineError",
    "NotFoundError",
    "ValidationError",
    "ReferentialIntegrityError",
    "IndexUnavailableError",
    "EmbeddingFailedError",
    "BackingStoreError",
    "MissingDependencyError",
    "OperationCancelledError",
    "Result",
]
