"""
Engine Configuration - Tunables for the hybrid memory engine

WHAT: Dataclass holding every threshold/interval the engine uses
WHERE: hybridmem/config.py - read once when an orchestrator is built
WHO: MemoryOrchestrator, ConsolidationEngine, WorkingMemory, VectorIndex
TIME: n/a

Values come from (in order of precedence) explicit overrides, ``HYBRIDMEM_*``
environment variables and the defaults below. Nothing here is global state:
each orchestrator owns its own config instance.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

from .errors import ValidationError

ENV_PREFIX = "HYBRIDMEM_"


@dataclass(slots=True)
class MemoryEngineConfig:
    vector_dimension: int = 384
    vector_metric: str = "cosine"
    vector_backend: str = "flat"
    search_batch_size: int = 100

    working_memory_max_items: int = 20
    working_memory_eviction_ratio: float = 0.2

    consolidation_threshold: int = 5
    consolidation_interval_s: float = 300.0
    decay_interval_s: float = 3600.0
    stale_working_memory_s: float = 3600.0
    stale_working_importance: float = 0.3
    merge_similarity: float = 0.95

    contradiction_similarity: float = 0.7
    contradiction_candidates: int = 20
    insight_min_relationships: int = 2
    insight_limit: int = 20

    enable_auto_consolidation: bool = True
    contradiction_detection: bool = True
    insight_generation: bool = True
    default_session_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.vector_dimension <= 0:
            raise ValidationError("vector_dimension must be positive")
        if self.vector_metric not in {"cosine", "euclidean"}:
            raise ValidationError(f"Unsupported vector metric: {self.vector_metric}")
        if self.vector_backend not in {"flat", "hnsw"}:
            raise ValidationError(f"Unsupported vector backend: {self.vector_backend}")
        if self.working_memory_max_items <= 0:
            raise ValidationError("working_memory_max_items must be positive")
        if not 0.0 < self.working_memory_eviction_ratio <= 1.0:
            raise ValidationError("working_memory_eviction_ratio must be in (0, 1]")
        if self.search_batch_size <= 0:
            raise ValidationError("search_batch_size must be positive")

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def resolve_engine_config(env: Optional[Mapping[str, str]] = None, **overrides: Any) -> MemoryEngineConfig:
    """Build a config from ``HYBRIDMEM_*`` environment variables plus overrides."""
    env = os.environ if env is None else env
    defaults = MemoryEngineConfig()
    values: Dict[str, Any] = {}
    for f in fields(MemoryEngineConfig):
        raw = env.get(f"{ENV_PREFIX}{f.name.upper()}")
        if raw is None or raw == "":
            continue
        try:
            values[f.name] = _coerce(raw, getattr(defaults, f.name))
        except ValueError as exc:
            raise ValidationError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from exc
    unknown = set(overrides) - {f.name for f in fields(MemoryEngineConfig)}
    if unknown:
        raise ValidationError(f"Unknown config option(s): {', '.join(sorted(unknown))}")
    values.update(overrides)
    return MemoryEngineConfig(**values)


__all__ = ["MemoryEngineConfig", "resolve_engine_config", "ENV_PREFIX"]
