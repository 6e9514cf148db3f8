"""
Telemetry Collection - Operation spans and engine events

WHAT: Lightweight spans around orchestrator operations plus domain events
WHERE: hybridmem/runtime/memory/telemetry.py - observability layer
WHO: MemoryOrchestrator (memory.store, memory.search, memory.consolidate, ...)
TIME: Zero-overhead when disabled, <0.1ms overhead when enabled

Spans record duration and success; events (node:created, edge:created,
contradiction:detected, ...) carry a small payload. Sinks override
``emit_span`` / ``emit_event``.
"""

from __future__ import annotations

import logging
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TelemetrySpan(AbstractContextManager["TelemetrySpan"]):
    """Context manager capturing span metadata and duration."""

    def __init__(
        self,
        client: "TelemetryClient",
        name: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._client = client
        self.name = name
        self.attributes: Dict[str, Any] = dict(attributes or {})
        self._start: float = 0.0

    def __enter__(self) -> "TelemetrySpan":
        self._start = time.perf_counter()
        return self

    def set_attribute(self, key: str, value: Any) -> None:
        """Update span attributes while running."""

        self.attributes[key] = value

    def __exit__(self, exc_type, exc, exc_tb) -> bool:
        duration_ms = (time.perf_counter() - self._start) * 1000.0
        self.attributes.setdefault("success", exc is None)
        self.attributes["duration_ms"] = duration_ms
        self._client.emit_span(self.name, self.attributes)
        return False


class TelemetryClient:
    """Base telemetry client; override `emit_span` and `emit_event` for custom sinks."""

    def span(
        self,
        name: str,
        *,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> TelemetrySpan:
        return TelemetrySpan(self, name, attributes)

    def emit_span(self, name: str, attributes: Dict[str, Any]) -> None:
        """Handle span completion. Subclasses override this hook."""

        raise NotImplementedError

    def emit_event(self, name: str, payload: Dict[str, Any]) -> None:
        """Handle a domain event. Ignored unless a subclass overrides it."""


@dataclass(slots=True)
class NoOpTelemetryClient(TelemetryClient):
    """Telemetry client that silently discards spans."""

    def emit_span(self, name: str, attributes: Dict[str, Any]) -> None:  # noqa: D401 - intentionally empty
        pass


class LoggingTelemetryClient(TelemetryClient):
    """Writes spans at INFO and events at DEBUG through the standard logger."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._log = log or logger

    def emit_span(self, name: str, attributes: Dict[str, Any]) -> None:
        payload = {k: attributes[k] for k in sorted(attributes)}
        self._log.info(f"[telemetry] {name}: {payload}")

    def emit_event(self, name: str, payload: Dict[str, Any]) -> None:
        self._log.debug(f"[event] {name}: {payload}")


@dataclass
class RecordingTelemetryClient(TelemetryClient):
    """Keeps spans and events in memory; handy for tests and notebooks."""

    spans: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)

    def emit_span(self, name: str, attributes: Dict[str, Any]) -> None:
        self.spans.append((name, dict(attributes)))

    def emit_event(self, name: str, payload: Dict[str, Any]) -> None:
        self.events.append((name, dict(payload)))

    def span_names(self) -> List[str]:
        return [name for name, _ in self.spans]

    def event_names(self) -> List[str]:
        return [name for name, _ in self.events]


__all__ = [
    "TelemetrySpan",
    "TelemetryClient",
    "NoOpTelemetryClient",
    "LoggingTelemetryClient",
    "RecordingTelemetryClient",
]
