import logging

import pytest

from hybridmem.runtime.memory.telemetry import (
    LoggingTelemetryClient,
    NoOpTelemetryClient,
    RecordingTelemetryClient,
    TelemetryClient,
)


def test_span_records_duration_and_success():
    client = RecordingTelemetryClient()
    with client.span("memory.store", attributes={"limit": 3}) as span:
        span.set_attribute("node_type", "fact")

    name, attrs = client.spans[0]
    assert name == "memory.store"
    assert attrs["success"] is True
    assert attrs["limit"] == 3
    assert attrs["node_type"] == "fact"
    assert attrs["duration_ms"] >= 0.0


def test_span_marks_exceptions_as_failures():
    client = RecordingTelemetryClient()
    with pytest.raises(RuntimeError):
        with client.span("memory.search"):
            raise RuntimeError("boom")
    assert client.spans[0][1]["success"] is False


def test_explicit_failure_attribute_is_kept():
    client = RecordingTelemetryClient()
    with client.span("memory.get") as span:
        span.set_attribute("success", False)
    assert client.spans[0][1]["success"] is False


def test_events_are_recorded():
    client = RecordingTelemetryClient()
    client.emit_event("node:created", {"id": "n1"})
    assert client.event_names() == ["node:created"]
    assert client.events[0][1] == {"id": "n1"}


def test_logging_client_writes_spans(caplog):
    caplog.set_level(logging.DEBUG, logger="hybridmem.runtime.memory.telemetry")
    client = LoggingTelemetryClient()
    with client.span("memory.decay"):
        pass
    client.emit_event("memory:decayed", {"ids": ["a"]})
    assert "[telemetry] memory.decay" in caplog.text
    assert "[event] memory:decayed" in caplog.text


def test_noop_client_discards_and_base_client_requires_a_sink():
    with NoOpTelemetryClient().span("memory.stats"):
        pass
    with pytest.raises(NotImplementedError):
        with TelemetryClient().span("memory.stats"):
            pass
