import logging

import pytest

from hybridmem import MemoryEngineConfig, ValidationError, resolve_engine_config


def test_defaults():
    config = MemoryEngineConfig()
    assert config.vector_dimension == 384
    assert config.working_memory_max_items == 20
    assert config.consolidation_threshold == 5
    assert config.as_dict()["merge_similarity"] == 0.95


def test_environment_values_are_coerced():
    env = {
        "HYBRIDMEM_VECTOR_DIMENSION": "768",
        "HYBRIDMEM_MERGE_SIMILARITY": "0.9",
        "HYBRIDMEM_ENABLE_AUTO_CONSOLIDATION": "off",
        "HYBRIDMEM_CONTRADICTION_DETECTION": "yes",
        "HYBRIDMEM_DEFAULT_SESSION_ID": "agent-7",
        "HYBRIDMEM_VECTOR_METRIC": "",
        "UNRELATED": "1",
    }
    config = resolve_engine_config(env)
    assert config.vector_dimension == 768
    assert config.merge_similarity == 0.9
    assert config.enable_auto_consolidation is False
    assert config.contradiction_detection is True
    assert config.default_session_id == "agent-7"
    assert config.vector_metric == "cosine"


def test_overrides_win_over_environment():
    config = resolve_engine_config({"HYBRIDMEM_VECTOR_DIMENSION": "768"}, vector_dimension=16)
    assert config.vector_dimension == 16


def test_reads_process_environment(monkeypatch):
    monkeypatch.setenv("HYBRIDMEM_WORKING_MEMORY_MAX_ITEMS", "5")
    assert resolve_engine_config().working_memory_max_items == 5


def test_invalid_configuration_is_rejected():
    with pytest.raises(ValidationError, match="HYBRIDMEM_VECTOR_DIMENSION"):
        resolve_engine_config({"HYBRIDMEM_VECTOR_DIMENSION": "large"})
    with pytest.raises(ValidationError, match="Unknown config option"):
        resolve_engine_config({}, vector_size=8)
    with pytest.raises(ValidationError):
        resolve_engine_config({"HYBRIDMEM_VECTOR_BACKEND": "annoy"})
    with pytest.raises(ValidationError):
        MemoryEngineConfig(working_memory_eviction_ratio=0.0)
    with pytest.raises(ValidationError):
        MemoryEngineConfig(vector_dimension=0)


def test_get_logger_applies_level_names():
    from hybridmem.log_config import get_logger

    log = get_logger("hybridmem.tests.config", "warning")
    assert log.name == "hybridmem.tests.config"
    assert log.level == logging.WARNING


def test_configure_logging_reads_level_from_environment(monkeypatch):
    from hybridmem import log_config

    calls = []
    monkeypatch.setenv("HYBRIDMEM_LOG_LEVEL", "debug")
    monkeypatch.setattr(log_config.logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
    log_config.configure_logging()
    log_config.configure_logging("nonsense")
    assert calls[0]["level"] == logging.DEBUG
    assert calls[1]["level"] == logging.INFO
    assert calls[0]["format"] == log_config.DEFAULT_FORMAT
