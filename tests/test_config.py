"""Tests for runtime configuration loading."""

import json

import pytest

from auditpipe.config_runtime import DEFAULTS, get_config_value, load_runtime_config
from auditpipe.errors import ConfigError
from auditpipe.orchestrator import PipelineConfig
from auditpipe.scheduler import SchedulerConfig


@pytest.fixture
def project(tmp_path):
    (tmp_path / ".pf").mkdir()
    return tmp_path


def _write_config(root, data):
    (root / ".pf" / "config.json").write_text(json.dumps(data), encoding="utf-8")


def test_defaults_without_config_file(tmp_path):
    cfg = load_runtime_config(str(tmp_path))
    assert cfg == DEFAULTS
    assert cfg is not DEFAULTS


def test_file_values_override_defaults(project):
    _write_config(project, {"scheduler": {"max_concurrency": 8}, "pipeline": {"ai_enabled": True}})
    cfg = load_runtime_config(str(project))
    assert cfg["scheduler"]["max_concurrency"] == 8
    assert cfg["pipeline"]["ai_enabled"] is True
    assert cfg["scheduler"]["max_retries"] == 3


def test_mistyped_and_unknown_values_ignored(project):
    _write_config(project, {
        "scheduler": {"max_concurrency": "lots", "max_retries": True, "unknown": 1},
        "ai": {"timeout_seconds": 10},
        "nonsense": {"x": 1},
    })
    cfg = load_runtime_config(str(project))
    assert cfg["scheduler"]["max_concurrency"] == 4
    assert cfg["scheduler"]["max_retries"] == 3
    assert "unknown" not in cfg["scheduler"]
    # ints are accepted where floats are expected
    assert cfg["ai"]["timeout_seconds"] == 10


def test_broken_config_file_falls_back_to_defaults(project):
    (project / ".pf" / "config.json").write_text("{not json", encoding="utf-8")
    assert load_runtime_config(str(project)) == DEFAULTS


def test_environment_overrides_file(project, monkeypatch):
    _write_config(project, {"scheduler": {"max_concurrency": 8}})
    monkeypatch.setenv("AUDITPIPE_SCHEDULER_MAX_CONCURRENCY", "2")
    monkeypatch.setenv("AUDITPIPE_SCHEDULER_JITTER_RATIO", "0.5")
    monkeypatch.setenv("AUDITPIPE_PIPELINE_AI_ENABLED", "yes")
    monkeypatch.setenv("AUDITPIPE_PIPELINE_EXCLUDE_PATTERNS", "vendor/*, *.gen.py")
    monkeypatch.setenv("AUDITPIPE_AI_BASE_URL", "http://localhost:8080/v1")
    cfg = load_runtime_config(str(project))
    assert cfg["scheduler"]["max_concurrency"] == 2
    assert cfg["scheduler"]["jitter_ratio"] == 0.5
    assert cfg["pipeline"]["ai_enabled"] is True
    assert cfg["pipeline"]["exclude_patterns"] == ["vendor/*", "*.gen.py"]
    assert get_config_value(cfg, "ai.base_url") == "http://localhost:8080/v1"


def test_invalid_environment_value_kept_default(tmp_path, monkeypatch):
    monkeypatch.setenv("AUDITPIPE_SCHEDULER_MAX_RETRIES", "many")
    monkeypatch.setenv("AUDITPIPE_SCHEDULER_PRIORITY_BOOST_ON_RETRY", "maybe")
    cfg = load_runtime_config(str(tmp_path))
    assert cfg["scheduler"]["max_retries"] == 3
    assert cfg["scheduler"]["priority_boost_on_retry"] is True


def test_get_config_value_default():
    assert get_config_value(DEFAULTS, "paths.nothing", "fallback") == "fallback"
    assert get_config_value(DEFAULTS, "paths.db") == "./.pf/results.db"


class TestTypedConfigs:
    def test_scheduler_config_from_runtime(self):
        cfg = load_runtime_config("/nonexistent")
        config = SchedulerConfig.from_runtime(cfg, max_concurrency=9, max_retries=None)
        assert config.max_concurrency == 9
        assert config.max_retries == 3

    def test_pipeline_config_from_runtime(self):
        cfg = load_runtime_config("/nonexistent")
        config = PipelineConfig.from_runtime(cfg, ai_enabled=True)
        assert config.ai_enabled is True
        assert config.exclude_patterns == tuple(DEFAULTS["pipeline"]["exclude_patterns"])
        assert config.max_params == 5

    @pytest.mark.parametrize(
        "overrides",
        [{"batch_size": 0}, {"max_file_size": 0}, {"max_params": -1}, {"ai_batch_size": 0}],
    )
    def test_pipeline_config_validation(self, overrides):
        with pytest.raises(ConfigError):
            PipelineConfig(**overrides)
