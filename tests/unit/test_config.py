"""Tests for runtime settings: defaults and environment overrides."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from deployline.config import Settings, configure_logging


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.environment == "development"
        assert settings.log_level == "INFO"
        assert settings.max_parallel_actions == 8
        assert settings.retain_artifacts is False
        assert settings.max_failed_launches is None

    def test_default_paths(self):
        settings = Settings(_env_file=None)
        assert settings.execution_log_path == Path(".deployline/executions.db")
        assert settings.artifact_store_path == Path(".deployline/artifacts")

    def test_is_production(self):
        assert Settings(_env_file=None).is_production is False
        assert Settings(_env_file=None, environment="production").is_production is True

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DEPLOYLINE_RETAIN_ARTIFACTS", "true")
        monkeypatch.setenv("DEPLOYLINE_DEPLOYMENT_TIMEOUT_SECONDS", "120")
        monkeypatch.setenv("DEPLOYLINE_EXECUTION_LOG_PATH", "/data/executions.db")
        settings = Settings(_env_file=None)
        assert settings.retain_artifacts is True
        assert settings.deployment_timeout_seconds == 120.0
        assert settings.execution_log_path == Path("/data/executions.db")

    def test_configure_logging(self, monkeypatch: pytest.MonkeyPatch):
        calls: list[dict] = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kw: calls.append(kw))
        configure_logging(Settings(_env_file=None, log_level="debug"))
        assert calls[0]["level"] == logging.DEBUG
