"""Tests for settings and config database overrides."""
from __future__ import annotations

import logging

import httpx
import pytest

from observatory.app import config
from observatory.app.config import SessionSettings, Settings, apply_config_overrides, load_remote_config
from observatory.app.logging_config import EVENTS_LOG, RUNTIME_LOG, configure_logging


class TestSettings:
    """Derived endpoints and validation."""

    def test_urls_from_base_url(self):
        settings = Settings(_env_file=None, nina_base_url="http://192.168.1.50:1888/", nina_api_port=1888)
        assert settings.api_base_url == "http://192.168.1.50:1888/v2/api"
        assert settings.socket_url == "ws://192.168.1.50:1888/v2/socket"

    def test_https_uses_wss(self):
        settings = Settings(_env_file=None, nina_base_url="https://rig.example.org", nina_api_port=443)
        assert settings.socket_url == "wss://rig.example.org:443/v2/socket"

    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("SESSION__GRACE_PERIOD_S", "42")
        assert Settings(_env_file=None).session.grace_period_s == 42.0

    def test_history_caps_must_be_positive(self):
        with pytest.raises(ValueError):
            SessionSettings(guide_history_cap=0)


class TestRemoteConfig:
    """Read-only overrides from the config database."""

    def test_apply_overrides(self, settings):
        merged = apply_config_overrides(
            settings,
            {"nina": {"baseUrl": "http://10.0.0.5/", "apiPort": 1999, "timeout": 2500, "retryAttempts": 0}},
        )
        assert merged.api_base_url == "http://10.0.0.5:1999/v2/api"
        assert merged.http.timeout_s == 2.5
        assert merged.http.retry_attempts == 0
        assert settings.nina_api_port == 1888

    def test_empty_section_keeps_settings(self, settings):
        assert apply_config_overrides(settings, {}) is settings

    def test_load_remote_config(self, settings, monkeypatch):
        settings = settings.model_copy(update={"config_api_url": "http://localhost:3001"})
        calls = []

        def fake_get(url, timeout):
            calls.append(url)
            return httpx.Response(200, json={"nina": {"apiPort": 2000}}, request=httpx.Request("GET", url))

        monkeypatch.setattr(config.httpx, "get", fake_get)
        merged = load_remote_config(settings)
        assert calls == ["http://localhost:3001/api/config"]
        assert merged.nina_api_port == 2000

    def test_unreachable_config_server_keeps_env(self, settings, monkeypatch):
        settings = settings.model_copy(update={"config_api_url": "http://localhost:3001"})

        def fake_get(url, timeout):
            raise httpx.ConnectError("refused")

        monkeypatch.setattr(config.httpx, "get", fake_get)
        assert load_remote_config(settings) is settings

    def test_unusable_values_are_skipped(self, settings):
        merged = apply_config_overrides(
            settings,
            {"nina": {"baseUrl": 42, "apiPort": "abc", "timeout": "fast", "retryAttempts": -1}},
        )
        assert merged is settings

    def test_usable_values_survive_bad_neighbours(self, settings):
        merged = apply_config_overrides(settings, {"nina": {"apiPort": "abc", "timeout": "2500"}})
        assert merged.nina_api_port == 1888
        assert merged.http.timeout_s == 2.5

    def test_non_object_section_is_ignored(self, settings):
        assert apply_config_overrides(settings, {"nina": "oops"}) is settings

    def test_malformed_remote_payload_keeps_env(self, settings, monkeypatch):
        settings = settings.model_copy(update={"config_api_url": "http://localhost:3001"})

        def fake_get(url, timeout):
            return httpx.Response(200, json={"nina": "oops"}, request=httpx.Request("GET", url))

        monkeypatch.setattr(config.httpx, "get", fake_get)
        assert load_remote_config(settings) is settings

    def test_no_config_server(self, settings):
        assert load_remote_config(settings) is settings


class TestLogging:
    """Runtime and event-pipeline log files."""

    def test_runtime_log_is_written(self, tmp_path):
        log_dir = configure_logging("INFO", tmp_path / "logs", retention_days=0)
        logging.getLogger("observatory.test").info("first light")
        logging.getLogger("observatory.app.session_machine").debug("stale field ignored")
        for handler in logging.getLogger().handlers + logging.getLogger("observatory.app.session_machine").handlers:
            handler.flush()

        runtime = (log_dir / RUNTIME_LOG).read_text(encoding="utf-8")
        events = (log_dir / EVENTS_LOG).read_text(encoding="utf-8")
        assert "first light" in runtime
        assert "stale field ignored" not in runtime
        assert "stale field ignored" in events
        assert logging.getLogger("httpx").level == logging.WARNING
