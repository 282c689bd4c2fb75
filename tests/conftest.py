"""Shared fixtures for the observatory monitor tests."""
from __future__ import annotations

import pytest

from observatory.app.config import (
    BroadcastSettings,
    HttpSettings,
    IngressSettings,
    PollingSettings,
    SessionSettings,
    Settings,
)
from observatory.app.normalizer import EventNormalizer
from observatory.app.session_machine import SessionStateMachine

from factories import BASE_MS


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings tuned for fast, network-free tests."""
    return Settings(
        _env_file=None,
        nina_base_url="http://nina.local",
        log_directory=tmp_path / "logs",
        ingress=IngressSettings(
            idle_timeout_s=0.5,
            connect_timeout_s=0.5,
            backoff_base_s=0.01,
            backoff_max_s=0.05,
            backoff_jitter_s=0.0,
        ),
        http=HttpSettings(timeout_s=1.0, retry_attempts=1, retry_delay_s=0.0),
        polling=PollingSettings(interval_s=0.01, activation_delay_s=0.0, devices=["camera", "guider"]),
        session=SessionSettings(grace_period_s=0.05, seed_from_history=False),
        broadcast=BroadcastSettings(coalesce_window_s=0.0, heartbeat_interval_s=60.0),
    )


@pytest.fixture
def normalizer() -> EventNormalizer:
    return EventNormalizer("UTC", clock=lambda: BASE_MS / 1000)


@pytest.fixture
def machine() -> SessionStateMachine:
    return SessionStateMachine(guide_history_cap=5, image_history_cap=3)
