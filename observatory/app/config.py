"""Central configuration for the observatory monitor service."""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Optional

import httpx
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"

logger = logging.getLogger(__name__)


# ============================================================
# Nested Configuration Classes
# ============================================================

class IngressSettings(BaseModel):
    """Event socket supervision."""
    idle_timeout_s: float = Field(60.0, description="Ping the socket after this much silence; reconnect if no pong")
    connect_timeout_s: float = Field(10.0, description="Websocket handshake timeout")
    backoff_base_s: float = Field(1.0, description="First reconnect delay, doubled per failed attempt")
    backoff_max_s: float = Field(30.0, description="Upper bound for the reconnect delay")
    backoff_jitter_s: float = Field(1.0, description="Random delay added on top of the backoff")
    ping_interval_s: Optional[float] = Field(None, description="Websocket keepalive ping interval (None disables)")


class HttpSettings(BaseModel):
    """REST client tuning."""
    timeout_s: float = Field(5.0, description="Per-request timeout")
    retry_attempts: int = Field(3, description="Retries on timeout or connection reset")
    retry_delay_s: float = Field(1.0, description="Delay between retries")


class PollingSettings(BaseModel):
    """REST polling used while the event socket is down."""
    enabled: bool = Field(True, description="Enable the polling fallback")
    interval_s: float = Field(10.0, description="Time between polls")
    activation_delay_s: float = Field(15.0, description="Socket downtime before polling starts")
    poll_guider: bool = Field(True, description="Also poll the guider graph for guide steps")
    devices: List[str] = Field(
        default_factory=lambda: [
            "camera",
            "mount",
            "filterWheel",
            "focuser",
            "rotator",
            "guider",
            "safetyMonitor",
            "flatPanel",
            "dome",
            "weather",
        ],
        description="Device kinds polled for equipment info",
    )


class SessionSettings(BaseModel):
    """Session state tracking."""
    grace_period_s: float = Field(300.0, description="Connection loss tolerated before transient fields reset")
    guide_history_cap: int = Field(300, description="Max guide steps retained")
    image_history_cap: int = Field(20, description="Max saved images retained")
    seed_from_history: bool = Field(True, description="Replay the tool's event history on startup")
    seed_event_limit: int = Field(100, description="Most recent history events replayed")
    recent_events_cap: int = Field(5, description="Entries kept in the recent activity feed")

    @field_validator("guide_history_cap", "image_history_cap", "recent_events_cap")
    @classmethod
    def _positive_cap(cls, value: int) -> int:
        if value < 1:
            raise ValueError("history caps must be at least 1")
        return value


class BroadcastSettings(BaseModel):
    """UI fan-out tuning."""
    coalesce_window_s: float = Field(0.1, description="Updates landing within this window are pushed once")
    subscriber_queue_size: int = Field(16, description="Max buffered messages per UI subscriber")
    heartbeat_interval_s: float = Field(30.0, description="Heartbeat period on UI sockets")


class Settings(BaseSettings):
    """Environment-driven settings for monitor subsystems."""

    # Automation tool (N.I.N.A. Advanced API)
    nina_base_url: str = Field("http://localhost", description="Base URL of the N.I.N.A. host")
    nina_api_port: int = Field(1888, description="Advanced API port")
    nina_socket_path: str = Field("/v2/socket", description="Event socket path")
    nina_timezone: str = Field("UTC", description="Zone for event timestamps that carry no offset")

    # Configuration database (read-only)
    config_api_url: Optional[str] = Field(None, description="Config server base URL (e.g. http://localhost:3001)")

    # Monitor HTTP Server
    server_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    server_port: int = Field(5000, description="Port for FastAPI server")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    ingress: IngressSettings = Field(default_factory=IngressSettings, description="Event socket settings")
    http: HttpSettings = Field(default_factory=HttpSettings, description="REST client settings")
    polling: PollingSettings = Field(default_factory=PollingSettings, description="Polling fallback settings")
    session: SessionSettings = Field(default_factory=SessionSettings, description="Session tracking settings")
    broadcast: BroadcastSettings = Field(default_factory=BroadcastSettings, description="UI broadcast settings")

    @field_validator("nina_base_url", mode="before")
    @classmethod
    def _strip_base_url(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def api_base_url(self) -> str:
        return f"{self._host_root()}:{self.nina_api_port}/v2/api"

    @property
    def socket_url(self) -> str:
        host = self._host_root().split("://", 1)[-1]
        scheme = "wss" if self.nina_base_url.startswith("https://") else "ws"
        return f"{scheme}://{host}:{self.nina_api_port}{self.nina_socket_path}"

    def _host_root(self) -> str:
        # drop any port already present in the base URL
        scheme, sep, rest = self.nina_base_url.partition("://")
        if not sep:
            scheme, rest = "http", self.nina_base_url
        host = rest.split("/", 1)[0].split(":", 1)[0]
        return f"{scheme}://{host}"


def _override_value(nina: Mapping[str, Any], key: str, cast: Callable[[Any], Any]) -> Any:
    raw = nina.get(key)
    if raw is None or raw == "":
        return None
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        logger.warning("config.overrides: ignoring unusable nina.%s=%r", key, raw)
        return None
    if isinstance(value, (int, float)) and not value >= 0:
        logger.warning("config.overrides: ignoring out-of-range nina.%s=%r", key, raw)
        return None
    return value


def _as_base_url(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("base URL must be a non-empty string")
    return raw.strip().rstrip("/")


def apply_config_overrides(settings: Settings, config: Mapping[str, Any]) -> Settings:
    """Overlay the config database's ``nina`` section onto ``settings``.

    Values that cannot be coerced are skipped with a warning and the env
    value is kept.
    """

    nina = config.get("nina") or {}
    if not isinstance(nina, Mapping):
        logger.warning("config.overrides: ignoring non-object nina section (%s)", type(nina).__name__)
        return settings

    update: dict[str, Any] = {}
    base_url = _override_value(nina, "baseUrl", _as_base_url)
    if base_url:
        update["nina_base_url"] = base_url
    api_port = _override_value(nina, "apiPort", int)
    if api_port:
        update["nina_api_port"] = api_port

    http_update: dict[str, Any] = {}
    timeout_ms = _override_value(nina, "timeout", float)
    if timeout_ms:
        http_update["timeout_s"] = timeout_ms / 1000.0
    retry_attempts = _override_value(nina, "retryAttempts", int)
    if retry_attempts is not None:
        http_update["retry_attempts"] = retry_attempts
    if http_update:
        update["http"] = settings.http.model_copy(update=http_update)

    if not update:
        return settings
    return settings.model_copy(update=update)


def load_remote_config(settings: Settings) -> Settings:
    """Fetch overrides from the config database; keep env values on failure."""

    if not settings.config_api_url:
        return settings
    url = f"{settings.config_api_url.rstrip('/')}/api/config"
    try:
        response = httpx.get(url, timeout=settings.http.timeout_s)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPError as e:
        logger.warning("config.load_remote: %s unavailable - %s", url, e)
        return settings
    except ValueError as e:
        logger.warning("config.load_remote: invalid JSON from %s - %s", url, e)
        return settings
    if not isinstance(data, dict):
        logger.warning("config.load_remote: unexpected payload from %s", url)
        return settings
    merged = apply_config_overrides(settings, data)
    logger.info("config.load_remote: N.I.N.A. endpoint %s", merged.api_base_url)
    return merged


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
