"""Error taxonomy for the monitor pipeline. None of these end the process."""
from __future__ import annotations

from typing import Any, Optional


class MonitorError(RuntimeError):
    """Base class for recoverable pipeline errors."""


class TransportError(MonitorError):
    """Connection drop, timeout or failed request against the automation tool."""

    def __init__(self, message: str, *, endpoint: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


class NormalizationError(MonitorError):
    """Raw payload that cannot be mapped onto a normalized event."""

    def __init__(self, message: str, *, kind: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind


class StateInvariantViolation(MonitorError):
    """Event that would break a snapshot invariant; carries the corrected value."""

    def __init__(self, message: str, *, corrected: Any = None) -> None:
        super().__init__(message)
        self.corrected = corrected


class SubscriberBackpressure(MonitorError):
    """Subscriber queue is full; the subscriber gets a full resync instead of a backlog."""

    def __init__(self, subscriber_id: int, pending: int) -> None:
        super().__init__(f"subscriber {subscriber_id} fell behind with {pending} pending messages")
        self.subscriber_id = subscriber_id
        self.pending = pending


__all__ = [
    "MonitorError",
    "TransportError",
    "NormalizationError",
    "StateInvariantViolation",
    "SubscriberBackpressure",
]
