"""Raw payload builders shared by the test modules."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

# 2024-01-01T22:00:00Z
BASE_MS = 1_704_146_400_000


def iso(offset_s: float = 0.0) -> str:
    """ISO-8601 UTC timestamp ``offset_s`` seconds after ``BASE_MS``."""
    moment = datetime.fromtimestamp((BASE_MS / 1000) + offset_s, tz=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


def ms(offset_s: float = 0.0) -> int:
    return BASE_MS + int(round(offset_s * 1000))


def raw_event(kind: str, offset_s: float = 0.0, **fields: Any) -> Dict[str, Any]:
    """Raw socket event as N.I.N.A. puts it inside the Response envelope."""
    event: Dict[str, Any] = {"Event": kind, "Time": iso(offset_s)}
    event.update(fields)
    return event


def envelope(response: Any, *, success: bool = True, error: str = "") -> Dict[str, Any]:
    return {"Response": response, "Success": success, "Error": error, "StatusCode": 200, "Type": "API"}
