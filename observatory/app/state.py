"""Shared session state definitions for the observatory monitor."""
from __future__ import annotations

import copy
import enum
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

import numpy as np


class ConnectionStatus(str, enum.Enum):
    """State of our own feed from the automation tool (not of any device)."""
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    RECONNECTING = "Reconnecting"
    ERROR = "Error"


class DeviceKind(str, enum.Enum):
    CAMERA = "camera"
    MOUNT = "mount"
    FILTER_WHEEL = "filterWheel"
    FOCUSER = "focuser"
    ROTATOR = "rotator"
    GUIDER = "guider"
    SAFETY_MONITOR = "safetyMonitor"
    FLAT_PANEL = "flatPanel"
    DOME = "dome"
    WEATHER = "weather"
    SWITCH = "switch"


@dataclass(frozen=True)
class Coordinates:
    ra: Optional[float] = None
    dec: Optional[float] = None
    ra_text: Optional[str] = None
    dec_text: Optional[str] = None
    epoch: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ra": self.ra,
            "dec": self.dec,
            "raText": self.ra_text,
            "decText": self.dec_text,
            "epoch": self.epoch,
        }


@dataclass(frozen=True)
class ActiveTarget:
    name: str
    project_name: Optional[str] = None
    end_time: Optional[int] = None
    coordinates: Optional[Coordinates] = None
    rotation: Optional[float] = None
    started_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "projectName": self.project_name,
            "endTime": self.end_time,
            "coordinates": self.coordinates.to_dict() if self.coordinates else None,
            "rotation": self.rotation,
            "startedAt": self.started_at,
        }


@dataclass(frozen=True)
class SequenceProgress:
    current: int
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {"current": self.current, "total": self.total}


@dataclass(frozen=True)
class ImageRecord:
    """One saved frame. Optional fields stay ``None`` when the source omits them."""

    timestamp: int
    filter: Optional[str] = None
    exposure_seconds: Optional[float] = None
    temperature: Optional[float] = None
    hfr: Optional[float] = None
    stars: Optional[int] = None
    index: Optional[int] = None
    image_type: Optional[str] = None
    camera: Optional[str] = None
    gain: Optional[int] = None
    offset: Optional[int] = None
    file_path: Optional[str] = None

    @property
    def key(self) -> Tuple[int, Optional[str], Optional[float]]:
        return (self.timestamp, self.filter, self.exposure_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "filter": self.filter,
            "exposureSeconds": self.exposure_seconds,
            "temperature": self.temperature,
            "hfr": self.hfr,
            "stars": self.stars,
            "index": self.index,
            "imageType": self.image_type,
            "camera": self.camera,
            "gain": self.gain,
            "offset": self.offset,
            "filePath": self.file_path,
        }


@dataclass(frozen=True)
class GuideStepRecord:
    timestamp: int
    step_id: Optional[int] = None
    ra_distance: Optional[float] = None
    dec_distance: Optional[float] = None
    ra_duration: Optional[float] = None
    dec_duration: Optional[float] = None
    dither: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "id": self.step_id,
            "raDistance": self.ra_distance,
            "decDistance": self.dec_distance,
            "raDuration": self.ra_duration,
            "decDuration": self.dec_duration,
            "dither": self.dither,
        }


@dataclass(frozen=True)
class RecentEvent:
    """One line of the activity feed shown next to the live state."""

    timestamp: int
    type: str
    summary: str
    meta: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> Tuple[int, str, str]:
        return (self.timestamp, self.type, self.summary)

    def to_dict(self) -> Dict[str, Any]:
        return {"time": self.timestamp, "type": self.type, "summary": self.summary, "meta": dict(self.meta)}


def default_equipment() -> Dict[str, Dict[str, Any]]:
    return {kind.value: {"connected": False} for kind in DeviceKind}


@dataclass
class SessionSnapshot:
    """
    Current aggregated view of session and equipment state.

    Instances handed to readers are never mutated again: the fold copies
    the snapshot and mutates the copy. ``stamps`` holds the last-applied
    event timestamp per field path (``"equipment.camera.temperature"``,
    ``"activeTarget"``...) and drives out-of-order rejection.
    ``recent_events`` is ordered newest first.
    """

    equipment: Dict[str, Dict[str, Any]] = field(default_factory=default_equipment)
    active_target: Optional[ActiveTarget] = None
    sequence_progress: Optional[SequenceProgress] = None
    last_image: Optional[ImageRecord] = None
    recent_images: List[ImageRecord] = field(default_factory=list)
    guide_stats: Deque[GuideStepRecord] = field(default_factory=lambda: deque(maxlen=300))
    recent_events: List[RecentEvent] = field(default_factory=list)
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_update: Optional[int] = None
    disconnected_since: Optional[int] = None
    stale_since: Optional[int] = None
    stamps: Dict[str, int] = field(default_factory=dict)
    revision: int = 0

    @classmethod
    def initial(cls, *, guide_history_cap: int = 300) -> "SessionSnapshot":
        return cls(guide_stats=deque(maxlen=guide_history_cap))

    @property
    def stale(self) -> bool:
        return self.stale_since is not None

    def copy(self) -> "SessionSnapshot":
        """Copy deep enough that mutating the result never touches ``self``."""
        return SessionSnapshot(
            equipment={kind: dict(fields) for kind, fields in self.equipment.items()},
            active_target=self.active_target,
            sequence_progress=self.sequence_progress,
            last_image=self.last_image,
            recent_images=list(self.recent_images),
            guide_stats=deque(self.guide_stats, maxlen=self.guide_stats.maxlen),
            recent_events=list(self.recent_events),
            connection_status=self.connection_status,
            last_update=self.last_update,
            disconnected_since=self.disconnected_since,
            stale_since=self.stale_since,
            stamps=dict(self.stamps),
            revision=self.revision,
        )

    def device_is_stale(self, kind: str) -> bool:
        if self.stale_since is None:
            return False
        prefix = f"equipment.{kind}."
        confirmed = [ts for path, ts in self.stamps.items() if path.startswith(prefix)]
        return not confirmed or max(confirmed) < self.stale_since

    def guide_rms(self) -> Optional[Dict[str, float]]:
        ra = np.array([s.ra_distance for s in self.guide_stats if s.ra_distance is not None], dtype=float)
        dec = np.array([s.dec_distance for s in self.guide_stats if s.dec_distance is not None], dtype=float)
        if ra.size == 0 and dec.size == 0:
            return None
        rms_ra = float(np.sqrt(np.mean(np.square(ra)))) if ra.size else 0.0
        rms_dec = float(np.sqrt(np.mean(np.square(dec)))) if dec.size else 0.0
        return {
            "ra": round(rms_ra, 3),
            "dec": round(rms_dec, 3),
            "total": round(float(np.hypot(rms_ra, rms_dec)), 3),
            "samples": int(max(ra.size, dec.size)),
        }

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready read-only view handed to UI consumers."""
        equipment = {}
        for kind, fields in self.equipment.items():
            entry = copy.deepcopy(fields)
            entry["stale"] = self.device_is_stale(kind)
            equipment[kind] = entry
        return {
            "equipment": equipment,
            "activeTarget": self.active_target.to_dict() if self.active_target else None,
            "sequenceProgress": self.sequence_progress.to_dict() if self.sequence_progress else None,
            "lastImage": self.last_image.to_dict() if self.last_image else None,
            "recentImages": [image.to_dict() for image in self.recent_images],
            "guideStats": [step.to_dict() for step in self.guide_stats],
            "guideRms": self.guide_rms(),
            "recentEvents": [entry.to_dict() for entry in self.recent_events],
            "connectionStatus": self.connection_status.value,
            "lastUpdate": self.last_update,
            "stale": self.stale,
            "staleSince": self.stale_since,
            "revision": self.revision,
        }


@dataclass
class StateUpdate:
    """Message distributed to UI subscribers over the local WebSocket."""

    type: str
    revision: int
    data: Dict[str, Any]
    reasons: List[str] = field(default_factory=list)
    resync: bool = False

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "revision": self.revision}
        if self.type == "snapshot":
            payload["state"] = self.data
        elif self.type == "diff":
            payload["changes"] = self.data
        else:
            payload["data"] = self.data
        if self.reasons:
            payload["reasons"] = list(self.reasons)
        if self.resync:
            payload["resync"] = True
        return payload


__all__ = [
    "ConnectionStatus",
    "DeviceKind",
    "Coordinates",
    "ActiveTarget",
    "SequenceProgress",
    "ImageRecord",
    "GuideStepRecord",
    "RecentEvent",
    "SessionSnapshot",
    "StateUpdate",
    "default_equipment",
]
