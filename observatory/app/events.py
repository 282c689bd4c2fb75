"""Normalized event variants consumed by the session state machine."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Union

from .state import ActiveTarget, ConnectionStatus, Coordinates, DeviceKind, GuideStepRecord, ImageRecord


class EventKind(str, enum.Enum):
    EQUIPMENT_CONNECTION = "EquipmentConnection"
    EQUIPMENT_STATUS = "EquipmentStatus"
    FILTER_CHANGE = "FilterChange"
    TARGET_START = "TargetStart"
    TARGET_END = "TargetEnd"
    SAFETY_CHANGE = "SafetyChange"
    IMAGE_SAVED = "ImageSaved"
    GUIDE_STEP = "GuideStep"
    SEQUENCE_PROGRESS = "SequenceProgress"
    CONNECTION_LOST = "ConnectionLost"
    CONNECTION_STATUS = "ConnectionStatus"
    SESSION_RESET = "SessionReset"
    GRACE_EXPIRED = "GraceExpired"
    TARGET_EXPIRED = "TargetExpired"


class EventSource(str, enum.Enum):
    STREAM = "stream"
    POLL = "poll"
    HISTORY = "history"
    CONTROL = "control"


@dataclass(frozen=True, kw_only=True)
class NormalizedEvent:
    """Common envelope: ``timestamp`` is epoch millis, stamped at ingestion when the source has none."""

    kind: ClassVar[EventKind]

    timestamp: int
    source: EventSource = EventSource.STREAM


@dataclass(frozen=True, kw_only=True)
class EquipmentConnection(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.EQUIPMENT_CONNECTION

    device: DeviceKind
    connected: bool
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class EquipmentStatus(NormalizedEvent):
    """Device activity that leaves the connection flag alone (parked, guiding, shutter open...)."""

    kind: ClassVar[EventKind] = EventKind.EQUIPMENT_STATUS

    device: DeviceKind
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class FilterChange(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.FILTER_CHANGE

    filter: Optional[str] = None
    position: Optional[int] = None
    previous: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class TargetStart(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.TARGET_START

    name: str
    project_name: Optional[str] = None
    end_time: Optional[int] = None
    coordinates: Optional[Coordinates] = None
    rotation: Optional[float] = None

    def to_target(self) -> ActiveTarget:
        return ActiveTarget(
            name=self.name,
            project_name=self.project_name,
            end_time=self.end_time,
            coordinates=self.coordinates,
            rotation=self.rotation,
            started_at=self.timestamp,
        )


@dataclass(frozen=True, kw_only=True)
class TargetEnd(NormalizedEvent):
    """``name`` is ``None`` when the source ended the whole sequence rather than one target."""

    kind: ClassVar[EventKind] = EventKind.TARGET_END

    name: Optional[str] = None
    reason: str = "target-end"


@dataclass(frozen=True, kw_only=True)
class SafetyChange(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.SAFETY_CHANGE

    is_safe: bool


@dataclass(frozen=True, kw_only=True)
class ImageSaved(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.IMAGE_SAVED

    image: ImageRecord


@dataclass(frozen=True, kw_only=True)
class GuideStep(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.GUIDE_STEP

    step: GuideStepRecord


@dataclass(frozen=True, kw_only=True)
class SequenceProgressUpdate(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.SEQUENCE_PROGRESS

    current: Optional[int] = None
    total: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class ConnectionLost(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.CONNECTION_LOST

    reason: str = ""


@dataclass(frozen=True, kw_only=True)
class ConnectionStatusChange(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.CONNECTION_STATUS

    status: ConnectionStatus


@dataclass(frozen=True, kw_only=True)
class SessionReset(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.SESSION_RESET

    reason: str = "manual"


@dataclass(frozen=True, kw_only=True)
class GraceExpired(NormalizedEvent):
    """Fired by the manager's grace timer for the loss that started at ``lost_at``."""

    kind: ClassVar[EventKind] = EventKind.GRACE_EXPIRED

    lost_at: int


@dataclass(frozen=True, kw_only=True)
class TargetExpired(NormalizedEvent):
    """Fired by the manager once the active target's scheduled end time passes."""

    kind: ClassVar[EventKind] = EventKind.TARGET_EXPIRED

    name: str
    end_time: int


@dataclass(frozen=True)
class Discard:
    """Normalizer verdict for payloads that must not reach the state machine."""

    reason: str
    raw_kind: Optional[str] = None
    expected: bool = False


AnyEvent = Union[
    EquipmentConnection,
    EquipmentStatus,
    FilterChange,
    TargetStart,
    TargetEnd,
    SafetyChange,
    ImageSaved,
    GuideStep,
    SequenceProgressUpdate,
    ConnectionLost,
    ConnectionStatusChange,
    SessionReset,
    GraceExpired,
    TargetExpired,
]


__all__ = [
    "EventKind",
    "EventSource",
    "NormalizedEvent",
    "EquipmentConnection",
    "EquipmentStatus",
    "FilterChange",
    "TargetStart",
    "TargetEnd",
    "SafetyChange",
    "ImageSaved",
    "GuideStep",
    "SequenceProgressUpdate",
    "ConnectionLost",
    "ConnectionStatusChange",
    "SessionReset",
    "GraceExpired",
    "TargetExpired",
    "Discard",
    "AnyEvent",
]
