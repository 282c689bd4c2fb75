"""Map raw N.I.N.A. payloads onto normalized event variants.

Every inbound shape goes through this module: socket events, REST device
info (polling fallback) and guider graph samples. Field names and types
are translated through the static tables below; unknown or malformed
payloads become a :class:`Discard` and never reach the state machine.

Optional numeric fields that are missing, ``"NaN"`` or otherwise unusable
are omitted rather than zero-filled.
"""
from __future__ import annotations

import logging
import math
import re
import time
from collections.abc import Mapping
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import NormalizationError
from .events import (
    AnyEvent,
    Discard,
    EquipmentConnection,
    EquipmentStatus,
    EventSource,
    FilterChange,
    GuideStep,
    ImageSaved,
    SafetyChange,
    SequenceProgressUpdate,
    TargetEnd,
    TargetStart,
)
from .state import Coordinates, DeviceKind, GuideStepRecord, ImageRecord

logger = logging.getLogger(__name__)

RawEvent = Mapping[str, Any]
NormalizeResult = Union[AnyEvent, Discard]


# ============================================================
# Coercion helpers
# ============================================================

def as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def as_int(value: Any) -> Optional[int]:
    result = as_float(value)
    if result is None:
        return None
    return int(round(result))


def as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1", "on"):
            return True
        if lowered in ("false", "no", "0", "off"):
            return False
    return None


def as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


Coercer = Callable[[Any], Any]

# canonical name -> (raw paths tried in order, coercer)
FieldSpec = Dict[str, Tuple[Tuple[str, ...], Coercer]]

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: Any, tz: tzinfo = timezone.utc) -> int:
    """Parse an event time into epoch millis; naive strings are read in ``tz``."""

    if isinstance(value, bool) or value is None:
        raise NormalizationError(f"unusable timestamp {value!r}")
    if isinstance(value, (int, float)):
        return _epoch_number_to_ms(float(value))
    if not isinstance(value, str):
        raise NormalizationError(f"unusable timestamp {value!r}")

    text = value.strip()
    numeric = as_float(text)
    if numeric is not None:
        return _epoch_number_to_ms(numeric)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # .NET emits 7 fractional digits
    text = _FRACTION_RE.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise NormalizationError(f"unparseable timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return int(round(parsed.timestamp() * 1000))


def _epoch_number_to_ms(value: float) -> int:
    if math.isnan(value) or math.isinf(value) or value < 0:
        raise NormalizationError(f"unusable timestamp {value!r}")
    # anything past year 5138 in seconds is already millis
    return int(round(value if value > 1e11 else value * 1000))


def resolve_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r for naive event times, using UTC", name)
        return timezone.utc


def lookup(raw: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path, trying the payload root first and then its ``Data`` block."""

    for container in (raw, raw.get("Data")):
        if not isinstance(container, Mapping):
            continue
        value: Any = container
        for part in path.split("."):
            if not isinstance(value, Mapping) or part not in value:
                value = None
                break
            value = value[part]
        if value is not None:
            return value
    return None


def extract_fields(raw: Mapping[str, Any], spec: FieldSpec) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for canonical, (paths, coerce) in spec.items():
        for path in paths:
            value = coerce(lookup(raw, path))
            if value is not None:
                fields[canonical] = value
                break
    return fields


# ============================================================
# Translation tables
# ============================================================

_NAME: FieldSpec = {"name": (("DisplayName", "Name"), as_text)}

DEVICE_INFO_FIELDS: Dict[DeviceKind, FieldSpec] = {
    DeviceKind.CAMERA: {
        **_NAME,
        "temperature": (("Temperature",), as_float),
        "targetTemperature": (("TargetTemp", "TemperatureSetPoint"), as_float),
        "coolerOn": (("CoolerOn",), as_bool),
        "coolerPower": (("CoolerPower",), as_float),
        "isExposing": (("IsExposing",), as_bool),
        "gain": (("Gain",), as_int),
        "offset": (("Offset",), as_int),
        "cameraState": (("CameraState",), as_text),
    },
    DeviceKind.FILTER_WHEEL: {
        **_NAME,
        "filter": (("SelectedFilter.Name",), as_text),
        "position": (("SelectedFilter.Id",), as_int),
        "isMoving": (("IsMoving",), as_bool),
    },
    DeviceKind.FOCUSER: {
        **_NAME,
        "position": (("Position",), as_int),
        "temperature": (("Temperature",), as_float),
        "isMoving": (("IsMoving",), as_bool),
    },
    DeviceKind.ROTATOR: {
        **_NAME,
        "position": (("Position",), as_float),
        "mechanicalPosition": (("MechanicalPosition",), as_float),
        "isMoving": (("IsMoving",), as_bool),
    },
    DeviceKind.MOUNT: {
        **_NAME,
        "tracking": (("TrackingEnabled",), as_bool),
        "atPark": (("AtPark",), as_bool),
        "atHome": (("AtHome",), as_bool),
        "slewing": (("Slewing",), as_bool),
        "raText": (("RightAscensionString",), as_text),
        "decText": (("DeclinationString",), as_text),
        "sideOfPier": (("SideOfPier",), as_text),
    },
    DeviceKind.GUIDER: {
        **_NAME,
        "state": (("State",), as_text),
        "rmsRa": (("RMSError.RA.Arcseconds",), as_float),
        "rmsDec": (("RMSError.Dec.Arcseconds",), as_float),
        "rmsTotal": (("RMSError.Total.Arcseconds",), as_float),
    },
    DeviceKind.SAFETY_MONITOR: {
        **_NAME,
        "isSafe": (("IsSafe",), as_bool),
    },
    DeviceKind.FLAT_PANEL: {
        **_NAME,
        "coverState": (("CoverState",), as_text),
        "lightOn": (("LightOn",), as_bool),
        "brightness": (("Brightness",), as_float),
    },
    DeviceKind.DOME: {
        **_NAME,
        "shutter": (("ShutterStatus",), as_text),
        "atPark": (("AtPark",), as_bool),
        "azimuth": (("Azimuth",), as_float),
        "slewing": (("Slewing",), as_bool),
    },
    DeviceKind.WEATHER: {
        **_NAME,
        "temperature": (("Temperature",), as_float),
        "humidity": (("Humidity",), as_float),
        "dewPoint": (("DewPoint",), as_float),
        "cloudCover": (("CloudCover",), as_float),
        "pressure": (("Pressure",), as_float),
        "windSpeed": (("WindSpeed",), as_float),
        "skyQuality": (("SkyQuality",), as_float),
    },
    DeviceKind.SWITCH: dict(_NAME),
}

# event discriminator prefix for <PREFIX>-CONNECTED / <PREFIX>-DISCONNECTED
CONNECTION_PREFIXES: Dict[str, DeviceKind] = {
    "CAMERA": DeviceKind.CAMERA,
    "MOUNT": DeviceKind.MOUNT,
    "TELESCOPE": DeviceKind.MOUNT,
    "FILTERWHEEL": DeviceKind.FILTER_WHEEL,
    "FOCUSER": DeviceKind.FOCUSER,
    "ROTATOR": DeviceKind.ROTATOR,
    "GUIDER": DeviceKind.GUIDER,
    "SAFETY": DeviceKind.SAFETY_MONITOR,
    "FLAT": DeviceKind.FLAT_PANEL,
    "DOME": DeviceKind.DOME,
    "WEATHER": DeviceKind.WEATHER,
    "SWITCH": DeviceKind.SWITCH,
}

# fields implied by a disconnect, beyond the connection flag itself
DISCONNECT_IMPLIED_FIELDS: Dict[DeviceKind, Dict[str, Any]] = {
    DeviceKind.GUIDER: {"isGuiding": False, "isDithering": False},
    DeviceKind.CAMERA: {"isExposing": False},
}

_GUIDER_RMS: FieldSpec = {
    "rmsTotal": (("RMSTotal",), as_float),
    "rmsRa": (("RMSRA",), as_float),
    "rmsDec": (("RMSDec",), as_float),
}

# discriminator -> (device, constant fields, extra fields read from the payload)
STATUS_EVENTS: Dict[str, Tuple[DeviceKind, Dict[str, Any], FieldSpec]] = {
    "MOUNT-PARKED": (DeviceKind.MOUNT, {"atPark": True, "tracking": False}, {}),
    "MOUNT-UNPARKED": (DeviceKind.MOUNT, {"atPark": False}, {}),
    "MOUNT-HOMED": (DeviceKind.MOUNT, {"atHome": True}, {}),
    "MOUNT-BEFORE-FLIP": (DeviceKind.MOUNT, {"flipping": True}, {}),
    "MOUNT-AFTER-FLIP": (DeviceKind.MOUNT, {"flipping": False}, {}),
    "GUIDER-START": (DeviceKind.GUIDER, {"isGuiding": True, "isDithering": False}, _GUIDER_RMS),
    "GUIDER-STOP": (DeviceKind.GUIDER, {"isGuiding": False, "isDithering": False}, _GUIDER_RMS),
    "GUIDER-DITHER": (DeviceKind.GUIDER, {"isDithering": True}, _GUIDER_RMS),
    "DOME-SHUTTER-OPENED": (DeviceKind.DOME, {"shutter": "Open"}, {}),
    "DOME-SHUTTER-CLOSED": (DeviceKind.DOME, {"shutter": "Closed"}, {}),
    "DOME-PARKED": (DeviceKind.DOME, {"atPark": True}, {}),
    "DOME-HOMED": (DeviceKind.DOME, {"atHome": True}, {}),
    "DOME-SLEWED": (DeviceKind.DOME, {}, {"azimuth": (("To",), as_float)}),
    "FLAT-COVER-OPENED": (DeviceKind.FLAT_PANEL, {"coverState": "Open"}, {}),
    "FLAT-COVER-CLOSED": (DeviceKind.FLAT_PANEL, {"coverState": "Closed"}, {}),
    "FLAT-LIGHT-TOGGLED": (DeviceKind.FLAT_PANEL, {}, {"lightOn": (("On", "LightOn"), as_bool)}),
    "ROTATOR-MOVED": (DeviceKind.ROTATOR, {}, {"position": (("To",), as_float)}),
    "ROTATOR-MOVED-MECHANICAL": (DeviceKind.ROTATOR, {}, {"mechanicalPosition": (("To",), as_float)}),
    "FOCUSER-USER-FOCUSED": (DeviceKind.FOCUSER, {"isMoving": False}, {}),
    "AUTOFOCUS-FINISHED": (DeviceKind.FOCUSER, {"isMoving": False}, {"position": (("Position",), as_int)}),
}

IMAGE_FIELDS: FieldSpec = {
    "filter": (("Filter",), as_text),
    "exposure_seconds": (("ExposureTime", "Exposure"), as_float),
    "temperature": (("Temperature",), as_float),
    "hfr": (("HFR",), as_float),
    "stars": (("Stars",), as_int),
    "index": (("Index",), as_int),
    "image_type": (("ImageType", "FrameType"), as_text),
    "camera": (("CameraName",), as_text),
    "gain": (("Gain",), as_int),
    "offset": (("Offset",), as_int),
    "file_path": (("FilePath", "Path"), as_text),
}

GUIDE_STEP_FIELDS: FieldSpec = {
    "step_id": (("Id",), as_int),
    "ra_distance": (("RADistanceRaw", "RADistanceRawDisplay"), as_float),
    "dec_distance": (("DECDistanceRaw", "DECDistanceRawDisplay"), as_float),
    "ra_duration": (("RADuration",), as_float),
    "dec_duration": (("DECDuration",), as_float),
}

TARGET_FIELDS: FieldSpec = {
    "project_name": (("ProjectName",), as_text),
    "rotation": (("Rotation",), as_float),
}

COORDINATE_FIELDS: FieldSpec = {
    "ra": (("RA", "RADegrees"), as_float),
    "dec": (("Dec",), as_float),
    "ra_text": (("RAString",), as_text),
    "dec_text": (("DecString",), as_text),
    "epoch": (("Epoch",), as_text),
}

SEQUENCE_END_EVENTS = frozenset({"SEQUENCE-FINISHED", "SEQUENCE-COMPLETED", "SEQUENCE-STOPPED"})

# known kinds that carry nothing the session snapshot tracks
IGNORED_EVENTS = frozenset(
    {
        "HEARTBEAT",
        "PING",
        "KEEPALIVE",
        "SEQUENCE-STARTING",
        "TS-WAITSTART",
        "STACK-UPDATED",
        "API-CAPTURE-FINISHED",
        "PROFILE-ADDED",
        "PROFILE-CHANGED",
        "PROFILE-REMOVED",
        "CAMERA-DOWNLOAD-TIMEOUT",
        "ERROR-AF",
        "ERROR-PLATESOLVE",
    }
)


# ============================================================
# Normalizer
# ============================================================

class EventNormalizer:
    """Turns raw payloads into normalized events; stateless apart from the clock and timezone."""

    def __init__(self, timezone_name: str = "UTC", *, clock: Optional[Callable[[], float]] = None) -> None:
        self._tz = resolve_timezone(timezone_name)
        self._clock = clock or time.time
        self._builders: Dict[str, Callable[[str, RawEvent, int, EventSource], NormalizeResult]] = {
            "TS-TARGETSTART": self._target_start,
            "TS-NEWTARGETSTART": self._target_start,
            "TS-TARGETEND": self._target_end,
            "TS-TARGETFINISHED": self._target_end,
            "FILTERWHEEL-CHANGED": self._filter_change,
            "SAFETY-CHANGED": self._safety_change,
            "IMAGE-SAVE": self._image_saved,
            "GUIDER-STEP": self._guide_step,
            "GUIDE-STEP": self._guide_step,
            "SEQUENCE-PROGRESS": self._sequence_progress,
        }
        for kind in SEQUENCE_END_EVENTS:
            self._builders[kind] = self._sequence_end

    def now_ms(self) -> int:
        return int(round(self._clock() * 1000))

    def normalize(
        self,
        raw: Any,
        *,
        source: EventSource = EventSource.STREAM,
        received_at: Optional[int] = None,
    ) -> NormalizeResult:
        if not isinstance(raw, Mapping):
            return self._discard("payload is not an object", None)

        raw_kind = raw.get("Event") or raw.get("Type")
        if not isinstance(raw_kind, str) or not raw_kind.strip():
            return self._discard("payload has no Event/Type discriminator", None)
        kind = raw_kind.strip().upper()

        if kind in IGNORED_EVENTS:
            return self._discard("event kind not tracked", kind, expected=True)

        try:
            timestamp = self._event_time(raw, received_at)
            builder = self._builders.get(kind)
            if builder is not None:
                return builder(kind, raw, timestamp, source)
            device = self._connection_device(kind)
            if device is not None:
                return self._equipment_connection(kind, device, raw, timestamp, source)
            if kind in STATUS_EVENTS:
                return self._equipment_status(kind, raw, timestamp, source)
        except NormalizationError as exc:
            return self._discard(str(exc), kind)

        return self._discard("unmapped event kind", kind)

    def normalize_device_info(
        self,
        device: DeviceKind,
        info: Mapping[str, Any],
        *,
        timestamp: Optional[int] = None,
        source: EventSource = EventSource.POLL,
    ) -> EquipmentConnection:
        """Translate an ``/equipment/<device>/info`` response body."""

        connected = as_bool(info.get("Connected")) or False
        fields = extract_fields(info, DEVICE_INFO_FIELDS.get(device, _NAME))
        if not connected:
            fields.update(DISCONNECT_IMPLIED_FIELDS.get(device, {}))
        return EquipmentConnection(
            timestamp=timestamp if timestamp is not None else self.now_ms(),
            source=source,
            device=device,
            connected=connected,
            fields=fields,
        )

    def normalize_guide_steps(
        self,
        graph: Mapping[str, Any],
        *,
        timestamp: Optional[int] = None,
        source: EventSource = EventSource.POLL,
    ) -> List[GuideStep]:
        """Translate the ``GuideSteps`` list of an ``/equipment/guider/graph`` response."""

        stamp = timestamp if timestamp is not None else self.now_ms()
        steps = graph.get("GuideSteps")
        if not isinstance(steps, Sequence) or isinstance(steps, (str, bytes)):
            return []
        events: List[GuideStep] = []
        for raw_step in steps:
            if not isinstance(raw_step, Mapping):
                continue
            try:
                record = self._guide_record(raw_step, stamp)
            except NormalizationError as exc:
                logger.debug("Skipping guide step: %s", exc)
                continue
            events.append(GuideStep(timestamp=stamp, source=source, step=record))
        return events

    # ------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------

    def _target_start(self, kind: str, raw: RawEvent, ts: int, source: EventSource) -> TargetStart:
        name = as_text(lookup(raw, "TargetName"))
        if name is None:
            raise NormalizationError("target start without TargetName", kind=kind)
        fields = extract_fields(raw, TARGET_FIELDS)
        end_time = None
        raw_end = lookup(raw, "TargetEndTime")
        if raw_end is not None:
            try:
                end_time = parse_timestamp(raw_end, self._tz)
            except NormalizationError:
                logger.debug("Ignoring unparseable TargetEndTime %r", raw_end)
        coordinates = None
        raw_coords = lookup(raw, "Coordinates")
        if isinstance(raw_coords, Mapping):
            coord_fields = extract_fields(raw_coords, COORDINATE_FIELDS)
            if coord_fields:
                coordinates = Coordinates(**coord_fields)
        return TargetStart(
            timestamp=ts,
            source=source,
            name=name,
            end_time=end_time,
            coordinates=coordinates,
            **fields,
        )

    def _target_end(self, kind: str, raw: RawEvent, ts: int, source: EventSource) -> TargetEnd:
        return TargetEnd(
            timestamp=ts,
            source=source,
            name=as_text(lookup(raw, "TargetName")),
            reason="target-end",
        )

    def _sequence_end(self, kind: str, raw: RawEvent, ts: int, source: EventSource) -> TargetEnd:
        return TargetEnd(timestamp=ts, source=source, name=None, reason=kind.lower())

    def _filter_change(self, kind: str, raw: RawEvent, ts: int, source: EventSource) -> NormalizeResult:
        new_name = as_text(lookup(raw, "New.Name"))
        new_position = as_int(lookup(raw, "New.Id"))
        previous = as_text(lookup(raw, "Previous.Name"))
        if new_name is None and new_position is None:
            raise NormalizationError("filter change without New filter", kind=kind)
        if new_name is not None and new_name == previous:
            return self._discard("filter unchanged", kind, expected=True)
        return FilterChange(
            timestamp=ts,
            source=source,
            filter=new_name,
            position=new_position,
            previous=previous,
        )

    def _safety_change(self, kind: str, raw: RawEvent, ts: int, source: EventSource) -> SafetyChange:
        is_safe = as_bool(lookup(raw, "IsSafe"))
        if is_safe is None:
            raise NormalizationError("safety change without boolean IsSafe", kind=kind)
        return SafetyChange(timestamp=ts, source=source, is_safe=is_safe)

    def _image_saved(self, kind: str, raw: RawEvent, ts: int, source: EventSource) -> ImageSaved:
        stats = raw.get("ImageStatistics")
        container: Mapping[str, Any] = stats if isinstance(stats, Mapping) else raw
        fields = extract_fields(container, IMAGE_FIELDS)
        if container is not raw:
            # FilePath sometimes sits next to ImageStatistics rather than inside it
            for canonical, value in extract_fields(raw, IMAGE_FIELDS).items():
                fields.setdefault(canonical, value)
        return ImageSaved(timestamp=ts, source=source, image=ImageRecord(timestamp=ts, **fields))

    def _guide_step(self, kind: str, raw: RawEvent, ts: int, source: EventSource) -> GuideStep:
        return GuideStep(timestamp=ts, source=source, step=self._guide_record(raw, ts))

    def _sequence_progress(self, kind: str, raw: RawEvent, ts: int, source: EventSource) -> SequenceProgressUpdate:
        current = as_int(lookup(raw, "Current"))
        if current is None:
            current = as_int(lookup(raw, "Progress.Current"))
        total = as_int(lookup(raw, "Total"))
        if total is None:
            total = as_int(lookup(raw, "Progress.Total"))
        if current is None and total is None:
            raise NormalizationError("sequence progress without Current/Total", kind=kind)
        return SequenceProgressUpdate(timestamp=ts, source=source, current=current, total=total)

    def _equipment_connection(
        self, kind: str, device: DeviceKind, raw: RawEvent, ts: int, source: EventSource
    ) -> EquipmentConnection:
        connected = kind.endswith("-CONNECTED")
        fields = extract_fields(raw, _NAME)
        if not connected:
            fields.update(DISCONNECT_IMPLIED_FIELDS.get(device, {}))
        return EquipmentConnection(timestamp=ts, source=source, device=device, connected=connected, fields=fields)

    def _equipment_status(self, kind: str, raw: RawEvent, ts: int, source: EventSource) -> EquipmentStatus:
        device, constants, extras = STATUS_EVENTS[kind]
        fields = dict(constants)
        fields.update(extract_fields(raw, extras))
        return EquipmentStatus(timestamp=ts, source=source, device=device, fields=fields)

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _guide_record(self, raw: Mapping[str, Any], ts: int) -> GuideStepRecord:
        fields = extract_fields(raw, GUIDE_STEP_FIELDS)
        if "ra_distance" not in fields and "dec_distance" not in fields:
            raise NormalizationError("guide step without RA/Dec distance", kind="GUIDE-STEP")
        dither = lookup(raw, "Dither")
        return GuideStepRecord(timestamp=ts, dither=_is_dither(dither), **fields)

    def _event_time(self, raw: RawEvent, received_at: Optional[int]) -> int:
        value = raw.get("Time")
        if value is None:
            return received_at if received_at is not None else self.now_ms()
        return parse_timestamp(value, self._tz)

    @staticmethod
    def _connection_device(kind: str) -> Optional[DeviceKind]:
        for suffix in ("-CONNECTED", "-DISCONNECTED"):
            if kind.endswith(suffix):
                return CONNECTION_PREFIXES.get(kind[: -len(suffix)])
        return None

    @staticmethod
    def _discard(reason: str, kind: Optional[str], *, expected: bool = False) -> Discard:
        if expected:
            logger.debug("Discarding %s event: %s", kind, reason)
        else:
            logger.info("Discarding %s event: %s", kind or "untyped", reason)
        return Discard(reason=reason, raw_kind=kind, expected=expected)


def _is_dither(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() not in ("", "nan", "false", "0")
    return as_float(value) is not None


_default_normalizer = EventNormalizer()


def normalize(raw: Any, *, source: EventSource = EventSource.STREAM) -> NormalizeResult:
    """Module-level shortcut using UTC for naive timestamps."""
    return _default_normalizer.normalize(raw, source=source)


__all__ = [
    "EventNormalizer",
    "normalize",
    "parse_timestamp",
    "resolve_timezone",
    "as_float",
    "as_int",
    "as_bool",
    "as_text",
    "lookup",
    "DEVICE_INFO_FIELDS",
    "STATUS_EVENTS",
    "IGNORED_EVENTS",
]
