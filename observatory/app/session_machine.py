"""Session state machine: folds normalized events into a session snapshot."""
from __future__ import annotations

import bisect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import StateInvariantViolation
from .events import (
    AnyEvent,
    ConnectionLost,
    ConnectionStatusChange,
    EquipmentConnection,
    EquipmentStatus,
    EventKind,
    EventSource,
    FilterChange,
    GraceExpired,
    GuideStep,
    ImageSaved,
    NormalizedEvent,
    SafetyChange,
    SequenceProgressUpdate,
    SessionReset,
    TargetEnd,
    TargetExpired,
    TargetStart,
)
from .state import ActiveTarget, ConnectionStatus, DeviceKind, RecentEvent, SequenceProgress, SessionSnapshot

logger = logging.getLogger(__name__)

_NEVER = -(2**63)

ACTIVE_TARGET = "activeTarget"
SEQUENCE_PROGRESS = "sequenceProgress"
LAST_IMAGE = "lastImage"


@dataclass
class FoldResult:
    """Outcome of one fold step. ``changed`` is empty when the event was a no-op."""

    snapshot: SessionSnapshot
    changed: List[str] = field(default_factory=list)
    violations: List[StateInvariantViolation] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return bool(self.changed)


@dataclass
class _Draft:
    snapshot: SessionSnapshot
    changed: Set[str] = field(default_factory=set)
    violations: List[StateInvariantViolation] = field(default_factory=list)

    def stamp(self, path: str) -> int:
        return self.snapshot.stamps.get(path, _NEVER)

    def is_stale(self, path: str, ts: int) -> bool:
        return ts < self.stamp(path)

    def set_stamp(self, path: str, ts: int) -> None:
        if ts > self.stamp(path):
            self.snapshot.stamps[path] = ts

    def set_device_field(self, device: str, name: str, value: Any, ts: int) -> bool:
        path = f"equipment.{device}.{name}"
        if self.is_stale(path, ts):
            logger.debug("Ignoring stale %s (event %d < %d)", path, ts, self.stamp(path))
            return False
        self.set_stamp(path, ts)
        entry = self.snapshot.equipment.setdefault(device, {"connected": False})
        if name in entry and entry[name] == value:
            return False
        entry[name] = value
        self.changed.add("equipment")
        return True


def check_progress(current: int, total: int) -> SequenceProgress:
    """Validate progress bounds; raises with the clamped value attached."""

    if total < 0 or current < 0 or current > total:
        safe_total = max(total, 0)
        corrected = SequenceProgress(current=min(max(current, 0), safe_total), total=safe_total)
        raise StateInvariantViolation(
            f"sequence progress {current}/{total} out of bounds, clamped to "
            f"{corrected.current}/{corrected.total}",
            corrected=corrected,
        )
    return SequenceProgress(current=current, total=total)


class SessionStateMachine:
    """
    Pure fold over normalized events.

    ``apply`` never mutates the snapshot it is given: it works on a copy and
    returns either that copy (when something changed) or the original
    instance. Point-in-time fields are ordered by their own last-applied
    timestamp, so two fields may legitimately update out of order relative
    to each other while a single field never moves backwards.
    """

    def __init__(
        self,
        *,
        guide_history_cap: int = 300,
        image_history_cap: int = 20,
        recent_events_cap: int = 5,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.guide_history_cap = guide_history_cap
        self.image_history_cap = image_history_cap
        self.recent_events_cap = recent_events_cap
        # wall clock (epoch seconds) for expiring finished targets; None keeps the fold event-time only
        self._clock = clock
        self._handlers: Dict[EventKind, Callable[[Any, _Draft], None]] = {
            EventKind.EQUIPMENT_CONNECTION: self._equipment_connection,
            EventKind.EQUIPMENT_STATUS: self._equipment_status,
            EventKind.FILTER_CHANGE: self._filter_change,
            EventKind.TARGET_START: self._target_start,
            EventKind.TARGET_END: self._target_end,
            EventKind.SAFETY_CHANGE: self._safety_change,
            EventKind.IMAGE_SAVED: self._image_saved,
            EventKind.GUIDE_STEP: self._guide_step,
            EventKind.SEQUENCE_PROGRESS: self._sequence_progress,
            EventKind.CONNECTION_LOST: self._connection_lost,
            EventKind.CONNECTION_STATUS: self._connection_status,
            EventKind.SESSION_RESET: self._session_reset,
            EventKind.GRACE_EXPIRED: self._grace_expired,
            EventKind.TARGET_EXPIRED: self._target_expired,
        }

    def initial_snapshot(self) -> SessionSnapshot:
        return SessionSnapshot.initial(guide_history_cap=self.guide_history_cap)

    def apply(self, event: NormalizedEvent, snapshot: SessionSnapshot) -> FoldResult:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.warning("No fold handler for event kind %s", event.kind)
            return FoldResult(snapshot)

        draft = _Draft(snapshot.copy())
        try:
            handler(event, draft)
        except Exception as exc:
            logger.exception("Fold of %s failed, snapshot left unchanged: %s", event.kind.value, exc)
            return FoldResult(snapshot)

        if event.source is not EventSource.CONTROL:
            self._expire_target(event.timestamp, draft)
            if draft.changed:
                self._record_recent(event, snapshot, draft)

        if snapshot.stale_since is not None or draft.snapshot.stale_since is not None:
            for kind in draft.snapshot.equipment:
                if draft.snapshot.device_is_stale(kind) != snapshot.device_is_stale(kind):
                    draft.changed.add("equipment")
                    break

        for violation in draft.violations:
            logger.warning("State invariant corrected: %s", violation)

        if not draft.changed:
            if draft.snapshot.stamps != snapshot.stamps:
                # confirmations of unchanged values still advance field stamps
                return FoldResult(draft.snapshot, [], draft.violations)
            return FoldResult(snapshot, [], draft.violations)

        result = draft.snapshot
        if event.source is not EventSource.CONTROL:
            result.last_update = max(result.last_update or event.timestamp, event.timestamp)
        result.revision = snapshot.revision + 1
        return FoldResult(result, sorted(draft.changed), draft.violations)

    # ------------------------------------------------------------
    # Equipment
    # ------------------------------------------------------------

    def _equipment_connection(self, event: EquipmentConnection, draft: _Draft) -> None:
        device = event.device.value
        draft.set_device_field(device, "connected", event.connected, event.timestamp)
        for name, value in event.fields.items():
            draft.set_device_field(device, name, value, event.timestamp)

    def _equipment_status(self, event: EquipmentStatus, draft: _Draft) -> None:
        device = event.device.value
        for name, value in event.fields.items():
            draft.set_device_field(device, name, value, event.timestamp)

    def _filter_change(self, event: FilterChange, draft: _Draft) -> None:
        device = DeviceKind.FILTER_WHEEL.value
        if event.filter is not None:
            draft.set_device_field(device, "filter", event.filter, event.timestamp)
        if event.position is not None:
            draft.set_device_field(device, "position", event.position, event.timestamp)

    def _safety_change(self, event: SafetyChange, draft: _Draft) -> None:
        draft.set_device_field(DeviceKind.SAFETY_MONITOR.value, "isSafe", event.is_safe, event.timestamp)

    # ------------------------------------------------------------
    # Target / sequence
    # ------------------------------------------------------------

    def _target_start(self, event: TargetStart, draft: _Draft) -> None:
        ts = event.timestamp
        superseded = (
            draft.is_stale(ACTIVE_TARGET, ts)
            or draft.is_stale(f"{ACTIVE_TARGET}.ended", ts)
            or draft.is_stale(f"{ACTIVE_TARGET}.ended.{event.name}", ts)
        )
        if superseded:
            logger.info("Ignoring superseded target start for %s", event.name)
            return
        if event.end_time is not None and event.end_time <= self._now_ms(ts):
            logger.info("Ignoring start of %s, its scheduled end has already passed", event.name)
            draft.set_stamp(f"{ACTIVE_TARGET}.ended.{event.name}", event.end_time)
            return
        draft.set_stamp(ACTIVE_TARGET, ts)
        target = event.to_target()
        snap = draft.snapshot
        if snap.active_target != target:
            snap.active_target = target
            draft.changed.add(ACTIVE_TARGET)

        if not draft.is_stale(SEQUENCE_PROGRESS, ts):
            draft.set_stamp(SEQUENCE_PROGRESS, ts)
            if snap.sequence_progress is not None:
                snap.sequence_progress = None
                draft.changed.add(SEQUENCE_PROGRESS)

    def _target_end(self, event: TargetEnd, draft: _Draft) -> None:
        ts = event.timestamp
        snap = draft.snapshot
        if event.name is not None:
            draft.set_stamp(f"{ACTIVE_TARGET}.ended.{event.name}", ts)
        else:
            # sequence finished: supersedes every older start
            draft.set_stamp(f"{ACTIVE_TARGET}.ended", ts)

        active = snap.active_target
        if active is None:
            return
        if draft.is_stale(ACTIVE_TARGET, ts):
            logger.info("Ignoring target end older than the active target start (%s)", active.name)
            return
        if event.name is not None and event.name != active.name:
            logger.info("Ignoring target end for %s while %s is active", event.name, active.name)
            return
        snap.active_target = None
        draft.set_stamp(ACTIVE_TARGET, ts)
        draft.changed.add(ACTIVE_TARGET)

    def _target_expired(self, event: TargetExpired, draft: _Draft) -> None:
        target = draft.snapshot.active_target
        if target is None or target.name != event.name or target.end_time != event.end_time:
            logger.debug("Expiry for %s no longer applies", event.name)
            return
        self._end_target(target, event.end_time, draft)

    def _expire_target(self, ts: int, draft: _Draft) -> None:
        target = draft.snapshot.active_target
        if target is None or target.end_time is None:
            return
        if self._now_ms(ts) >= target.end_time:
            self._end_target(target, target.end_time, draft)

    def _end_target(self, target: ActiveTarget, end_time: int, draft: _Draft) -> None:
        logger.info("Target %s reached its scheduled end", target.name)
        draft.snapshot.active_target = None
        draft.set_stamp(ACTIVE_TARGET, end_time)
        draft.set_stamp(f"{ACTIVE_TARGET}.ended.{target.name}", end_time)
        draft.changed.add(ACTIVE_TARGET)

    def _now_ms(self, floor: int) -> int:
        if self._clock is None:
            return floor
        return max(floor, int(round(self._clock() * 1000)))

    def _sequence_progress(self, event: SequenceProgressUpdate, draft: _Draft) -> None:
        ts = event.timestamp
        if draft.is_stale(SEQUENCE_PROGRESS, ts):
            logger.debug("Ignoring stale sequence progress %s/%s", event.current, event.total)
            return
        snap = draft.snapshot
        previous = snap.sequence_progress
        total = event.total if event.total is not None else (previous.total if previous else None)
        if total is None:
            logger.info("Ignoring sequence progress without a known total")
            return
        current = event.current if event.current is not None else (previous.current if previous else 0)
        try:
            progress = check_progress(current, total)
        except StateInvariantViolation as violation:
            draft.violations.append(violation)
            progress = violation.corrected
        draft.set_stamp(SEQUENCE_PROGRESS, ts)
        if progress != previous:
            snap.sequence_progress = progress
            draft.changed.add(SEQUENCE_PROGRESS)

    # ------------------------------------------------------------
    # Images / guiding
    # ------------------------------------------------------------

    def _image_saved(self, event: ImageSaved, draft: _Draft) -> None:
        snap = draft.snapshot
        image = event.image
        if any(existing.key == image.key for existing in snap.recent_images) or (
            snap.last_image is not None and snap.last_image.key == image.key
        ):
            logger.debug("Duplicate image save at %d ignored", image.timestamp)
            return

        before = list(snap.recent_images)
        timestamps = [existing.timestamp for existing in snap.recent_images]
        snap.recent_images.insert(bisect.bisect_right(timestamps, image.timestamp), image)
        overflow = len(snap.recent_images) - self.image_history_cap
        if overflow > 0:
            del snap.recent_images[:overflow]
        if snap.recent_images != before:
            draft.changed.add("recentImages")

        if not draft.is_stale(LAST_IMAGE, image.timestamp):
            draft.set_stamp(LAST_IMAGE, image.timestamp)
            snap.last_image = image
            draft.changed.add(LAST_IMAGE)

    def _guide_step(self, event: GuideStep, draft: _Draft) -> None:
        history = draft.snapshot.guide_stats
        step = event.step
        if step.step_id is not None:
            if any(existing.step_id == step.step_id for existing in history):
                return
        elif step in history:
            return
        if history.maxlen != self.guide_history_cap:
            history = draft.snapshot.guide_stats = type(history)(history, maxlen=self.guide_history_cap)
        history.append(step)
        draft.changed.add("guideStats")

    # ------------------------------------------------------------
    # Activity feed
    # ------------------------------------------------------------

    def _record_recent(self, event: NormalizedEvent, previous: SessionSnapshot, draft: _Draft) -> None:
        entry = summarize_event(event, previous)
        if entry is None:
            return
        feed = draft.snapshot.recent_events
        if any(existing.key == entry.key for existing in feed):
            return
        newest_first = [-existing.timestamp for existing in feed]
        feed.insert(bisect.bisect_right(newest_first, -entry.timestamp), entry)
        del feed[self.recent_events_cap :]
        if entry in feed:
            draft.changed.add("recentEvents")

    # ------------------------------------------------------------
    # Connection / lifecycle
    # ------------------------------------------------------------

    def _mark_disconnected(self, status: ConnectionStatus, ts: int, draft: _Draft) -> None:
        snap = draft.snapshot
        if snap.connection_status != status:
            snap.connection_status = status
            draft.changed.add("connectionStatus")
        if snap.disconnected_since is None:
            # repeated losses do not extend the grace period
            snap.disconnected_since = ts
            draft.changed.add("connectionStatus")

    def _connection_lost(self, event: ConnectionLost, draft: _Draft) -> None:
        if event.reason:
            logger.info("Event feed lost: %s", event.reason)
        self._mark_disconnected(ConnectionStatus.DISCONNECTED, event.timestamp, draft)

    def _connection_status(self, event: ConnectionStatusChange, draft: _Draft) -> None:
        snap = draft.snapshot
        if event.status is not ConnectionStatus.CONNECTED:
            self._mark_disconnected(event.status, event.timestamp, draft)
            return
        if snap.connection_status is not ConnectionStatus.CONNECTED:
            snap.connection_status = ConnectionStatus.CONNECTED
            draft.changed.add("connectionStatus")
        if snap.disconnected_since is not None:
            snap.disconnected_since = None
            draft.changed.add("connectionStatus")
        if snap.stale_since is not None:
            snap.stale_since = None
            draft.changed.add("stale")

    def _grace_expired(self, event: GraceExpired, draft: _Draft) -> None:
        snap = draft.snapshot
        if snap.connection_status is ConnectionStatus.CONNECTED or snap.disconnected_since != event.lost_at:
            logger.debug("Grace timer for loss at %d no longer applies", event.lost_at)
            return
        if snap.stale_since == event.lost_at:
            return
        logger.warning("Event feed down beyond grace period; clearing active target and progress")
        snap.stale_since = event.lost_at
        draft.changed.add("stale")
        # block replays of anything started before the loss
        draft.set_stamp(ACTIVE_TARGET, event.lost_at)
        draft.set_stamp(SEQUENCE_PROGRESS, event.lost_at)
        if snap.active_target is not None:
            snap.active_target = None
            draft.changed.add(ACTIVE_TARGET)
        if snap.sequence_progress is not None:
            snap.sequence_progress = None
            draft.changed.add(SEQUENCE_PROGRESS)

    def _session_reset(self, event: SessionReset, draft: _Draft) -> None:
        logger.info("Session reset (%s)", event.reason)
        current = draft.snapshot
        fresh = self.initial_snapshot()
        fresh.connection_status = current.connection_status
        fresh.disconnected_since = current.disconnected_since
        fresh.last_update = current.last_update
        fresh.revision = current.revision
        draft.snapshot = fresh
        draft.changed.update(
            {
                "equipment",
                ACTIVE_TARGET,
                SEQUENCE_PROGRESS,
                LAST_IMAGE,
                "recentImages",
                "recentEvents",
                "guideStats",
                "stale",
            }
        )


def _device_label(kind: str) -> str:
    return re.sub(r"([a-z])([A-Z])", r"\1 \2", kind).capitalize()


def _image_summary(image: Any) -> str:
    parts = []
    if image.filter:
        parts.append(image.filter)
    if image.exposure_seconds is not None:
        parts.append(f"{image.exposure_seconds:g}s")
    if image.image_type and image.image_type.upper() != "LIGHT":
        parts.append(image.image_type.lower())
    return f"{' '.join(parts)} image" if parts else "Image saved"


def summarize_event(event: NormalizedEvent, previous: SessionSnapshot) -> Optional[RecentEvent]:
    """Activity-feed line for an accepted data event, or ``None`` for high-rate kinds."""

    ts = event.timestamp
    if isinstance(event, EquipmentConnection):
        was = previous.equipment.get(event.device.value, {}).get("connected")
        if was == event.connected:
            return None
        state = "connected" if event.connected else "disconnected"
        label = _device_label(event.device.value)
        return RecentEvent(ts, "EQUIPMENT", f"{label} {state}", {"device": event.device.value})
    if isinstance(event, EquipmentStatus):
        if event.source is EventSource.POLL or not event.fields:
            return None
        details = ", ".join(f"{name}={value}" for name, value in event.fields.items())
        label = _device_label(event.device.value)
        return RecentEvent(ts, "EQUIPMENT", f"{label}: {details}", {"device": event.device.value})
    if isinstance(event, FilterChange):
        label = event.filter if event.filter is not None else f"position {event.position}"
        return RecentEvent(ts, "FILTER", f"Filter changed to {label}", {"previous": event.previous})
    if isinstance(event, SafetyChange):
        return RecentEvent(ts, "SAFETY", "Conditions safe" if event.is_safe else "Conditions unsafe")
    if isinstance(event, TargetStart):
        return RecentEvent(ts, "SESSION", f"Target started: {event.name}", {"projectName": event.project_name})
    if isinstance(event, TargetEnd):
        summary = f"Target ended: {event.name}" if event.name else "Sequence completed"
        return RecentEvent(ts, "SESSION", summary, {"reason": event.reason})
    if isinstance(event, ImageSaved):
        image = event.image
        return RecentEvent(
            ts,
            "IMAGE-SAVE",
            _image_summary(image),
            {"filter": image.filter, "exposureSeconds": image.exposure_seconds, "imageType": image.image_type},
        )
    # guide steps and progress ticks arrive too often for the feed
    return None


def fold(events: List[AnyEvent], snapshot: Optional[SessionSnapshot] = None, **kwargs: Any) -> SessionSnapshot:
    """Apply ``events`` in order; convenience for replays and tests."""

    machine = SessionStateMachine(**kwargs)
    current = snapshot or machine.initial_snapshot()
    for event in events:
        current = machine.apply(event, current).snapshot
    return current


__all__ = ["SessionStateMachine", "FoldResult", "check_progress", "fold", "summarize_event"]
