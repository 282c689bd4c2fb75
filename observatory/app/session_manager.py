"""Session orchestration: ingress, normalization, fold loop and fan-out."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .backend.http_client import NinaHttpClient
from .backend.ws_client import Connector, NinaEventStream
from .broadcast import StateBroadcaster, Subscription
from .config import Settings, get_settings
from .errors import TransportError
from .events import (
    ConnectionLost,
    ConnectionStatusChange,
    Discard,
    EventSource,
    GraceExpired,
    NormalizedEvent,
    SessionReset,
    TargetExpired,
)
from .normalizer import EventNormalizer
from .poller import PollingFallback
from .session_machine import SessionStateMachine
from .state import ConnectionStatus, SessionSnapshot, StateUpdate

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Coordinates the event stream, polling fallback and UI subscribers.

    Every producer (stream, poller, history seeding, grace and target timers,
    manual reset) feeds one queue, and a single fold task applies events in arrival
    order. Nothing else writes the session snapshot.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        connector: Optional[Connector] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        session_cfg = self.settings.session
        self._normalizer = EventNormalizer(self.settings.nina_timezone, clock=time.time)
        self._machine = SessionStateMachine(
            guide_history_cap=session_cfg.guide_history_cap,
            image_history_cap=session_cfg.image_history_cap,
            recent_events_cap=session_cfg.recent_events_cap,
            clock=time.time,
        )
        self._snapshot: SessionSnapshot = self._machine.initial_snapshot()
        self._broadcaster = StateBroadcaster(
            self._snapshot,
            coalesce_window_s=self.settings.broadcast.coalesce_window_s,
            queue_size=self.settings.broadcast.subscriber_queue_size,
        )
        self._http_client = NinaHttpClient(self.settings, transport=http_transport)
        self._stream = NinaEventStream(
            self.settings,
            on_event=self._handle_raw_event,
            on_state=self._handle_stream_state,
            connector=connector,
        )
        self._poller = PollingFallback(
            self.settings,
            self._http_client,
            self._normalizer,
            self.ingest,
            stream_down_since=lambda: self._stream_down_since,
        )

        self._queue: asyncio.Queue[NormalizedEvent] = asyncio.Queue()
        self._fold_task: Optional[asyncio.Task[None]] = None
        self._grace_task: Optional[asyncio.Task[None]] = None
        self._grace_lost_at: Optional[int] = None
        self._target_task: Optional[asyncio.Task[None]] = None
        self._target_timer_key: Optional[Tuple[str, int]] = None
        self._background_tasks: List[asyncio.Task[Any]] = []
        self._stream_down_since: Optional[float] = None
        self._started_at: Optional[float] = None

        self.seeded = False
        self.applied = 0
        self.unchanged = 0
        self.discarded = 0
        self.violations = 0

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def broadcaster(self) -> StateBroadcaster:
        return self._broadcaster

    @property
    def stream(self) -> NinaEventStream:
        return self._stream

    @property
    def poller(self) -> PollingFallback:
        return self._poller

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    async def start(self) -> None:
        logger.info("Starting session manager (N.I.N.A. at %s)", self.settings.api_base_url)
        self._started_at = time.time()
        # the feed counts as down until the first handshake succeeds
        self._stream_down_since = time.monotonic()
        await self.start_pipeline()

        if self.settings.session.seed_from_history:
            await self.seed_from_history()

        await self._stream.start()
        await self._poller.start()
        self._background_tasks.append(asyncio.create_task(self._heartbeat_loop(), name="monitor-heartbeat"))
        logger.info("Session manager started")

    async def start_pipeline(self) -> None:
        """Start the fold loop and broadcaster without touching the network."""
        if not self._fold_task or self._fold_task.done():
            self._fold_task = asyncio.create_task(self._fold_loop(), name="session-fold")
        await self._broadcaster.start()

    async def stop(self) -> None:
        logger.info("Stopping session manager")

        for task in self._background_tasks:
            task.cancel()
        for task in self._background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping background task: %s", e)
        self._background_tasks.clear()

        self._cancel_grace_timer()
        self._cancel_target_timer()
        await self._poller.stop()
        await self._stream.stop()

        if self._fold_task and not self._fold_task.done():
            self._fold_task.cancel()
            try:
                await self._fold_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping fold loop: %s", e)
        self._fold_task = None

        await self._broadcaster.stop()
        await self._http_client.aclose()

    # ------------------------------------------------------------
    # Event entry points
    # ------------------------------------------------------------

    async def ingest(self, event: NormalizedEvent) -> None:
        """Queue a normalized event for the fold loop."""
        await self._queue.put(event)

    async def submit_raw(
        self, raw: Any, *, source: EventSource = EventSource.STREAM
    ) -> Optional[NormalizedEvent]:
        """Normalize ``raw`` and queue it; returns ``None`` when it was discarded."""

        result = self._normalizer.normalize(raw, source=source, received_at=self._now_ms())
        if isinstance(result, Discard):
            self.discarded += 1
            return None
        await self.ingest(result)
        return result

    async def wait_idle(self) -> None:
        """Block until every queued event has been folded."""
        await self._queue.join()

    async def request_reset(self, reason: str = "manual") -> None:
        await self.ingest(SessionReset(timestamp=self._now_ms(), source=EventSource.CONTROL, reason=reason))

    async def refresh(self) -> Dict[str, int]:
        """Re-seed from history, then poll equipment once regardless of stream health."""
        seeded = await self.seed_from_history()
        polled = await self._poller.poll_once()
        return {"seeded": seeded, "polled": polled}

    async def seed_from_history(self) -> int:
        """Replay the most recent entries of the tool's event history."""

        try:
            history = await self._http_client.get_event_history()
        except TransportError as exc:
            logger.warning("History seeding skipped: %s", exc)
            return 0
        limit = self.settings.session.seed_event_limit
        recent = history[-limit:] if limit > 0 else []
        seeded = 0
        for raw in recent:
            if await self.submit_raw(raw, source=EventSource.HISTORY) is not None:
                seeded += 1
        self.seeded = True
        logger.info("Seeded %d of %d history events", seeded, len(history))
        return seeded

    # ------------------------------------------------------------
    # UI subscribers
    # ------------------------------------------------------------

    def register_ui(self) -> Subscription:
        return self._broadcaster.subscribe()

    def unregister_ui(self, subscription: Subscription) -> None:
        self._broadcaster.unsubscribe(subscription)

    def get_state(self) -> Dict[str, Any]:
        return self._broadcaster.get_state()

    def status(self) -> Dict[str, Any]:
        stream_state = self._stream.state
        return {
            "connectionStatus": self._snapshot.connection_status.value,
            "stream": {
                "url": self._stream.url,
                "state": stream_state.value if stream_state else None,
                "attempt": self._stream.attempt,
                "messagesReceived": self._stream.messages_received,
            },
            "polling": {
                "enabled": self.settings.polling.enabled,
                "active": self._poller.active,
                "polls": self._poller.polls,
                "failures": self._poller.failures,
            },
            "events": {
                "applied": self.applied,
                "unchanged": self.unchanged,
                "discarded": self.discarded,
                "violations": self.violations,
                "queued": self._queue.qsize(),
            },
            "seeded": self.seeded,
            "subscribers": self._broadcaster.subscriber_count,
            "revision": self._snapshot.revision,
            "lastUpdate": self._snapshot.last_update,
            "stale": self._snapshot.stale,
            "startedAt": self._started_at,
        }

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    async def _handle_raw_event(self, raw: Dict[str, Any]) -> None:
        await self.submit_raw(raw, source=EventSource.STREAM)

    async def _handle_stream_state(self, status: ConnectionStatus, reason: str) -> None:
        now = self._now_ms()
        if status is ConnectionStatus.CONNECTED:
            self._stream_down_since = None
            logger.info("Event feed connected")
            event: NormalizedEvent = ConnectionStatusChange(
                timestamp=now, source=EventSource.CONTROL, status=status
            )
        else:
            if self._stream_down_since is None:
                self._stream_down_since = time.monotonic()
            if status is ConnectionStatus.DISCONNECTED:
                event = ConnectionLost(timestamp=now, source=EventSource.CONTROL, reason=reason)
            else:
                event = ConnectionStatusChange(timestamp=now, source=EventSource.CONTROL, status=status)
        await self.ingest(event)

    async def _fold_loop(self) -> None:
        try:
            while True:
                event = await self._queue.get()
                try:
                    self._apply(event)
                except Exception as exc:
                    logger.exception("Failed to apply %s: %s", event.kind.value, exc)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            raise

    def _apply(self, event: NormalizedEvent) -> None:
        previous = self._snapshot
        result = self._machine.apply(event, previous)
        self.violations += len(result.violations)
        if result.accepted:
            self.applied += 1
        else:
            self.unchanged += 1
        if result.snapshot is previous:
            return
        self._snapshot = result.snapshot
        self._broadcaster.publish(result.snapshot, [event.kind.value] if result.accepted else None)
        self._sync_grace_timer(result.snapshot)
        self._sync_target_timer(result.snapshot)

    def _sync_grace_timer(self, snapshot: SessionSnapshot) -> None:
        lost_at = snapshot.disconnected_since
        if lost_at is None:
            self._cancel_grace_timer()
            return
        if lost_at == self._grace_lost_at or snapshot.stale_since == lost_at:
            return
        self._cancel_grace_timer()
        self._grace_lost_at = lost_at
        self._grace_task = asyncio.create_task(self._grace_timer(lost_at), name="session-grace-timer")
        logger.info("Grace timer armed for %.0fs", self.settings.session.grace_period_s)

    def _cancel_grace_timer(self) -> None:
        if self._grace_task and not self._grace_task.done():
            self._grace_task.cancel()
        self._grace_task = None
        self._grace_lost_at = None

    async def _grace_timer(self, lost_at: int) -> None:
        await asyncio.sleep(self.settings.session.grace_period_s)
        await self.ingest(GraceExpired(timestamp=self._now_ms(), source=EventSource.CONTROL, lost_at=lost_at))

    def _sync_target_timer(self, snapshot: SessionSnapshot) -> None:
        target = snapshot.active_target
        if target is None or target.end_time is None:
            self._cancel_target_timer()
            return
        key = (target.name, target.end_time)
        if key == self._target_timer_key:
            return
        self._cancel_target_timer()
        self._target_timer_key = key
        self._target_task = asyncio.create_task(self._target_timer(*key), name="session-target-timer")

    def _cancel_target_timer(self) -> None:
        if self._target_task and not self._target_task.done():
            self._target_task.cancel()
        self._target_task = None
        self._target_timer_key = None

    async def _target_timer(self, name: str, end_time: int) -> None:
        await asyncio.sleep(max(end_time - self._now_ms(), 0) / 1000.0)
        await self.ingest(
            TargetExpired(timestamp=self._now_ms(), source=EventSource.CONTROL, name=name, end_time=end_time)
        )

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeat to UI clients."""
        try:
            while True:
                await asyncio.sleep(self.settings.broadcast.heartbeat_interval_s)
                try:
                    self._broadcaster.send(
                        StateUpdate(
                            type="heartbeat",
                            revision=self._snapshot.revision,
                            data={
                                "connectionStatus": self._snapshot.connection_status.value,
                                "serverTime": self._now_ms(),
                            },
                        )
                    )
                except Exception as e:
                    logger.warning("Failed to send heartbeat: %s", e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Heartbeat loop crashed: %s", e)

    def _now_ms(self) -> int:
        return self._normalizer.now_ms()
