"""Fan-out of session snapshots to UI subscribers."""
from __future__ import annotations

import asyncio
import itertools
import logging
from asyncio import QueueEmpty
from typing import Any, Dict, List, Optional

from .errors import SubscriberBackpressure
from .state import SessionSnapshot, StateUpdate

logger = logging.getLogger(__name__)

# top-level keys diffed one level deeper
_NESTED_KEYS = ("equipment",)


def diff_states(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Any]:
    """Changed paths between two serialized snapshots, as ``{path: new value}``."""

    changes: Dict[str, Any] = {}
    for key, value in new.items():
        previous = old.get(key)
        if key in _NESTED_KEYS and isinstance(value, dict) and isinstance(previous, dict):
            for child, child_value in value.items():
                if previous.get(child) != child_value:
                    changes[f"{key}.{child}"] = child_value
        elif key not in old or previous != value:
            changes[key] = value
    return changes


class Subscription:
    """One UI consumer. Iterate it to receive :class:`StateUpdate` messages."""

    def __init__(self, subscriber_id: int, maxsize: int) -> None:
        self.id = subscriber_id
        self.resyncs = 0
        self._queue: asyncio.Queue[Optional[StateUpdate]] = asyncio.Queue(maxsize=max(maxsize, 1))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, update: StateUpdate) -> None:
        if self._closed:
            return
        if self._queue.full():
            raise SubscriberBackpressure(self.id, self._queue.qsize())
        self._queue.put_nowait(update)

    def reset(self, update: StateUpdate) -> None:
        """Drop the backlog and queue ``update`` (a full snapshot) in its place."""
        self._drain()
        self.resyncs += 1
        self._queue.put_nowait(update)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._drain()
        self._queue.put_nowait(None)

    async def get(self) -> Optional[StateUpdate]:
        return await self._queue.get()

    def get_nowait(self) -> Optional[StateUpdate]:
        return self._queue.get_nowait()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StateUpdate:
        update = await self._queue.get()
        if update is None:
            raise StopAsyncIteration
        return update

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except QueueEmpty:
                break


class StateBroadcaster:
    """
    Holds the latest snapshot and pushes it to subscribers.

    New subscribers get the full snapshot before anything else. Accepted
    mutations are coalesced for ``coalesce_window_s`` and pushed as one diff;
    with a zero window every publish is pushed immediately. A subscriber that
    cannot keep up is reset to a fresh full snapshot rather than blocking
    everyone else.
    """

    def __init__(
        self,
        initial: SessionSnapshot,
        *,
        coalesce_window_s: float = 0.1,
        queue_size: int = 16,
    ) -> None:
        self._snapshot = initial
        self._state = initial.to_dict()
        self._pushed_state = self._state
        self._coalesce_window_s = max(coalesce_window_s, 0.0)
        self._queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._ids = itertools.count(1)
        self._pending_reasons: List[str] = []
        self._dirty = asyncio.Event()
        self._flush_task: Optional[asyncio.Task[None]] = None
        self.pushes = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def get_snapshot(self) -> SessionSnapshot:
        """Latest snapshot. Published snapshots are never mutated by the fold."""
        return self._snapshot

    def get_state(self) -> Dict[str, Any]:
        return self._snapshot.to_dict()

    def subscribe(self) -> Subscription:
        subscription = Subscription(next(self._ids), self._queue_size)
        subscription.offer(self._full_update())
        self._subscribers.append(subscription)
        logger.info("UI subscriber %d connected (%d active)", subscription.id, len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            logger.info("UI subscriber %d disconnected (%d active)", subscription.id, len(self._subscribers))
        subscription.close()

    def publish(self, snapshot: SessionSnapshot, reasons: Optional[List[str]] = None) -> None:
        """Accept a new snapshot from the fold loop."""

        self._snapshot = snapshot
        self._state = snapshot.to_dict()
        if reasons:
            self._pending_reasons.extend(reasons)
        if self._coalesce_window_s == 0 or self._flush_task is None:
            self.flush()
        else:
            self._dirty.set()

    def send(self, update: StateUpdate) -> None:
        """Push an out-of-band message (heartbeat) to every subscriber."""
        for subscription in list(self._subscribers):
            self._deliver(subscription, update)

    def flush(self) -> None:
        changes = diff_states(self._pushed_state, self._state)
        reasons, self._pending_reasons = self._pending_reasons, []
        if not changes:
            return
        self._pushed_state = self._state
        update = StateUpdate(type="diff", revision=self._snapshot.revision, data=changes, reasons=reasons)
        self.pushes += 1
        for subscription in list(self._subscribers):
            self._deliver(subscription, update)

    async def start(self) -> None:
        if self._coalesce_window_s > 0 and (self._flush_task is None or self._flush_task.done()):
            self._flush_task = asyncio.create_task(self._flush_loop(), name="state-broadcast-flush")

    async def stop(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping broadcast flush task: %s", e)
        self._flush_task = None
        self.flush()
        for subscription in list(self._subscribers):
            subscription.close()
        self._subscribers.clear()

    async def _flush_loop(self) -> None:
        try:
            while True:
                await self._dirty.wait()
                await asyncio.sleep(self._coalesce_window_s)
                self._dirty.clear()
                try:
                    self.flush()
                except Exception as exc:
                    logger.exception("Broadcast flush failed: %s", exc)
        except asyncio.CancelledError:
            raise

    def _full_update(self, *, resync: bool = False) -> StateUpdate:
        return StateUpdate(type="snapshot", revision=self._snapshot.revision, data=self._state, resync=resync)

    def _deliver(self, subscription: Subscription, update: StateUpdate) -> None:
        try:
            subscription.offer(update)
        except SubscriberBackpressure as exc:
            logger.warning("%s; resetting to full snapshot", exc)
            subscription.reset(self._full_update(resync=True))


__all__ = ["StateBroadcaster", "Subscription", "diff_states"]
