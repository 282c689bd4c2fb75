"""REST polling used while the event socket is unavailable."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import List, Optional

from .backend.http_client import NinaHttpClient
from .config import Settings
from .errors import TransportError
from .events import NormalizedEvent
from .normalizer import EventNormalizer
from .state import DeviceKind

logger = logging.getLogger(__name__)

EventSink = Callable[[NormalizedEvent], Awaitable[None]]


class PollingFallback:
    """
    Periodically reads equipment info and synthesizes equipment events.

    Polling only runs once the stream has been down for ``activation_delay_s``
    and stops as soon as it recovers. Synthesized events go through the same
    sink as streamed ones, so the state machine cannot tell them apart apart
    from their ``poll`` source tag.
    """

    def __init__(
        self,
        settings: Settings,
        client: NinaHttpClient,
        normalizer: EventNormalizer,
        sink: EventSink,
        *,
        stream_down_since: Callable[[], Optional[float]],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._client = client
        self._normalizer = normalizer
        self._sink = sink
        self._stream_down_since = stream_down_since
        self._clock = clock
        self._task: Optional[asyncio.Task[None]] = None
        self.devices = self._resolve_devices(settings.polling.devices)
        self.polls = 0
        self.failures = 0
        self.last_poll_at: Optional[float] = None

    @staticmethod
    def _resolve_devices(names: List[str]) -> List[DeviceKind]:
        devices: List[DeviceKind] = []
        for name in names:
            try:
                devices.append(DeviceKind(name))
            except ValueError:
                logger.warning("Ignoring unknown device %r in polling configuration", name)
        return devices

    @property
    def active(self) -> bool:
        down_since = self._stream_down_since()
        if down_since is None:
            return False
        return self._clock() - down_since >= self.settings.polling.activation_delay_s

    async def start(self) -> None:
        if not self.settings.polling.enabled:
            logger.info("Polling fallback disabled")
            return
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="nina-polling-fallback")
        logger.info("Polling fallback armed (interval=%.1fs)", self.settings.polling.interval_s)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping polling fallback: %s", e)
        self._task = None

    async def _loop(self) -> None:
        was_active = False
        try:
            while True:
                await asyncio.sleep(self.settings.polling.interval_s)
                active = self.active
                if active != was_active:
                    logger.info("Polling fallback %s", "engaged" if active else "idle, stream recovered")
                    was_active = active
                if not active:
                    continue
                try:
                    await self.poll_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.exception("Polling cycle failed: %s", exc)
        except asyncio.CancelledError:
            raise

    async def poll_once(self) -> int:
        """Run one polling cycle; returns the number of events synthesized."""

        emitted = 0
        for device in self.devices:
            try:
                info = await self._client.get_equipment_info(device)
            except TransportError as exc:
                self.failures += 1
                logger.warning("Polling %s info failed: %s", device.value, exc)
                continue
            await self._sink(self._normalizer.normalize_device_info(device, info))
            emitted += 1

        if self.settings.polling.poll_guider:
            try:
                graph = await self._client.get_guider_graph()
            except TransportError as exc:
                self.failures += 1
                logger.warning("Polling guider graph failed: %s", exc)
            else:
                for event in self._normalizer.normalize_guide_steps(graph):
                    await self._sink(event)
                    emitted += 1

        self.polls += 1
        self.last_poll_at = self._clock()
        logger.debug("Polling cycle %d synthesized %d events", self.polls, emitted)
        return emitted
