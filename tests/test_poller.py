"""Tests for the polling fallback."""
from __future__ import annotations

import asyncio
from typing import List, Optional

import httpx
import pytest

from observatory.app.backend.http_client import NinaHttpClient
from observatory.app.events import EquipmentConnection, EventSource, GuideStep, NormalizedEvent
from observatory.app.poller import PollingFallback
from observatory.app.state import DeviceKind

from factories import envelope


def nina_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.endswith("/equipment/camera/info"):
        return httpx.Response(200, json=envelope({"Connected": True, "Temperature": -10.0}))
    if path.endswith("/equipment/guider/info"):
        return httpx.Response(200, json=envelope({"Connected": True, "State": "Guiding"}))
    if path.endswith("/equipment/guider/graph"):
        steps = [{"Id": 1, "RADistanceRaw": 0.2, "DECDistanceRaw": 0.1}]
        return httpx.Response(200, json=envelope({"GuideSteps": steps}))
    return httpx.Response(404)


class Harness:
    def __init__(self, settings, normalizer, handler=nina_handler, down_since: Optional[float] = 0.0):
        self.events: List[NormalizedEvent] = []
        self.down_since = down_since
        self.now = 100.0
        self.client = NinaHttpClient(settings, transport=httpx.MockTransport(handler))
        self.poller = PollingFallback(
            settings,
            self.client,
            normalizer,
            self.sink,
            stream_down_since=lambda: self.down_since,
            clock=lambda: self.now,
        )

    async def sink(self, event: NormalizedEvent) -> None:
        self.events.append(event)


class TestPollingFallback:
    """Activation rules and event synthesis."""

    @pytest.mark.asyncio
    async def test_poll_once_synthesizes_equipment_and_guide_steps(self, settings, normalizer):
        harness = Harness(settings, normalizer)
        emitted = await harness.poller.poll_once()
        await harness.client.aclose()

        assert emitted == 3
        camera, guider, step = harness.events
        assert isinstance(camera, EquipmentConnection) and camera.device is DeviceKind.CAMERA
        assert camera.fields["temperature"] == -10.0
        assert camera.source is EventSource.POLL
        assert isinstance(guider, EquipmentConnection) and guider.fields["state"] == "Guiding"
        assert isinstance(step, GuideStep) and step.step.step_id == 1
        assert harness.poller.polls == 1

    @pytest.mark.asyncio
    async def test_failed_device_does_not_stop_cycle(self, settings, normalizer):
        def handler(request: httpx.Request) -> httpx.Response:
            if "camera" in request.url.path:
                return httpx.Response(503)
            return nina_handler(request)

        harness = Harness(settings, normalizer, handler=handler)
        emitted = await harness.poller.poll_once()
        await harness.client.aclose()

        assert emitted == 2
        assert harness.poller.failures == 1

    def test_activation_requires_sustained_outage(self, settings, normalizer):
        settings = settings.model_copy(
            update={"polling": settings.polling.model_copy(update={"activation_delay_s": 15.0})}
        )
        harness = Harness(settings, normalizer, down_since=None)
        assert not harness.poller.active
        harness.down_since = 90.0
        assert not harness.poller.active
        harness.down_since = 80.0
        assert harness.poller.active

    def test_unknown_devices_are_skipped(self, settings, normalizer):
        settings = settings.model_copy(
            update={"polling": settings.polling.model_copy(update={"devices": ["camera", "telescope"]})}
        )
        harness = Harness(settings, normalizer)
        assert harness.poller.devices == [DeviceKind.CAMERA]

    @pytest.mark.asyncio
    async def test_loop_polls_only_while_stream_is_down(self, settings, normalizer):
        harness = Harness(settings, normalizer, down_since=None)
        await harness.poller.start()
        await asyncio.sleep(0.05)
        assert harness.events == []

        harness.down_since = 0.0

        async def _wait() -> None:
            while not harness.events:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_wait(), timeout=1.0)
        await harness.poller.stop()
        await harness.client.aclose()
        assert harness.poller.polls >= 1

    @pytest.mark.asyncio
    async def test_disabled_poller_does_not_start(self, settings, normalizer):
        settings = settings.model_copy(update={"polling": settings.polling.model_copy(update={"enabled": False})})
        harness = Harness(settings, normalizer)
        await harness.poller.start()
        await asyncio.sleep(0.03)
        assert harness.events == []
        await harness.poller.stop()
        await harness.client.aclose()
