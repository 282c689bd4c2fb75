"""Tests for snapshot fan-out to UI subscribers."""
from __future__ import annotations

import asyncio

import pytest

from observatory.app.broadcast import StateBroadcaster, diff_states
from observatory.app.events import EquipmentConnection, GuideStep
from observatory.app.session_machine import SessionStateMachine
from observatory.app.state import DeviceKind, GuideStepRecord, StateUpdate

from factories import ms


def _camera(machine, snapshot, offset_s, temperature):
    event = EquipmentConnection(
        timestamp=ms(offset_s), device=DeviceKind.CAMERA, connected=True, fields={"temperature": temperature}
    )
    return machine.apply(event, snapshot).snapshot


# ===================================================================
# Diffing
# ===================================================================


class TestDiffStates:
    """Changed-path computation between serialized snapshots."""

    def test_equipment_is_diffed_per_device(self):
        old = {"equipment": {"camera": {"connected": False}, "mount": {"connected": False}}, "revision": 1}
        new = {"equipment": {"camera": {"connected": True}, "mount": {"connected": False}}, "revision": 2}
        assert diff_states(old, new) == {"equipment.camera": {"connected": True}, "revision": 2}

    def test_identical_states_have_no_diff(self):
        state = {"equipment": {"camera": {"connected": False}}, "activeTarget": None}
        assert diff_states(state, dict(state)) == {}

    def test_new_key_is_reported(self):
        assert diff_states({}, {"activeTarget": None}) == {"activeTarget": None}


# ===================================================================
# Subscriptions
# ===================================================================


class TestSubscriptions:
    """First contact, diffs, coalescing and backpressure."""

    @pytest.mark.asyncio
    async def test_first_message_is_full_snapshot(self):
        """A new subscriber never observes a partial state."""
        machine = SessionStateMachine()
        broadcaster = StateBroadcaster(machine.initial_snapshot(), coalesce_window_s=0)
        subscription = broadcaster.subscribe()
        first = subscription.get_nowait()
        assert first.type == "snapshot"
        assert set(first.data["equipment"]) == {kind.value for kind in DeviceKind}
        assert all("connected" in entry for entry in first.data["equipment"].values())

    @pytest.mark.asyncio
    async def test_late_subscriber_sees_current_state(self):
        machine = SessionStateMachine()
        broadcaster = StateBroadcaster(machine.initial_snapshot(), coalesce_window_s=0)
        broadcaster.publish(_camera(machine, broadcaster.get_snapshot(), 0, -10.0), ["EquipmentConnection"])
        first = broadcaster.subscribe().get_nowait()
        assert first.data["equipment"]["camera"]["temperature"] == -10.0
        assert broadcaster.get_state()["equipment"]["camera"]["temperature"] == -10.0

    @pytest.mark.asyncio
    async def test_publish_pushes_diff(self):
        machine = SessionStateMachine()
        broadcaster = StateBroadcaster(machine.initial_snapshot(), coalesce_window_s=0)
        subscription = broadcaster.subscribe()
        subscription.get_nowait()

        broadcaster.publish(_camera(machine, broadcaster.get_snapshot(), 0, -10.0), ["EquipmentConnection"])
        update = subscription.get_nowait()
        assert update.type == "diff"
        assert update.revision == 1
        assert update.data["equipment.camera"]["temperature"] == -10.0
        assert "equipment.mount" not in update.data
        assert update.reasons == ["EquipmentConnection"]

    @pytest.mark.asyncio
    async def test_unchanged_publish_is_not_pushed(self):
        machine = SessionStateMachine()
        broadcaster = StateBroadcaster(machine.initial_snapshot(), coalesce_window_s=0)
        subscription = broadcaster.subscribe()
        subscription.get_nowait()
        broadcaster.publish(broadcaster.get_snapshot())
        assert subscription.pending == 0
        assert broadcaster.pushes == 0

    @pytest.mark.asyncio
    async def test_bursts_are_coalesced_in_order(self):
        """Rapid guide steps land in one push with reasons in arrival order."""
        machine = SessionStateMachine()
        broadcaster = StateBroadcaster(machine.initial_snapshot(), coalesce_window_s=0.05)
        await broadcaster.start()
        subscription = broadcaster.subscribe()
        assert (await subscription.get()).type == "snapshot"

        snapshot = broadcaster.get_snapshot()
        for step_id in range(1, 6):
            record = GuideStepRecord(timestamp=ms(step_id), step_id=step_id, ra_distance=0.1, dec_distance=0.1)
            snapshot = machine.apply(GuideStep(timestamp=ms(step_id), step=record), snapshot).snapshot
            broadcaster.publish(snapshot, [f"GuideStep:{step_id}"])

        update = await asyncio.wait_for(subscription.get(), timeout=1.0)
        assert update.type == "diff"
        assert update.reasons == [f"GuideStep:{i}" for i in range(1, 6)]
        assert [step["id"] for step in update.data["guideStats"]] == [1, 2, 3, 4, 5]
        assert broadcaster.pushes == 1
        await broadcaster.stop()

    @pytest.mark.asyncio
    async def test_slow_subscriber_is_resynced(self):
        """A full queue is replaced by one fresh snapshot instead of blocking others."""
        machine = SessionStateMachine()
        broadcaster = StateBroadcaster(machine.initial_snapshot(), coalesce_window_s=0, queue_size=2)
        slow = broadcaster.subscribe()
        fast = broadcaster.subscribe()

        snapshot = broadcaster.get_snapshot()
        for offset in range(1, 5):
            snapshot = _camera(machine, snapshot, offset, -float(offset))
            broadcaster.publish(snapshot, ["EquipmentConnection"])
            while fast.pending:
                fast.get_nowait()

        assert slow.resyncs >= 1
        messages = []
        while slow.pending:
            messages.append(slow.get_nowait())
        resync = [m for m in messages if m.resync]
        assert resync and resync[0].type == "snapshot"
        latest = messages[-1]
        if latest.type == "snapshot":
            assert latest.data["equipment"]["camera"]["temperature"] == -4.0
        else:
            assert latest.data["equipment.camera"]["temperature"] == -4.0
        assert fast.resyncs == 0

    @pytest.mark.asyncio
    async def test_heartbeat_reaches_subscribers(self):
        broadcaster = StateBroadcaster(SessionStateMachine().initial_snapshot(), coalesce_window_s=0)
        subscription = broadcaster.subscribe()
        subscription.get_nowait()
        broadcaster.send(StateUpdate(type="heartbeat", revision=0, data={}))
        assert subscription.get_nowait().to_payload() == {"type": "heartbeat", "revision": 0, "data": {}}

    @pytest.mark.asyncio
    async def test_stop_ends_iteration(self):
        broadcaster = StateBroadcaster(SessionStateMachine().initial_snapshot(), coalesce_window_s=0)
        subscription = broadcaster.subscribe()
        await broadcaster.stop()
        received = [update async for update in subscription]
        assert received == []
        assert broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        broadcaster = StateBroadcaster(SessionStateMachine().initial_snapshot(), coalesce_window_s=0)
        subscription = broadcaster.subscribe()
        broadcaster.unsubscribe(subscription)
        assert broadcaster.subscriber_count == 0
        assert subscription.closed
