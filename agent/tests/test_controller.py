"""Tests for the two-timer idle controller."""

from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingTrigger
from idlestop.controller import IdleController
from idlestop.models import IdleOptions, IdleState, StopOutcome, Transition, TransitionKind
from idlestop.registry import ConnectionRegistry


def _wire(trigger: RecordingTrigger, **overrides) -> tuple[ConnectionRegistry, IdleController]:
    values = {"grace": 0.1, "first_viewer_grace": 0.0}
    values.update(overrides)
    registry = ConnectionRegistry()
    controller = IdleController(IdleOptions(**values), trigger, count=lambda: registry.count)
    registry.add_listener(controller.on_transition)
    return registry, controller


class TestPostDisconnectTimer:
    @pytest.mark.anyio
    async def test_last_disconnect_arms_timer_and_stops(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger)
        registry.track_identity("p1")
        assert controller.state is IdleState.VIEWERS_PRESENT
        registry.untrack_identity("p1")
        assert controller.post_disconnect_armed
        await asyncio.sleep(0.2)
        assert trigger.calls == 1
        assert controller.state is IdleState.STOPPING
        assert not controller.post_disconnect_armed

    @pytest.mark.anyio
    async def test_reconnect_within_grace_cancels(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger)
        registry.track_identity("p1")
        registry.untrack_identity("p1")
        await asyncio.sleep(0.05)
        registry.track_identity("p2")
        assert not controller.post_disconnect_armed
        await asyncio.sleep(0.15)
        assert trigger.calls == 0
        assert registry.count == 1
        assert controller.state is IdleState.VIEWERS_PRESENT

    @pytest.mark.anyio
    async def test_nonzero_disconnect_does_not_arm(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger)
        registry.track_identity("p1")
        registry.track_identity("p2")
        registry.untrack_identity("p1")
        assert not controller.post_disconnect_armed

    @pytest.mark.anyio
    async def test_rearming_replaces_timer(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger, grace=0.15)
        registry.track_identity("p1")
        registry.untrack_identity("p1")
        await asyncio.sleep(0.1)
        registry.track_identity("p1")
        registry.untrack_identity("p1")
        await asyncio.sleep(0.1)
        assert trigger.calls == 0
        await asyncio.sleep(0.15)
        assert trigger.calls == 1

    @pytest.mark.anyio
    async def test_expiry_rechecks_count(self, trigger: RecordingTrigger) -> None:
        live = {"count": 0}
        controller = IdleController(
            IdleOptions(grace=0.05, first_viewer_grace=0), trigger, count=lambda: live["count"]
        )
        controller.on_transition(Transition(kind=TransitionKind.DISCONNECT, count=0))
        live["count"] = 1
        await asyncio.sleep(0.15)
        assert trigger.calls == 0
        assert not controller.post_disconnect_armed


class TestFirstViewerTimer:
    @pytest.mark.anyio
    async def test_fires_when_nobody_connects(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger, first_viewer_grace=0.1)
        controller.on_attached()
        assert controller.first_viewer_armed
        await asyncio.sleep(0.2)
        assert trigger.calls == 1
        assert controller.state is IdleState.STOPPING

    @pytest.mark.anyio
    async def test_connect_before_expiry_cancels_permanently(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger, first_viewer_grace=0.1, grace=10)
        controller.on_attached()
        await asyncio.sleep(0.05)
        registry.track_identity("p1")
        registry.untrack_identity("p1")
        assert not controller.first_viewer_armed
        await asyncio.sleep(0.15)
        assert trigger.calls == 0
        controller.close()

    @pytest.mark.anyio
    async def test_not_armed_when_viewers_already_present(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger, first_viewer_grace=0.1)
        registry.track_identity("p1")
        controller.on_attached()
        assert not controller.first_viewer_armed

    @pytest.mark.anyio
    async def test_startup_delay(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger, first_viewer_grace=0.1, first_viewer_delay=0.1)
        controller.on_attached()
        await asyncio.sleep(0.05)
        assert not controller.first_viewer_armed
        await asyncio.sleep(0.1)
        assert controller.first_viewer_armed
        await asyncio.sleep(0.15)
        assert trigger.calls == 1

    @pytest.mark.anyio
    async def test_viewer_during_delay_prevents_arming(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger, first_viewer_grace=0.05, first_viewer_delay=0.05, grace=10)
        controller.on_attached()
        registry.track_identity("p1")
        registry.untrack_identity("p1")
        await asyncio.sleep(0.15)
        assert not controller.first_viewer_armed
        assert trigger.calls == 0
        controller.close()

    @pytest.mark.anyio
    async def test_zero_grace_disables(self, trigger: RecordingTrigger) -> None:
        _, controller = _wire(trigger, first_viewer_grace=0)
        controller.on_attached()
        assert not controller.first_viewer_armed


class TestStopOutcomes:
    @pytest.mark.anyio
    async def test_failed_stop_returns_to_no_viewers(self) -> None:
        trigger = RecordingTrigger(StopOutcome.FAILED)
        registry, controller = _wire(trigger, grace=0.05)
        registry.track_identity("p1")
        registry.untrack_identity("p1")
        await asyncio.sleep(0.1)
        await controller.stop_task
        assert trigger.calls == 1
        assert controller.state is IdleState.NO_VIEWERS

    @pytest.mark.anyio
    async def test_trigger_exception_is_absorbed(self) -> None:
        class ExplodingTrigger(RecordingTrigger):
            async def request_stop(self) -> StopOutcome:
                self.calls += 1
                raise RuntimeError("metadata exploded")

        trigger = ExplodingTrigger()
        registry, controller = _wire(trigger, grace=0.05)
        registry.track_identity("p1")
        registry.untrack_identity("p1")
        await asyncio.sleep(0.1)
        assert await controller.stop_task is StopOutcome.FAILED
        assert controller.state is IdleState.NO_VIEWERS

    @pytest.mark.anyio
    async def test_single_stop_in_flight(self) -> None:
        release = asyncio.Event()

        class SlowTrigger(RecordingTrigger):
            async def request_stop(self) -> StopOutcome:
                self.calls += 1
                await release.wait()
                return StopOutcome.STOPPED

        trigger = SlowTrigger()
        registry, controller = _wire(trigger, grace=0.02)
        registry.track_identity("p1")
        registry.untrack_identity("p1")
        await asyncio.sleep(0.05)
        controller.on_transition(Transition(kind=TransitionKind.DISCONNECT, count=0))
        await asyncio.sleep(0.05)
        release.set()
        await controller.stop_task
        assert trigger.calls == 1

    @pytest.mark.anyio
    async def test_close_disarms_everything(self, trigger: RecordingTrigger) -> None:
        registry, controller = _wire(trigger, first_viewer_grace=0.05, grace=0.05)
        controller.on_attached()
        controller.close()
        registry.track_identity("p1")
        registry.untrack_identity("p1")
        await asyncio.sleep(0.1)
        assert trigger.calls == 0
        assert not controller.first_viewer_armed
        assert not controller.post_disconnect_armed
