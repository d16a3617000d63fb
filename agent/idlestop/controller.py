"""Two-timer idle state machine that decides when to stop the host."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import structlog

from idlestop.models import IdleOptions, IdleState, StopOutcome, Transition, TransitionKind
from idlestop.shutdown import ShutdownTrigger

logger = structlog.get_logger("idlestop.controller")


class IdleController:
    """Owns the post-disconnect and first-viewer timers.

    The post-disconnect timer is armed each time the viewer count drops to
    zero. The first-viewer timer is armed once, after discovery attaches, and
    covers the case where nobody ever connects. Both are disarmed while any
    viewer is present and both re-check the count when they fire.
    """

    def __init__(
        self,
        options: IdleOptions,
        trigger: ShutdownTrigger,
        count: Callable[[], int],
        loop: asyncio.AbstractEventLoop | None = None,
        log: Any = None,
    ) -> None:
        self._options = options
        self._trigger = trigger
        self._count = count
        self._loop = loop or asyncio.get_running_loop()
        self._log = log or logger
        self._state = IdleState.NO_VIEWERS
        self._post_disconnect: asyncio.TimerHandle | None = None
        self._first_viewer: asyncio.TimerHandle | None = None
        self._first_viewer_delay: asyncio.TimerHandle | None = None
        self._viewer_seen = False
        self._stop_task: asyncio.Task | None = None
        self._closed = False

    @property
    def state(self) -> IdleState:
        return self._state

    @property
    def post_disconnect_armed(self) -> bool:
        return self._post_disconnect is not None

    @property
    def first_viewer_armed(self) -> bool:
        return self._first_viewer is not None

    @property
    def stop_task(self) -> asyncio.Task | None:
        return self._stop_task

    def on_transition(self, transition: Transition) -> None:
        """Registry listener: react to connect/disconnect transitions."""
        if self._closed:
            return
        if transition.kind is TransitionKind.CONNECT:
            self._on_connect()
        elif transition.count == 0:
            self._on_zero()

    def on_attached(self) -> None:
        """Discovery succeeded; start (or schedule) the first-viewer timer."""
        if self._closed or self._options.first_viewer_grace <= 0:
            return
        delay = self._options.first_viewer_delay
        if delay > 0:
            self._first_viewer_delay = self._loop.call_later(delay, self._start_first_viewer_timer)
            self._log.info("First-viewer timer scheduled", delay_s=delay)
        else:
            self._start_first_viewer_timer()

    def close(self) -> None:
        """Disarm every timer; later transitions are ignored."""
        self._closed = True
        self._cancel_post_disconnect()
        self._cancel_first_viewer(reason="closed")
        if self._first_viewer_delay is not None:
            self._first_viewer_delay.cancel()
            self._first_viewer_delay = None

    def _on_connect(self) -> None:
        self._viewer_seen = True
        self._state = IdleState.VIEWERS_PRESENT
        self._cancel_post_disconnect()
        self._cancel_first_viewer(reason="a viewer connected")
        if self._first_viewer_delay is not None:
            self._first_viewer_delay.cancel()
            self._first_viewer_delay = None

    def _on_zero(self) -> None:
        if self._state is not IdleState.STOPPING:
            self._state = IdleState.NO_VIEWERS
        self._cancel_post_disconnect()
        grace = self._options.grace
        self._post_disconnect = self._loop.call_later(grace, self._post_disconnect_expired)
        self._log.info("No viewers; stop timer armed", grace_s=grace)

    def _start_first_viewer_timer(self) -> None:
        self._first_viewer_delay = None
        if self._closed or self._viewer_seen or self._count() > 0:
            return
        grace = self._options.first_viewer_grace
        if self._first_viewer is not None:
            self._first_viewer.cancel()
        self._first_viewer = self._loop.call_later(grace, self._first_viewer_expired)
        self._log.info("First-viewer timer armed", grace_s=grace)

    def _cancel_post_disconnect(self) -> None:
        if self._post_disconnect is not None:
            self._post_disconnect.cancel()
            self._post_disconnect = None
            self._log.info("Stop timer cancelled")

    def _cancel_first_viewer(self, reason: str) -> None:
        if self._first_viewer is not None:
            self._first_viewer.cancel()
            self._first_viewer = None
            self._log.info("First-viewer timer cancelled", reason=reason)

    def _post_disconnect_expired(self) -> None:
        self._post_disconnect = None
        self._expire("post_disconnect")

    def _first_viewer_expired(self) -> None:
        self._first_viewer = None
        self._expire("first_viewer")

    def _expire(self, timer: str) -> None:
        count = self._count()
        if count > 0:
            self._log.info("Stop skipped; viewers present at expiry", timer=timer, count=count)
            return
        if self._stop_task is not None and not self._stop_task.done():
            self._log.info("Stop already in progress", timer=timer)
            return
        self._state = IdleState.STOPPING
        self._log.warning("Idle grace elapsed; requesting stop", timer=timer)
        self._stop_task = self._loop.create_task(self._run_stop())

    async def _run_stop(self) -> StopOutcome:
        try:
            outcome = await self._trigger.request_stop()
        except Exception:
            self._log.exception("Shutdown trigger failed unexpectedly")
            outcome = StopOutcome.FAILED
        if outcome is not StopOutcome.STOPPED and self._state is IdleState.STOPPING:
            self._state = IdleState.VIEWERS_PRESENT if self._count() > 0 else IdleState.NO_VIEWERS
        return outcome
