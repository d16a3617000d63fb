"""Heartbeat probing that removes viewers whose transport went silent."""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from idlestop.models import IdleOptions, Transition, TransitionKind
from idlestop.registry import ConnectionRegistry

logger = structlog.get_logger("idlestop.liveness")

HEARTBEAT_CLOSE_CODE = 4000
HEARTBEAT_CLOSE_REASON = "heartbeat timeout"


@dataclass
class LivenessState:
    """Probe bookkeeping for one viewer identity."""

    viewer_id: str
    protocol: Any
    missed: int = 0
    task: asyncio.Task | None = None
    on_pong: Callable[..., None] | None = None


class LivenessSupervisor:
    """Probes tracked viewers and force-disconnects the ones that stop answering.

    Two flavors are supported. Per-identity probing sends ``ping`` messages
    through a viewer's protocol object and counts unanswered probes against
    the miss budget. Bulk probing walks a socket server's client set and uses
    transport-level ping/pong with a single alive flag per client.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        options: IdleOptions,
        loop: asyncio.AbstractEventLoop | None = None,
        log: Any = None,
    ) -> None:
        self._registry = registry
        self._options = options
        self._loop = loop or asyncio.get_running_loop()
        self._log = log or logger
        self._viewers: dict[str, LivenessState] = {}
        self._alive: dict[int, bool] = {}
        self._servers: dict[int, asyncio.Task] = {}
        registry.add_listener(self._on_transition)

    @property
    def enabled(self) -> bool:
        return self._options.heartbeat_enabled

    def state_for(self, viewer_id: str) -> LivenessState | None:
        return self._viewers.get(viewer_id)

    def watch_viewer(self, viewer_id: str, protocol: Any) -> bool:
        """Start per-identity probing for a tracked viewer.

        Returns False when probing is disabled, the protocol cannot send
        messages, or the viewer is already being probed.
        """
        if not self.enabled or not viewer_id or viewer_id in self._viewers:
            return False
        if protocol is None or not callable(getattr(protocol, "send_message", None)):
            return False

        state = LivenessState(viewer_id=viewer_id, protocol=protocol)

        def on_pong(*_args: Any) -> None:
            state.missed = 0

        state.on_pong = on_pong
        on = getattr(protocol, "on", None)
        if callable(on):
            on("pong", on_pong)
        self._viewers[viewer_id] = state
        state.task = self._loop.create_task(self._probe_viewer(state))
        return True

    def watch_client(self, client: Any) -> None:
        """Give a socket-server client an alive flag refreshed by its pongs."""
        if not self.enabled:
            return
        self._alive[id(client)] = True
        on = getattr(client, "on", None)
        if callable(on):
            on("pong", lambda *_args: self._mark_alive(client))

    def watch_server(self, server: Any) -> bool:
        """Start bulk ping/pong probing of every client of ``server``."""
        if not self.enabled or id(server) in self._servers:
            return False
        self._servers[id(server)] = self._loop.create_task(self._probe_server(server))
        on = getattr(server, "on", None)
        if callable(on):
            on("close", lambda *_args: self.unwatch_server(server))
        return True

    def unwatch_server(self, server: Any) -> None:
        task = self._servers.pop(id(server), None)
        if task is not None:
            task.cancel()

    def close(self) -> None:
        """Cancel every probe task."""
        for viewer_id in list(self._viewers):
            self._stop_viewer(viewer_id)
        for task in self._servers.values():
            task.cancel()
        self._servers.clear()
        self._alive.clear()

    def _on_transition(self, transition: Transition) -> None:
        if transition.kind is not TransitionKind.DISCONNECT or transition.key is None:
            return
        if isinstance(transition.key, str):
            self._stop_viewer(transition.key)
        else:
            self._alive.pop(id(transition.key), None)

    def _stop_viewer(self, viewer_id: str) -> None:
        state = self._viewers.pop(viewer_id, None)
        if state is None:
            return
        if state.task is not None and state.task is not asyncio.current_task(self._loop):
            state.task.cancel()
        off = getattr(state.protocol, "off", None)
        if callable(off) and state.on_pong is not None:
            self._best_effort(off, "pong", state.on_pong)

    def _mark_alive(self, client: Any) -> None:
        if self._registry.is_tracked_handle(client):
            self._alive[id(client)] = True

    async def _probe_viewer(self, state: LivenessState) -> None:
        interval = self._options.heartbeat_interval
        budget = self._options.heartbeat_misses
        self._send_probe(state)
        while True:
            await asyncio.sleep(interval)
            if state.missed >= budget:
                self._log.warning(
                    "Heartbeat timeout; disconnecting viewer",
                    viewer_id=state.viewer_id,
                    missed=state.missed,
                )
                if not self._registry.untrack_identity(state.viewer_id):
                    self._stop_viewer(state.viewer_id)
                disconnect = getattr(state.protocol, "disconnect", None)
                if callable(disconnect):
                    self._best_effort(disconnect, HEARTBEAT_CLOSE_CODE, HEARTBEAT_CLOSE_REASON)
                return
            self._send_probe(state)

    def _send_probe(self, state: LivenessState) -> None:
        state.missed += 1
        self._best_effort(
            state.protocol.send_message,
            {"type": "ping", "time": int(time.time() * 1000)},
        )

    async def _probe_server(self, server: Any) -> None:
        while True:
            await asyncio.sleep(self._options.heartbeat_interval)
            clients = getattr(server, "clients", None)
            if not clients:
                continue
            for client in list(clients):
                if not self._registry.is_tracked_handle(client):
                    continue
                if not callable(getattr(client, "ping", None)):
                    continue
                if self._alive.get(id(client)) is False:
                    self._log.warning("Heartbeat timeout; terminating client")
                    terminate = getattr(client, "terminate", None) or getattr(client, "close", None)
                    if callable(terminate):
                        self._best_effort(terminate)
                    self._registry.untrack_by_handle(client)
                    continue
                self._alive[id(client)] = False
                self._best_effort(client.ping)

    def _best_effort(self, fn: Callable[..., Any], *args: Any) -> None:
        """Call a host transport method, scheduling it if it is a coroutine."""
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                self._loop.create_task(self._await_quietly(result))
        except Exception as exc:
            self._log.debug("Transport call failed", call=getattr(fn, "__name__", repr(fn)), error=str(exc))

    async def _await_quietly(self, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception as exc:
            self._log.debug("Transport call failed", error=str(exc))
