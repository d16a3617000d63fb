"""Shared fixtures and fake host objects for idle-stop tests."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

import pytest

from idlestop.models import StopOutcome
from idlestop.shutdown import ShutdownTrigger


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeEmitter:
    """Tiny event emitter with the ``on``/``off`` shape hosts commonly expose."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        if handler in self._handlers[event]:
            self._handlers[event].remove(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers[event]):
            handler(*args)

    def listener_count(self, event: str) -> int:
        return len(self._handlers[event])


class FakeProtocol(FakeEmitter):
    """Per-player message channel supporting ping messages."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[dict] = []
        self.disconnects: list[tuple[int, str]] = []

    def send_message(self, message: dict) -> None:
        self.sent.append(message)

    def disconnect(self, code: int, reason: str) -> None:
        self.disconnects.append((code, reason))


class FakePlayer:
    def __init__(self, player_id: str, protocol: FakeProtocol | None = None) -> None:
        self.player_id = player_id
        self.protocol = protocol


class FakePlayerRegistry(FakeEmitter):
    """Registry-style source keyed by player id."""

    def __init__(self, players: list[FakePlayer] | None = None) -> None:
        super().__init__()
        self.players = {p.player_id: p for p in players or []}

    def list_players(self) -> list[FakePlayer]:
        return list(self.players.values())

    def get(self, player_id: str) -> FakePlayer | None:
        return self.players.get(player_id)

    def add(self, player: FakePlayer) -> None:
        self.players[player.player_id] = player
        self.emit("added", player.player_id)

    def remove(self, player_id: str) -> None:
        self.players.pop(player_id, None)
        self.emit("removed", player_id)


class FakeClient(FakeEmitter):
    """Socket-server client with transport-level ping/pong."""

    def __init__(self, answers_pings: bool = True) -> None:
        super().__init__()
        self.answers_pings = answers_pings
        self.pings = 0
        self.terminated = False

    def ping(self) -> None:
        self.pings += 1
        if self.answers_pings:
            self.emit("pong")

    def terminate(self) -> None:
        self.terminated = True
        self.emit("close")


class FakeSocketServer(FakeEmitter):
    def __init__(self) -> None:
        super().__init__()
        self.clients: set[FakeClient] = set()

    def connect(self, client: FakeClient) -> None:
        self.clients.add(client)
        self.emit("connection", client)

    def drop(self, client: FakeClient) -> None:
        self.clients.discard(client)
        client.emit("close")


class FakeListener(FakeEmitter):
    """HTTP-server-like listener emitting ``upgrade`` events."""

    def __init__(self, port: int) -> None:
        super().__init__()
        self.port = port

    def address(self) -> tuple[str, int]:
        return ("0.0.0.0", self.port)

    def listen(self) -> None:
        pass


class FakeSocket(FakeEmitter):
    def __init__(self, local_port: int) -> None:
        super().__init__()
        self.local_port = local_port


class FakeRequest:
    def __init__(self, sock: FakeSocket) -> None:
        self.socket = sock


class Namespace:
    """Plain attribute bag standing in for host application objects."""

    def __init__(self, **attrs: Any) -> None:
        self.__dict__.update(attrs)


class RecordingTrigger(ShutdownTrigger):
    """Shutdown trigger that records calls and returns a fixed outcome."""

    def __init__(self, outcome: StopOutcome = StopOutcome.STOPPED) -> None:
        self.outcome = outcome
        self.calls = 0

    async def request_stop(self) -> StopOutcome:
        self.calls += 1
        return self.outcome


@pytest.fixture
def trigger() -> RecordingTrigger:
    return RecordingTrigger()
