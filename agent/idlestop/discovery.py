"""Locate a viewer connection-event source inside the host's object graph.

The host application's internals are not under our control, so discovery is
structural: each strategy checks for the presence of the operations it needs
and the first one that matches is wired to the connection registry.

Strategies, in priority order:

1. a player registry at ``root.player_registry`` (stable ids, add/remove
   notifications, optional per-player protocol for heartbeats);
2. a socket server at one of a few well-known attribute paths;
3. a socket server anywhere in the graph (bounded breadth-first search);
4. a raw network listener whose ``upgrade`` events are counted as viewers;
5. conventionally named connect/disconnect events on the root itself.
"""

from __future__ import annotations

import asyncio
import inspect
import types
from collections import deque
from collections.abc import Iterable, Mapping, Sized
from typing import Any, Callable, Iterator, NamedTuple

import structlog

from idlestop.liveness import LivenessSupervisor
from idlestop.models import DiscoveryState, IdleOptions
from idlestop.registry import ConnectionRegistry

logger = structlog.get_logger("idlestop.discovery")

EXPLICIT_SERVER_PATHS: tuple[tuple[str, ...], ...] = (
    ("player_server", "wss"),
    ("players_wss",),
    ("wss_players",),
    ("wss",),
)

NAMED_EVENTS: tuple[tuple[str, str], ...] = (
    ("playerConnected", "playerDisconnected"),
    ("wsPlayerConnected", "wsPlayerDisconnected"),
)

_SCALARS = (str, bytes, bytearray, int, float, complex, bool)


class Found(NamedTuple):
    obj: Any
    path: str


def _has_method(obj: Any, name: str) -> bool:
    try:
        return callable(getattr(obj, name, None))
    except Exception:
        return False


def is_registry_source(obj: Any) -> bool:
    """Player registry: ``list_players()`` plus ``on(event, handler)``."""
    return obj is not None and _has_method(obj, "on") and _has_method(obj, "list_players")


def is_socket_server(obj: Any) -> bool:
    """Socket server: ``on(event, handler)`` and a sized, iterable ``clients``."""
    if obj is None or not _has_method(obj, "on"):
        return False
    try:
        clients = getattr(obj, "clients", None)
    except Exception:
        return False
    return (
        isinstance(clients, Sized)
        and isinstance(clients, Iterable)
        and not isinstance(clients, (str, bytes))
    )


def is_network_listener(obj: Any) -> bool:
    """Network listener: ``on``, ``address`` and ``listen`` operations."""
    return (
        obj is not None
        and _has_method(obj, "on")
        and _has_method(obj, "address")
        and _has_method(obj, "listen")
    )


def _traversable(value: Any) -> bool:
    if value is None or isinstance(value, _SCALARS):
        return False
    if inspect.isroutine(value) or isinstance(value, (type, types.ModuleType)):
        return False
    return True


def _children(obj: Any) -> Iterator[tuple[str, Any]]:
    if isinstance(obj, Mapping):
        for key, value in list(obj.items()):
            yield f"[{key!r}]", value
        return
    if isinstance(obj, (list, tuple, set, frozenset, deque)):
        for index, value in enumerate(list(obj)):
            yield f"[{index}]", value
        return
    try:
        attrs = dict(vars(obj))
    except TypeError:
        attrs = {}
    for name in getattr(type(obj), "__slots__", ()):
        if name not in attrs and hasattr(obj, name):
            attrs[name] = getattr(obj, name)
    for name, value in attrs.items():
        yield f".{name}", value


def deep_find(root: Any, predicate: Callable[[Any], bool], max_depth: int = 12) -> Found | None:
    """Breadth-first search for the first object satisfying ``predicate``.

    Every object is visited at most once (by identity) and nothing deeper
    than ``max_depth`` links from the root is inspected.
    """
    seen: set[int] = set()
    queue: deque[tuple[Any, str, int]] = deque([(root, "root", 0)])
    while queue:
        obj, path, depth = queue.popleft()
        if not _traversable(obj) or id(obj) in seen:
            continue
        seen.add(id(obj))
        try:
            if predicate(obj):
                return Found(obj, path)
        except Exception:
            pass
        if depth >= max_depth:
            continue
        try:
            for suffix, child in _children(obj):
                if _traversable(child):
                    queue.append((child, f"{path}{suffix}", depth + 1))
        except Exception as exc:
            logger.debug("Skipping unreadable object", path=path, error=str(exc))
    return None


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    try:
        return getattr(obj, name, None)
    except Exception:
        return None


def _port_of(address: Any) -> int | None:
    if isinstance(address, int):
        return address
    if isinstance(address, (tuple, list)) and len(address) >= 2:
        return address[1]
    if isinstance(address, Mapping):
        return address.get("port")
    return _get(address, "port")


class DiscoveryEngine:
    """Retries the discovery strategies until one attaches or time runs out.

    Discovery is one-shot per process: after the first success the engine
    stops for good, and after the timeout it gives up for good.
    """

    def __init__(
        self,
        root: Any,
        registry: ConnectionRegistry,
        supervisor: LivenessSupervisor,
        options: IdleOptions,
        on_attached: Callable[[], None] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        log: Any = None,
    ) -> None:
        self._root = root
        self._registry = registry
        self._supervisor = supervisor
        self._options = options
        self._on_attached = on_attached
        self._loop = loop or asyncio.get_running_loop()
        self._log = log or logger
        self._state = DiscoveryState.PENDING
        self._attached_to: str | None = None
        self._task: asyncio.Task | None = None
        self._stranded: dict[int, Any] = {}

    @property
    def state(self) -> DiscoveryState:
        return self._state

    @property
    def attached_to(self) -> str | None:
        return self._attached_to

    def start(self) -> asyncio.Task:
        """Start the retry loop (idempotent)."""
        if self._task is None:
            self._task = self._loop.create_task(self._run())
        return self._task

    def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        started = self._loop.time()
        timeout = self._options.attach_timeout
        while True:
            await asyncio.sleep(self._options.attach_interval)
            if self.try_attach_once():
                self._attached()
                return
            if timeout > 0 and self._loop.time() - started > timeout:
                self._state = DiscoveryState.GAVE_UP
                self._log.warning(
                    "Could not find viewer connections to hook; continuing without idle stop",
                    timeout_s=timeout,
                )
                return

    def try_attach_once(self) -> bool:
        """Run every strategy once, in priority order; True on first attach.

        A strategy that raises is logged and skipped so the ones after it
        still get their turn this round.
        """
        if self._state is DiscoveryState.ATTACHED:
            return True
        strategies = (
            self._attach_player_registry,
            self._attach_explicit_server,
            self._attach_scanned_server,
            self._attach_network_listener,
            self._attach_named_events,
        )
        for strategy in strategies:
            try:
                if strategy():
                    return True
            except Exception:
                self._log.exception("Discovery strategy failed", strategy=strategy.__name__)
        return False

    def _attached(self) -> None:
        self._state = DiscoveryState.ATTACHED
        self._log.info("Viewer idle stop wired", source=self._attached_to)
        if self._options.heartbeat_enabled:
            self._log.info(
                "Heartbeat enabled",
                interval_s=self._options.heartbeat_interval,
                misses=self._options.heartbeat_misses,
            )
        if self._on_attached is not None:
            self._on_attached()

    def _guarded(self, fn: Callable[..., Any]) -> Callable[..., None]:
        """Wrap a host event handler so nothing raises back into the host."""

        def handler(*args: Any) -> None:
            try:
                fn(*args)
            except Exception:
                self._log.exception("Viewer event handler failed")

        return handler

    def _subscribe(self, source: Any, subscriptions: list[tuple[str, Callable[..., Any]]]) -> None:
        """Subscribe every handler on ``source``, or none of them.

        When a later ``on`` raises, the handlers already added are removed
        again and the error propagates.
        """
        done: list[tuple[str, Callable[..., Any]]] = []
        try:
            for event, handler in subscriptions:
                source.on(event, handler)
                done.append((event, handler))
        except Exception:
            self._roll_back(source, done)
            raise

    def _roll_back(self, source: Any, subscriptions: list[tuple[str, Callable[..., Any]]]) -> None:
        if not subscriptions:
            return
        if not _has_method(source, "off"):
            # handlers stay behind; never subscribe to this source again
            self._stranded[id(source)] = source
            return
        for event, handler in subscriptions:
            try:
                source.off(event, handler)
            except Exception as exc:
                self._stranded[id(source)] = source
                self._log.debug("Unsubscribe failed", event=event, error=str(exc))

    def _usable(self, source: Any) -> bool:
        return id(source) not in self._stranded

    # 1) player registry

    def _attach_player_registry(self) -> bool:
        source = _get(self._root, "player_registry")
        if not is_registry_source(source) or not self._usable(source):
            return False
        players = source.list_players()
        existing: list[Any] = []
        if isinstance(players, Iterable) and not isinstance(players, (str, bytes, Mapping)):
            existing = list(players)

        def on_added(player_id: str, *_args: Any) -> None:
            if _has_method(source, "get"):
                player = source.get(player_id)
                if player is not None:
                    self._track_player(player)
                    return
            self._registry.track_identity(player_id)

        self._subscribe(
            source,
            [
                ("added", self._guarded(on_added)),
                ("removed", self._guarded(lambda player_id, *_args: self._registry.untrack_identity(player_id))),
            ],
        )
        for player in existing:
            self._track_player(player)
        self._attached_to = "player registry (root.player_registry)"
        self._log.info("Attached to player registry", count=self._registry.count)
        return True

    def _track_player(self, player: Any) -> None:
        player_id = _get(player, "player_id")
        if not player_id:
            return
        self._registry.track_identity(player_id)
        self._supervisor.watch_viewer(player_id, _get(player, "protocol"))

    # 2) and 3) socket servers

    def _is_usable_server(self, obj: Any) -> bool:
        return is_socket_server(obj) and self._usable(obj)

    def _attach_explicit_server(self) -> bool:
        for path in EXPLICIT_SERVER_PATHS:
            obj = self._root
            for name in path:
                obj = _get(obj, name)
                if obj is None:
                    break
            if self._is_usable_server(obj):
                return self._attach_socket_server(obj, "root." + ".".join(path))
        return False

    def _attach_scanned_server(self) -> bool:
        found = deep_find(self._root, self._is_usable_server, self._options.max_depth)
        if found is None:
            return False
        return self._attach_socket_server(found.obj, found.path)

    def _attach_socket_server(self, server: Any, path: str) -> bool:
        def track(client: Any, *_args: Any) -> None:
            if not _has_method(client, "on"):
                return
            if not self._registry.track_by_handle(client):
                return
            self._supervisor.watch_client(client)
            cleanup = self._guarded(lambda *_a: self._registry.untrack_by_handle(client))
            client.on("close", cleanup)
            client.on("error", cleanup)

        clients = list(server.clients)
        subscriptions = [("connection", self._guarded(track))]
        self._subscribe(server, subscriptions)
        try:
            self._supervisor.watch_server(server)
        except Exception:
            self._roll_back(server, subscriptions)
            raise
        for client in clients:
            track(client)
        self._attached_to = f"socket server ({path})"
        self._log.info("Attached to player socket server", path=path, count=self._registry.count)
        return True

    # 4) network listener

    def _attach_network_listener(self) -> bool:
        found = deep_find(self._root, is_network_listener, self._options.max_depth)
        if found is None:
            return False
        listener = found.obj
        player_port = self._options.player_port

        def on_upgrade(request: Any, sock: Any = None, *_args: Any) -> None:
            if player_port and self._local_port(request, listener) != player_port:
                return
            conn = sock if sock is not None else request
            if not self._registry.track_by_handle(conn):
                return
            if _has_method(conn, "on"):
                cleanup = self._guarded(lambda *_a: self._registry.untrack_by_handle(conn))
                conn.on("close", cleanup)
                conn.on("error", cleanup)

        listener.on("upgrade", self._guarded(on_upgrade))
        bound = self._listener_port(listener)
        self._attached_to = f"upgrade listener ({found.path})"
        self._log.info(
            "Attached to HTTP upgrade listener",
            path=found.path,
            port=bound,
            port_filter=player_port,
        )
        return True

    def _local_port(self, request: Any, listener: Any) -> int | None:
        sock = _get(request, "socket")
        port = _get(sock, "local_port")
        if port is None and _has_method(sock, "getsockname"):
            try:
                port = _port_of(sock.getsockname())
            except OSError:
                port = None
        if port is None:
            port = self._listener_port(listener)
        return port

    def _listener_port(self, listener: Any) -> int | None:
        try:
            return _port_of(listener.address())
        except Exception:
            return None

    # 5) named events

    def _attach_named_events(self) -> bool:
        if not _has_method(self._root, "on") or not self._usable(self._root):
            return False
        attached = False
        for connect_event, disconnect_event in NAMED_EVENTS:
            try:
                self._subscribe(
                    self._root,
                    [
                        (connect_event, self._guarded(self._named_connect)),
                        (disconnect_event, self._guarded(self._named_disconnect)),
                    ],
                )
                attached = True
            except Exception as exc:
                self._log.debug("Named event subscription failed", event=connect_event, error=str(exc))
        if attached:
            self._attached_to = "named server events (root.on)"
            self._log.info("Attached to server events (may be inactive)")
        return attached

    def _named_connect(self, *args: Any) -> None:
        key = args[0] if args else None
        if isinstance(key, str):
            self._registry.track_identity(key)
        elif key is not None:
            self._registry.track_by_handle(key)
        else:
            self._registry.track_anonymous()

    def _named_disconnect(self, *args: Any) -> None:
        key = args[0] if args else None
        if isinstance(key, str):
            self._registry.untrack_identity(key)
        elif key is not None:
            self._registry.untrack_by_handle(key)
        else:
            self._registry.untrack_anonymous()
