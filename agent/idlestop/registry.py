"""Authoritative live-viewer count, deduplicated by identity or transport handle."""

from __future__ import annotations

from typing import Any, Callable

import structlog

from idlestop.models import Transition, TransitionKind

logger = structlog.get_logger("idlestop.registry")

Listener = Callable[[Transition], None]


class ConnectionRegistry:
    """Tracks connected viewers and reports count transitions to listeners.

    A viewer is keyed either by a stable identifier string or by the identity
    of its transport object. Tracking something already tracked and
    untracking something unknown are both no-ops, so duplicated or stray
    host events never skew the count.
    """

    def __init__(self, log: Any = None) -> None:
        self._log = log or logger
        self._identities: set[str] = set()
        # id(handle) -> handle; holding the handle keeps its id stable while tracked
        self._handles: dict[int, Any] = {}
        self._anonymous = 0
        self._listeners: list[Listener] = []

    @property
    def count(self) -> int:
        return len(self._identities) + len(self._handles) + self._anonymous

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked after every successful track/untrack."""
        self._listeners.append(listener)

    def is_tracked_identity(self, viewer_id: str) -> bool:
        return viewer_id in self._identities

    def is_tracked_handle(self, handle: Any) -> bool:
        return id(handle) in self._handles

    def track_identity(self, viewer_id: str) -> bool:
        """Track a viewer by stable identifier. Returns True if newly tracked."""
        if not viewer_id or viewer_id in self._identities:
            return False
        self._identities.add(viewer_id)
        self._connected(viewer_id)
        return True

    def untrack_identity(self, viewer_id: str) -> bool:
        """Stop tracking a viewer identifier. Returns True if it was tracked."""
        if viewer_id not in self._identities:
            return False
        self._identities.discard(viewer_id)
        self._disconnected(viewer_id)
        return True

    def track_by_handle(self, handle: Any) -> bool:
        """Track a viewer by the identity of its transport object."""
        if handle is None or id(handle) in self._handles:
            return False
        self._handles[id(handle)] = handle
        self._connected(handle)
        return True

    def untrack_by_handle(self, handle: Any) -> bool:
        """Stop tracking a transport object. Returns True if it was tracked."""
        if self._handles.pop(id(handle), None) is None:
            return False
        self._disconnected(handle)
        return True

    def track_anonymous(self) -> None:
        """Count a viewer reported without any identity."""
        self._anonymous += 1
        self._connected(None)

    def untrack_anonymous(self) -> bool:
        """Drop one anonymous viewer; a no-op when none are counted."""
        if self._anonymous == 0:
            return False
        self._anonymous -= 1
        self._disconnected(None)
        return True

    def _connected(self, key: Any) -> None:
        count = self.count
        self._log.info("Viewer connected", count=count)
        self._notify(Transition(kind=TransitionKind.CONNECT, key=key, count=count))

    def _disconnected(self, key: Any) -> None:
        count = self.count
        self._log.info("Viewer disconnected", count=count)
        self._notify(Transition(kind=TransitionKind.DISCONNECT, key=key, count=count))

    def _notify(self, transition: Transition) -> None:
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception:
                self._log.exception(
                    "Registry listener failed",
                    kind=transition.kind.value,
                    count=transition.count,
                )
