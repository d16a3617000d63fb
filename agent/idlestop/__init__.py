"""Stop the host instance when no viewer has been connected for a while."""

from __future__ import annotations

from idlestop.models import IdleOptions, IdleState, IdleStatus, StopOutcome
from idlestop.wiring import ViewerIdleStop, wire_viewer_idle_stop

__all__ = [
    "IdleOptions",
    "IdleState",
    "IdleStatus",
    "StopOutcome",
    "ViewerIdleStop",
    "wire_viewer_idle_stop",
]
