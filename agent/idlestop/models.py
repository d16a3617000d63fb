"""Pydantic models and enums shared by the idle-stop components."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


class IdleState(str, Enum):
    """States of the idle controller."""
    NO_VIEWERS = "no_viewers"
    VIEWERS_PRESENT = "viewers_present"
    STOPPING = "stopping"


class DiscoveryState(str, Enum):
    """Lifecycle of the discovery engine."""
    PENDING = "pending"
    ATTACHED = "attached"
    GAVE_UP = "gave_up"


class StopOutcome(str, Enum):
    """Result of a shutdown attempt."""
    STOPPED = "stopped"
    ABORTED = "aborted"
    FAILED = "failed"


class TransitionKind(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"


class Transition(BaseModel):
    """A change in the live viewer count reported by the registry."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    kind: TransitionKind
    key: Any = None
    count: int


class IdleOptions(BaseModel):
    """Tunables for idle detection. Durations are in seconds."""

    grace: float = Field(default=600.0, ge=0)
    attach_interval: float = Field(default=0.5, gt=0)
    attach_timeout: float = Field(default=0.0, ge=0)
    player_port: Optional[int] = Field(default=None, ge=1, le=65535)
    first_viewer_grace: float = Field(default=3600.0, ge=0)
    first_viewer_delay: float = Field(default=0.0, ge=0)
    heartbeat_interval: float = Field(default=30.0, ge=0)
    heartbeat_misses: int = Field(default=2, ge=0)
    max_depth: int = Field(default=12, ge=0)
    log_sink: Optional[Callable[[str], None]] = None

    @property
    def heartbeat_enabled(self) -> bool:
        return self.heartbeat_interval > 0 and self.heartbeat_misses > 0


class IdleStatus(BaseModel):
    """Point-in-time snapshot exposed over the status API."""
    viewers: int
    state: IdleState
    post_disconnect_timer_armed: bool
    first_viewer_timer_armed: bool
    discovery: DiscoveryState
    attached_to: Optional[str] = None
