"""Optional status endpoints a host can mount on its FastAPI app."""

from __future__ import annotations

from fastapi import APIRouter

from idlestop.models import IdleStatus
from idlestop.wiring import ViewerIdleStop


def build_router(handle: ViewerIdleStop) -> APIRouter:
    """Return a router exposing health and idle status for ``handle``."""
    router = APIRouter(tags=["idle"])

    @router.get("/health")
    async def health() -> dict:
        """Health check endpoint."""
        return {"ok": True}

    @router.get("/idle/status", response_model=IdleStatus)
    async def idle_status() -> IdleStatus:
        """Current viewer count, controller state and discovery state."""
        return handle.status()

    return router
