"""Assemble discovery, registry, liveness and the idle controller."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from idlestop.controller import IdleController
from idlestop.discovery import DiscoveryEngine
from idlestop.liveness import LivenessSupervisor
from idlestop.logging import make_sink_logger
from idlestop.models import IdleOptions, IdleStatus
from idlestop.registry import ConnectionRegistry
from idlestop.settings import settings
from idlestop.shutdown import Ec2ShutdownTrigger, LoggingShutdownTrigger, ShutdownTrigger

logger = structlog.get_logger("idlestop.wiring")


class ViewerIdleStop:
    """Handle returned by :func:`wire_viewer_idle_stop`."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        controller: IdleController,
        supervisor: LivenessSupervisor,
        discovery: DiscoveryEngine,
    ) -> None:
        self.registry = registry
        self.controller = controller
        self.supervisor = supervisor
        self.discovery = discovery

    def status(self) -> IdleStatus:
        return IdleStatus(
            viewers=self.registry.count,
            state=self.controller.state,
            post_disconnect_timer_armed=self.controller.post_disconnect_armed,
            first_viewer_timer_armed=self.controller.first_viewer_armed,
            discovery=self.discovery.state,
            attached_to=self.discovery.attached_to,
        )

    def close(self) -> None:
        """Stop discovery, probing and timers. An in-flight stop is left to finish."""
        self.discovery.close()
        self.supervisor.close()
        self.controller.close()


def _component_logger(options: IdleOptions, name: str) -> Any:
    if options.log_sink is None:
        return structlog.get_logger(name)
    return make_sink_logger(options.log_sink, name)


def wire_viewer_idle_stop(
    root: Any,
    options: IdleOptions | None = None,
    *,
    trigger: ShutdownTrigger | None = None,
) -> ViewerIdleStop:
    """Start idle management for the host object graph rooted at ``root``.

    Must be called from code running on the host's event loop. Discovery
    runs in the background; if it never finds a connection source the host
    simply runs without idle stop.

    Args:
        root: Entry point into the host application's object graph.
        options: Tunables; defaults are read from the environment.
        trigger: Shutdown trigger; defaults to EC2 (or a dry run when
            ``IDLE_STOP_DRY_RUN`` is set).
    """
    options = options or settings.options()
    loop = asyncio.get_running_loop()

    registry = ConnectionRegistry(log=_component_logger(options, "idlestop.registry"))
    if trigger is None:
        shutdown_log = _component_logger(options, "idlestop.shutdown")
        if settings.dry_run():
            trigger = LoggingShutdownTrigger(lambda: registry.count, log=shutdown_log)
        else:
            trigger = Ec2ShutdownTrigger(
                lambda: registry.count,
                metadata_url=settings.metadata_url(),
                log=shutdown_log,
            )

    controller = IdleController(
        options,
        trigger,
        count=lambda: registry.count,
        loop=loop,
        log=_component_logger(options, "idlestop.controller"),
    )
    registry.add_listener(controller.on_transition)
    supervisor = LivenessSupervisor(
        registry,
        options,
        loop=loop,
        log=_component_logger(options, "idlestop.liveness"),
    )
    discovery = DiscoveryEngine(
        root,
        registry,
        supervisor,
        options,
        on_attached=controller.on_attached,
        loop=loop,
        log=_component_logger(options, "idlestop.discovery"),
    )
    discovery.start()
    logger.debug("Discovery started", interval_s=options.attach_interval, timeout_s=options.attach_timeout)
    return ViewerIdleStop(registry, controller, supervisor, discovery)
