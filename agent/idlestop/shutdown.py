"""Shutdown triggers that stop the compute resource hosting the session."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable

import boto3
import httpx
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from idlestop.models import StopOutcome
from idlestop.settings import DEFAULT_METADATA_URL

logger = structlog.get_logger("idlestop.shutdown")

TOKEN_TTL_SECONDS = "21600"
METADATA_TIMEOUT_S = 2.0


class ShutdownTrigger(ABC):
    """Interface the idle controller uses to stop the host."""

    @abstractmethod
    async def request_stop(self) -> StopOutcome:
        """Attempt to stop the underlying resource.

        Implementations must not raise; failures are reported as
        ``StopOutcome.FAILED``.
        """
        pass


class LoggingShutdownTrigger(ShutdownTrigger):
    """Dry-run trigger that only records the decision."""

    def __init__(self, count: Callable[[], int], log: Any = None) -> None:
        self._count = count
        self._log = log or logger

    async def request_stop(self) -> StopOutcome:
        if self._count() > 0:
            self._log.info("Stop aborted: a viewer is connected")
            return StopOutcome.ABORTED
        self._log.warning("Dry run: stop requested but not executed")
        return StopOutcome.STOPPED


def _default_ec2_client(region: str) -> Any:
    return boto3.client("ec2", region_name=region)


class Ec2ShutdownTrigger(ShutdownTrigger):
    """Stops the current EC2 instance using IMDSv2 and ``StopInstances``.

    The live viewer count is checked before the metadata round-trip and again
    right before the stop call, so a viewer arriving mid-sequence aborts it.
    """

    def __init__(
        self,
        count: Callable[[], int],
        metadata_url: str = DEFAULT_METADATA_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        ec2_client_factory: Callable[[str], Any] = _default_ec2_client,
        log: Any = None,
    ) -> None:
        self._count = count
        self._metadata_url = metadata_url.rstrip("/")
        self._transport = transport
        self._ec2_client_factory = ec2_client_factory
        self._log = log or logger

    async def request_stop(self) -> StopOutcome:
        if self._viewers_present():
            return StopOutcome.ABORTED
        try:
            instance_id, region = await self._lookup_instance()
            if self._viewers_present():
                return StopOutcome.ABORTED
            self._log.info("Requesting StopInstances", instance_id=instance_id, region=region)
            await asyncio.to_thread(self._stop_instance, instance_id, region)
        except (httpx.HTTPError, BotoCoreError, ClientError) as exc:
            self._log.warning("Stop failed (likely not on EC2)", error=str(exc))
            return StopOutcome.FAILED
        self._log.warning("StopInstances requested", instance_id=instance_id, region=region)
        return StopOutcome.STOPPED

    def _viewers_present(self) -> bool:
        count = self._count()
        if count > 0:
            self._log.info("Stop aborted: a viewer is connected", count=count)
            return True
        return False

    async def _lookup_instance(self) -> tuple[str, str]:
        """Return ``(instance_id, region)`` from the instance metadata service."""
        async with httpx.AsyncClient(
            base_url=self._metadata_url,
            transport=self._transport,
            timeout=METADATA_TIMEOUT_S,
        ) as client:
            resp = await client.put(
                "/latest/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": TOKEN_TTL_SECONDS},
            )
            resp.raise_for_status()
            headers = {"X-aws-ec2-metadata-token": resp.text}
            id_resp, region_resp = await asyncio.gather(
                client.get("/latest/meta-data/instance-id", headers=headers),
                client.get("/latest/meta-data/placement/region", headers=headers),
            )
            id_resp.raise_for_status()
            region_resp.raise_for_status()
            return id_resp.text.strip(), region_resp.text.strip()

    def _stop_instance(self, instance_id: str, region: str) -> None:
        client = self._ec2_client_factory(region)
        client.stop_instances(InstanceIds=[instance_id])
