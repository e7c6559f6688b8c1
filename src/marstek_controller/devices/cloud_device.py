"""Periodic cloud status polling for one account."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from marstek_controller.cloud.api import CloudSession
from marstek_controller.const import CLOUD_POLLER_TASK_NAME, MARSTEK_CLOUD_POLL_INTERVAL
from marstek_controller.devices.local_device import ReadingSink
from marstek_controller.devices.telemetry import normalize_cloud_status
from marstek_controller.exceptions import CloudError
from marstek_controller.logging_abstraction import get_logger

__all__ = ["CloudPoller"]

logger = get_logger(__name__)


class CloudPoller:
    """Fetches the account's status list and publishes each selected device.

    Args:
        session: Cloud session for the account
        devids: Devices to publish; every device in the status list when None
        sink: Where readings are published
        interval: Seconds between polls

    """

    def __init__(
        self,
        session: CloudSession,
        devids: Iterable[str] | None = None,
        sink: ReadingSink | None = None,
        interval: float = MARSTEK_CLOUD_POLL_INTERVAL,
    ) -> None:
        self.session = session
        self.devids: frozenset[str] | None = frozenset(devids) if devids is not None else None
        self.sink = sink
        self.interval = interval
        self.lp = f"cloud_poller[{session.username}]:"
        self._online: dict[str, bool] = {}
        self._task: asyncio.Task[None] | None = None

    async def poll_once(self) -> dict[str, dict[str, object]]:
        """Fetch once and publish. Returns the readings published per devid."""
        statuses = await self.session.fetch_status()
        wanted = self.devids if self.devids is not None else frozenset(statuses)
        published: dict[str, dict[str, object]] = {}
        for devid in sorted(wanted):
            status = statuses.get(devid)
            if status is None:
                logger.warning("%s %s missing from status list", self.lp, devid)
                await self._set_online(devid, False)
                continue
            readings = normalize_cloud_status(status)
            published[devid] = readings
            await self._set_online(devid, True)
            if self.sink is not None:
                _ = await self.sink.publish_readings(devid, readings)
        return published

    async def _set_online(self, devid: str, online: bool) -> None:
        if self._online.get(devid) == online:
            return
        self._online[devid] = online
        if self.sink is not None:
            _ = await self.sink.publish_availability(devid, online)

    async def mark_offline(self) -> None:
        """Publish every selected or previously online device as unavailable."""
        devids = set(self.devids or ()) | {devid for devid, online in self._online.items() if online}
        for devid in sorted(devids):
            await self._set_online(devid, False)

    async def run(self) -> None:
        while True:
            try:
                _ = await self.poll_once()
            except CloudError as e:
                logger.warning("%s poll failed: %s", self.lp, e)
                await self.mark_offline()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.Task(self.run(), name=CLOUD_POLLER_TASK_NAME.format(username=self.session.username))

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            _ = task.cancel()
