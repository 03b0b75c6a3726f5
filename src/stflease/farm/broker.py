"""adb connection handshake for reserved farm devices."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence

from stflease.farm.interfaces import DebugBridge
from stflease.farm.session import DeviceSlot
from stflease.shared.enums import ConnectionState
from stflease.shared.exceptions import AdbError

logger = logging.getLogger(__name__)

# Consecutive "unauthorized" sightings before the user is told about it.
_UNAUTHORIZED_WARN_AFTER = 4

_READY_STATUS = "device"
_UNAUTHORIZED_STATUS = "unauthorized"


def poll_interval_ms(total_timeout_ms: int) -> int:
    """Poll interval for a readiness budget.

    Coarser for long budgets, finer for short ones; a full budget takes
    roughly ``2 * sqrt(total_timeout_ms / 1000)`` polls.
    """
    if total_timeout_ms <= 0:
        return 0
    return int(total_timeout_ms / (2 * math.sqrt(total_timeout_ms / 1000)))


async def pause(seconds: float, stop_event: asyncio.Event | None) -> bool:
    """Sleep for ``seconds``; True if ``stop_event`` fired first."""
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


def parse_device_listing(listing: str) -> dict[str, str]:
    """Map serial -> status from ``adb devices`` output."""
    statuses: dict[str, str] = {}
    for line in listing.splitlines():
        line = line.strip()
        if not line or line.startswith(("List of devices", "*")):
            continue
        parts = line.split()
        if len(parts) >= 2:
            statuses[parts[0]] = parts[1]
    return statuses


class ConnectionBroker:
    """Drives connect -> ready polling -> disconnect for device slots.

    The only component that assigns ``DeviceSlot.state``.
    """

    def __init__(self, adb: DebugBridge) -> None:
        self._adb = adb

    async def connect(self, slot: DeviceSlot) -> None:
        """Issue ``adb connect``; failures are logged, the poll loop decides readiness."""
        slot.state = ConnectionState.CONNECTING
        try:
            await self._adb.connect(slot.endpoint)
        except AdbError as exc:
            logger.warning("adb connect to %s failed: %s", slot.endpoint, exc)

    async def await_ready(
        self,
        slots: Sequence[DeviceSlot],
        total_timeout_ms: int,
        *,
        stop_event: asyncio.Event | None = None,
    ) -> bool:
        """Poll ``adb devices`` until a slot reports ``device`` or time runs out.

        Returns True as soon as any one slot is ready, even if others are not.

        Args:
            slots: Slots that have been connected.
            total_timeout_ms: Overall budget in milliseconds.
            stop_event: Set to interrupt the wait.

        Returns:
            True if a device became ready; False on timeout or interruption.
        """
        loop = asyncio.get_running_loop()
        interval = poll_interval_ms(total_timeout_ms) / 1000
        deadline = loop.time() + max(total_timeout_ms, 0) / 1000
        unauthorized = {slot.serial: 0 for slot in slots}
        warned = False

        try:
            while True:
                if stop_event is not None and stop_event.is_set():
                    return self._interrupted(slots)

                statuses = await self._poll_statuses()
                for slot in slots:
                    status = statuses.get(slot.endpoint)
                    if status == _READY_STATUS:
                        slot.state = ConnectionState.CONNECTED
                        logger.info("device %s is ready", slot.endpoint)
                        return True

                    if status == _UNAUTHORIZED_STATUS:
                        slot.state = ConnectionState.UNAUTHORIZED
                        unauthorized[slot.serial] += 1
                        if unauthorized[slot.serial] >= _UNAUTHORIZED_WARN_AFTER and not warned:
                            logger.warning(
                                "device %s is connected but not authorized; check the adb key installed on the farm",
                                slot.endpoint,
                            )
                            warned = True
                    else:
                        unauthorized[slot.serial] = 0
                        if slot.state is ConnectionState.UNAUTHORIZED:
                            slot.state = ConnectionState.CONNECTING

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                if await pause(min(interval, remaining), stop_event):
                    return self._interrupted(slots)
        except asyncio.CancelledError:
            return self._interrupted(slots)

        logger.error("no device became ready within %dms", total_timeout_ms)
        _mark_failed(slots)
        return False

    async def _poll_statuses(self) -> dict[str, str]:
        try:
            return parse_device_listing(await self._adb.devices())
        except AdbError as exc:
            logger.warning("could not check device connection: %s", exc)
            return {}

    @staticmethod
    def _interrupted(slots: Sequence[DeviceSlot]) -> bool:
        logger.warning("interrupted while waiting for device connection")
        _mark_failed(slots)
        return False

    async def disconnect(self, slot: DeviceSlot) -> None:
        """Issue ``adb disconnect``; failures are logged, never raised."""
        try:
            await self._adb.disconnect(slot.endpoint)
        except AdbError as exc:
            logger.warning("adb disconnect of %s failed: %s", slot.endpoint, exc)
        slot.state = ConnectionState.UNCONNECTED

    def reset(self, slots: Sequence[DeviceSlot]) -> None:
        for slot in slots:
            slot.state = ConnectionState.UNCONNECTED


def _mark_failed(slots: Sequence[DeviceSlot]) -> None:
    for slot in slots:
        if slot.state is not ConnectionState.CONNECTED:
            slot.state = ConnectionState.FAILED
