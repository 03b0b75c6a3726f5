"""Protocol interfaces for farm dependency injection."""

from __future__ import annotations

import asyncio
from typing import IO, Protocol, runtime_checkable

from stflease.farm.filters import FilterSpec
from stflease.shared.models import FarmConfig, ReservedDevice


@runtime_checkable
class DeviceFarm(Protocol):
    """Protocol for the device farm's reservation service."""

    async def list_matching(self, config: FarmConfig, spec: FilterSpec) -> list[ReservedDevice]:
        """List devices matching ``spec`` without reserving them."""
        ...

    async def reserve(
        self,
        config: FarmConfig,
        spec: FilterSpec,
        *,
        wait_seconds: int = 0,
        reserve_all: bool = False,
        stop_event: asyncio.Event | None = None,
    ) -> list[ReservedDevice]:
        """Reserve devices matching ``spec``.

        Raises:
            NoMatchingDeviceError: Nothing matches
            CapacityError: Matches exist but none became available
            JobAbortedError: ``stop_event`` fired while waiting
            RemoteAPIError: Transport or HTTP failure
        """
        ...

    async def release(self, config: FarmConfig, device: ReservedDevice) -> None:
        """Release one device back to the farm.

        Raises:
            RemoteAPIError: If the release call fails
        """
        ...

    async def check_endpoint(self, config: FarmConfig) -> None: ...

    async def check_token(self, config: FarmConfig) -> None: ...


@runtime_checkable
class DebugBridge(Protocol):
    """Protocol for the local debug-protocol daemon (adb)."""

    @property
    def server_port(self) -> int: ...

    async def connect(self, endpoint: str) -> None: ...

    async def disconnect(self, endpoint: str) -> None: ...

    async def devices(self) -> str:
        """Raw device listing: one ``<serial>\\t<status>`` line per device."""
        ...

    async def start_server(self) -> None: ...

    async def kill_server(self) -> None: ...

    async def clear_logcat(self, serial: str) -> None: ...

    async def spawn_logcat(self, serial: str, stdout: IO[bytes]) -> asyncio.subprocess.Process: ...
