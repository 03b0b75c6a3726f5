"""OpenSTF REST API client for device reservation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from stflease.farm.broker import pause
from stflease.farm.filters import FilterSpec
from stflease.shared.exceptions import (
    CapacityError,
    ConfigError,
    JobAbortedError,
    NoMatchingDeviceError,
    RemoteAPIError,
    StfError,
)
from stflease.shared.models import FarmConfig, ReservedDevice

logger = logging.getLogger(__name__)

# OpenSTF API docs:
# https://github.com/openstf/stf/blob/master/doc/API.md


class StfClient:
    """Stateless façade over the farm's reservation API.

    Implements the ``DeviceFarm`` protocol. Every call takes its own
    ``FarmConfig`` so concurrent callers never see each other's settings.
    """

    def __init__(self, *, timeout: int = 30, poll_interval: int = 10) -> None:
        self._timeout = timeout
        self._poll_interval = poll_interval

    def _http(self, config: FarmConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=config.base_url,
            headers={"Authorization": f"Bearer {config.token}"},
            verify=not config.ignore_cert_error,
            timeout=self._timeout,
        )

    async def _request(self, config: FarmConfig, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Issue one API call and return the decoded JSON body.

        Raises:
            RemoteAPIError: Transport failure, non-2xx status or a body with
                ``success: false``.
        """
        try:
            async with self._http(config) as client:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
                data: dict[str, Any] = resp.json()
        except httpx.HTTPStatusError as exc:
            raise RemoteAPIError(
                f"STF {method} {path} returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteAPIError(f"STF {method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteAPIError(f"STF {method} {path} returned a non-JSON body") from exc

        if data.get("success") is False:
            raise RemoteAPIError(f"STF {method} {path} failed: {data.get('description', 'unknown error')}")
        return data

    # ── read-only ───────────────────────────────────────────────

    async def list_devices(self, config: FarmConfig) -> list[dict[str, Any]]:
        """Return every device record the farm knows about."""
        data = await self._request(config, "GET", "/api/v1/devices")
        devices: list[dict[str, Any]] = data.get("devices", [])
        return devices

    async def get_device(self, config: FarmConfig, serial: str) -> dict[str, Any]:
        data = await self._request(config, "GET", f"/api/v1/devices/{serial}")
        device: dict[str, Any] = data.get("device", {})
        return device

    async def list_matching(self, config: FarmConfig, spec: FilterSpec) -> list[ReservedDevice]:
        """Preview the devices a filter selects, without reserving anything."""
        records = spec.filter(await self.list_devices(config))
        return [ReservedDevice.from_record(dict(r)) for r in records]

    # ── configuration checks ────────────────────────────────────

    async def check_endpoint(self, config: FarmConfig) -> None:
        """Verify the endpoint is set and speaks the STF API.

        Raises:
            ConfigError: Endpoint unset, unreachable or not an STF server.
        """
        if not config.endpoint.strip():
            raise ConfigError("STF API endpoint URL is not set")
        if not config.endpoint.startswith(("http://", "https://")):
            raise ConfigError(f"STF API endpoint must be an http(s) URL: {config.endpoint}")
        try:
            async with self._http(config) as client:
                resp = await client.get("/api/v1/devices")
        except httpx.HTTPError as exc:
            raise ConfigError(f"STF API endpoint {config.endpoint} is unreachable: {exc}") from exc

        # Reachable but unauthorized: the token check reports that.
        if resp.status_code in {401, 403}:
            return
        if resp.status_code >= 400 or "json" not in resp.headers.get("content-type", ""):
            raise ConfigError(f"{config.endpoint} does not look like an STF API endpoint ({resp.status_code})")

    async def check_token(self, config: FarmConfig) -> None:
        """Verify the access token is accepted.

        Raises:
            ConfigError: Token missing or rejected.
        """
        if not config.token.strip():
            raise ConfigError("STF access token is not set")
        try:
            await self._request(config, "GET", "/api/v1/user")
        except RemoteAPIError as exc:
            raise ConfigError(f"STF access token was rejected: {exc}") from exc

    # ── reservation ─────────────────────────────────────────────

    async def reserve(
        self,
        config: FarmConfig,
        spec: FilterSpec,
        *,
        wait_seconds: int = 0,
        reserve_all: bool = False,
        stop_event: asyncio.Event | None = None,
    ) -> list[ReservedDevice]:
        """Claim farm devices matching ``spec`` and enable remote adb on them.

        Args:
            config: Farm connection settings for this call.
            spec: Device-selection criteria.
            wait_seconds: How long to wait for a busy matching device to be released.
            reserve_all: Claim every available match instead of the first one.
            stop_event: Set to give up waiting for a busy device.

        Returns:
            Reserved devices with their remote-connect URLs.

        Raises:
            NoMatchingDeviceError: ``spec`` matches no farm device.
            CapacityError: Matches exist but none became available in time.
            JobAbortedError: ``stop_event`` fired while waiting.
            RemoteAPIError: Farm call failed; ``exc.reserved`` lists devices
                already claimed by this call.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait_seconds, 0)

        while True:
            matching = spec.filter(await self.list_devices(config))
            if not matching:
                raise NoMatchingDeviceError(f"no STF device matches {spec.conditions}")

            available = [r for r in matching if _is_available(r)]
            if available:
                break

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise CapacityError(f"{len(matching)} STF device(s) match {spec.conditions} but none is available")
            logger.info("%d matching device(s) busy, waiting up to %.0fs", len(matching), remaining)
            if await pause(min(self._poll_interval, remaining), stop_event):
                raise JobAbortedError("interrupted while waiting for a free STF device")

        chosen = available if reserve_all else available[:1]
        reserved: list[ReservedDevice] = []
        for record in chosen:
            serial = str(record["serial"])
            try:
                device = await self._claim(config, serial)
            except StfError as exc:
                raise type(exc)(str(exc), reserved=reserved) from exc
            reserved.append(device)
            logger.info("reserved %s (%s) at %s", device.serial, device.name, device.remote_connect_url)

        return reserved

    async def _claim(self, config: FarmConfig, serial: str) -> ReservedDevice:
        await self._request(config, "POST", "/api/v1/user/devices", json={"serial": serial})
        try:
            data = await self._request(config, "POST", f"/api/v1/user/devices/{serial}/remoteConnect")
            url = data.get("remoteConnectUrl")
            if not url:
                raise RemoteAPIError(f"STF returned no remoteConnectUrl for {serial}")
            record = await self.get_device(config, serial)
        except StfError as exc:
            # Claimed but unusable; hand it back before reporting.
            await self._release_quietly(config, serial)
            raise RemoteAPIError(f"remote connect failed for {serial}: {exc}") from exc
        return ReservedDevice.from_record({"serial": serial, **record}, remote_connect_url=str(url))

    async def release(self, config: FarmConfig, device: ReservedDevice) -> None:
        """Stop remote adb and hand ``device`` back to the farm.

        Raises:
            RemoteAPIError: The release call failed.
        """
        serial = device.serial
        try:
            await self._request(config, "DELETE", f"/api/v1/user/devices/{serial}/remoteConnect")
        except RemoteAPIError as exc:
            logger.warning("remote disconnect of %s failed: %s", serial, exc)
        await self._request(config, "DELETE", f"/api/v1/user/devices/{serial}")
        logger.info("released %s (%s)", serial, device.name)

    async def _release_quietly(self, config: FarmConfig, serial: str) -> None:
        try:
            await self._request(config, "DELETE", f"/api/v1/user/devices/{serial}")
        except RemoteAPIError as exc:
            logger.error("could not hand back %s after failed connect: %s", serial, exc)


def _is_available(record: dict[str, Any]) -> bool:
    return bool(record.get("present")) and bool(record.get("ready")) and not record.get("using") and not record.get("owner")
