"""adb command wrapper for farm devices."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import IO, Any

from stflease.shared.exceptions import AdbError

logger = logging.getLogger(__name__)


class AdbConnection:
    """Runs ``adb`` CLI commands against a dedicated adb server port.

    Uses async subprocess calls; every short-lived command is bounded by
    ``timeout`` seconds.
    """

    def __init__(self, *, adb_bin: str = "adb", server_port: int = 5037, timeout: float = 5.0) -> None:
        self._adb_bin = adb_bin
        self._server_port = server_port
        self._timeout = timeout

    @property
    def server_port(self) -> int:
        return self._server_port

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["ANDROID_ADB_SERVER_PORT"] = str(self._server_port)
        return env

    async def connect(self, endpoint: str) -> None:
        """Attach a remote device to the local adb server.

        Raises:
            AdbError: If adb reports the connection failed.
        """
        stdout, stderr, rc = await self._run("connect", endpoint)
        lowered = stdout.lower()
        if rc != 0 or "cannot" in lowered or "failed" in lowered:
            raise AdbError(f"ADB connect failed to {endpoint}: {stdout} {stderr}")
        logger.info("ADB connected to %s", endpoint)

    async def disconnect(self, endpoint: str) -> None:
        stdout, stderr, rc = await self._run("disconnect", endpoint)
        if rc != 0:
            raise AdbError(f"ADB disconnect failed for {endpoint}: {stdout} {stderr}")
        logger.info("ADB disconnected %s", endpoint)

    async def devices(self) -> str:
        """Return the raw ``adb devices`` listing."""
        stdout, stderr, rc = await self._run("devices")
        if rc != 0:
            raise AdbError(f"ADB devices failed (rc={rc}): {stderr}")
        return stdout

    async def start_server(self) -> None:
        stdout, stderr, rc = await self._run("start-server")
        if rc != 0:
            raise AdbError(f"ADB start-server failed (rc={rc}): {stderr or stdout}")

    async def kill_server(self) -> None:
        stdout, stderr, rc = await self._run("kill-server")
        if rc != 0:
            raise AdbError(f"ADB kill-server failed (rc={rc}): {stderr or stdout}")

    async def clear_logcat(self, serial: str) -> None:
        """Drop the device's buffered log so earlier sessions don't leak in."""
        _stdout, stderr, rc = await self._run("-s", serial, "logcat", "-c")
        if rc != 0:
            raise AdbError(f"ADB logcat -c failed on {serial}: {stderr}")

    async def spawn_logcat(self, serial: str, stdout: IO[bytes]) -> asyncio.subprocess.Process:
        """Start ``logcat -v time`` streaming straight into ``stdout``.

        The process is not awaited; its stderr is discarded.
        """
        return await self._spawn("-s", serial, "logcat", "-v", "time", stdout=stdout)

    async def _spawn(self, *args: str, stdout: Any) -> asyncio.subprocess.Process:
        cmd = [self._adb_bin, *args]
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdout=stdout,
                stderr=asyncio.subprocess.DEVNULL,
                env=self._env(),
            )
        except FileNotFoundError as exc:
            raise AdbError(f"adb binary not found: {self._adb_bin}") from exc
        except OSError as exc:
            raise AdbError(f"could not start {' '.join(cmd)}: {exc}") from exc

    async def _run(self, *args: str) -> tuple[str, str, int]:
        """Run an ADB command and return (stdout, stderr, returncode)."""
        cmd = [self._adb_bin, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except FileNotFoundError as exc:
            raise AdbError(f"adb binary not found: {self._adb_bin}") from exc

        try:
            stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            try:
                proc.kill()
            except ProcessLookupError:
                pass  # exited on its own
            await proc.wait()
            raise AdbError(f"ADB command timed out after {self._timeout}s: {' '.join(cmd)}") from exc

        return (
            stdout_b.decode(errors="replace").strip(),
            stderr_b.decode(errors="replace").strip(),
            proc.returncode or 0,
        )
