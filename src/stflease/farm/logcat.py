"""Background logcat capture for one reserved device."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO

from stflease.farm.interfaces import DebugBridge
from stflease.shared.enums import CaptureStatus
from stflease.shared.exceptions import AdbError, CaptureError, TeardownError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.-]")


class LogCapture:
    """Streams a device's logcat into a temp file via a separate adb process.

    The process writes straight into the file; nothing here reads its output
    until ``stop()`` archives the file. Start failures degrade the capture to
    ``UNAVAILABLE`` instead of raising.
    """

    def __init__(
        self,
        adb: DebugBridge,
        serial: str,
        *,
        grace_seconds: float = 3.0,
        kill_timeout: float = 10.0,
    ) -> None:
        self._adb = adb
        self.serial = serial
        self._grace_seconds = grace_seconds
        self._kill_timeout = kill_timeout
        self.status = CaptureStatus.PENDING
        self.path: Path | None = None
        self.archived_path: Path | None = None
        self.error: str | None = None
        self._stream: BinaryIO | None = None
        self._process: asyncio.subprocess.Process | None = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self, workspace: str | os.PathLike[str]) -> None:
        """Clear the device log buffer, then start streaming into a new temp file."""
        try:
            await self._adb.clear_logcat(self.serial)
        except AdbError as exc:
            logger.debug("could not clear logcat buffer on %s: %s", self.serial, exc)

        try:
            fd, name = tempfile.mkstemp(
                prefix=f"logcat_{_UNSAFE_FILENAME_CHARS.sub('_', self.serial)}",
                suffix=".log",
                dir=os.fspath(workspace),
            )
            self.path = Path(name)
            self._stream = os.fdopen(fd, "wb")
            self._process = await self._adb.spawn_logcat(self.serial, self._stream)
        except (OSError, AdbError) as exc:
            self._degrade(CaptureError(f"logcat capture unavailable for {self.serial}: {exc}"))
            return

        self.status = CaptureStatus.RUNNING
        logger.info("capturing logcat of %s into %s", self.serial, self.path)

    def _degrade(self, exc: CaptureError) -> None:
        self.status = CaptureStatus.UNAVAILABLE
        self.error = str(exc)
        logger.warning("%s", exc)

    async def stop(self, artifact_dir: str | os.PathLike[str] | None) -> list[TeardownError]:
        """Stop the process, close the stream, archive a non-empty log, delete the temp file.

        Each step runs whether or not the previous one succeeded.

        Returns:
            Faults hit along the way; never raises.
        """
        if self.status is CaptureStatus.STOPPED:
            return []
        faults: list[TeardownError] = []

        if self._process is not None and self.is_running:
            await self._stop_process(self._process, faults)

        if self._stream is not None:
            try:
                self._stream.close()
            except OSError as exc:
                logger.debug("closing logcat stream of %s: %s", self.serial, exc)

        if self.path is not None:
            if artifact_dir is not None:
                try:
                    self._archive(self.path, Path(artifact_dir))
                except OSError as exc:
                    faults.append(TeardownError("archive", self.serial, str(exc)))
            try:
                self.path.unlink(missing_ok=True)
            except OSError as exc:
                faults.append(TeardownError("delete", self.serial, str(exc)))

        self.status = CaptureStatus.STOPPED
        return faults

    async def _stop_process(self, proc: asyncio.subprocess.Process, faults: list[TeardownError]) -> None:
        # Normally exits by itself once the device transport goes away.
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._grace_seconds)
            return
        except asyncio.TimeoutError:
            logger.info("logcat of %s still running, killing it", self.serial)

        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=self._kill_timeout)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            try:
                proc.kill()
                await asyncio.wait_for(proc.wait(), timeout=self._kill_timeout)
            except ProcessLookupError:
                return
            except asyncio.TimeoutError:
                faults.append(TeardownError("kill", self.serial, f"logcat pid {proc.pid} did not exit"))

    def _archive(self, path: Path, artifact_dir: Path) -> None:
        size = path.stat().st_size
        if size == 0:
            logger.info("logcat of %s is empty, not archiving", self.serial)
            return
        artifact_dir.mkdir(parents=True, exist_ok=True)
        dest = artifact_dir / path.name
        shutil.copyfile(path, dest)
        self.archived_path = dest
        logger.info("archived logcat of %s to %s (%d bytes)", self.serial, dest, size)
