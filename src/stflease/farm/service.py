"""Reservation session orchestrating reserve -> connect -> capture -> release."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Sequence
from pathlib import Path

from stflease.farm.broker import ConnectionBroker, pause
from stflease.farm.filters import FilterSpec
from stflease.farm.interfaces import DebugBridge, DeviceFarm
from stflease.farm.logcat import LogCapture
from stflease.farm.session import DeviceSlot, SessionHandle
from stflease.shared.enums import CaptureStatus
from stflease.shared.exceptions import (
    AdbError,
    AdbKeyError,
    ConnectionTimeoutError,
    JobAbortedError,
    RemoteAPIError,
    SetupError,
    StfError,
    TeardownError,
    WorkspaceError,
)
from stflease.shared.models import FarmConfig, ReservedDevice

logger = logging.getLogger(__name__)


class ReservationSession:
    """Owns every device, connection and log capture of one job.

    ``setup()`` either returns a usable handle or raises ``SetupError`` after
    tearing down whatever it had acquired. ``teardown()`` never raises.
    """

    def __init__(
        self,
        farm: DeviceFarm,
        adb: DebugBridge,
        config: FarmConfig,
        spec: FilterSpec,
        *,
        workspace: str | os.PathLike[str],
        artifact_dir: str | os.PathLike[str] | None,
        reserve_all: bool = False,
        settle_seconds: float = 5.0,
        logcat_grace_seconds: float = 3.0,
        kill_timeout_seconds: float = 10.0,
        adb_key_pair: tuple[str, str] | None = None,
        adb_user_dir: str | os.PathLike[str] = "~/.android",
        android_sdk_root: str | None = None,
        broker: ConnectionBroker | None = None,
    ) -> None:
        self.farm = farm
        self.adb = adb
        self.config = config
        self.spec = spec
        self.broker = broker or ConnectionBroker(adb)
        self._workspace = Path(workspace)
        self._artifact_dir = artifact_dir
        self._reserve_all = reserve_all
        self._settle_seconds = settle_seconds
        self._logcat_grace_seconds = logcat_grace_seconds
        self._kill_timeout_seconds = kill_timeout_seconds
        self._adb_key_pair = adb_key_pair
        self._adb_user_dir = adb_user_dir
        self._android_sdk_root = android_sdk_root
        self.slots: dict[str, DeviceSlot] = {}
        self._torn_down = False

    # ── setup ───────────────────────────────────────────────────

    async def setup(
        self,
        wait_seconds: int,
        timeout_ms: int,
        *,
        stop_event: asyncio.Event | None = None,
    ) -> SessionHandle:
        """Reserve, connect and start capturing; return the job's handle.

        Args:
            wait_seconds: How long the farm may wait for a busy device.
            timeout_ms: Budget for the first device to report ready.
            stop_event: Set to abort; honoured while waiting for a free device,
                for readiness and during the settle delay.

        Raises:
            StfError: Reservation failed (partial reservations already released).
            AdbKeyError: Configured adb key could not be installed.
            WorkspaceError: Job workspace does not exist.
            ConnectionTimeoutError: No device became ready in time.
            JobAbortedError: ``stop_event`` fired before setup finished.
        """
        try:
            devices = await self.farm.reserve(
                self.config,
                self.spec,
                wait_seconds=wait_seconds,
                reserve_all=self._reserve_all,
                stop_event=stop_event,
            )
        except StfError as exc:
            logger.error("reservation failed: %s", exc)
            if exc.reserved:
                self._add_slots(exc.reserved)
                await self.teardown()
            raise

        self._add_slots(devices)
        logger.info("reserved %d device(s) in total", len(devices))

        try:
            return await self._bring_up(timeout_ms, stop_event)
        except SetupError as exc:
            logger.error("session setup failed: %s", exc)
            await self.teardown()
            raise
        except asyncio.CancelledError:
            logger.warning("session setup cancelled")
            await self.teardown()
            raise
        except Exception:
            logger.exception("unexpected error during session setup")
            await self.teardown()
            raise

    def _add_slots(self, devices: Sequence[ReservedDevice]) -> None:
        for device in devices:
            self.slots[device.serial] = DeviceSlot(
                device=device,
                capture=LogCapture(
                    self.adb,
                    device.adb_serial,
                    grace_seconds=self._logcat_grace_seconds,
                    kill_timeout=self._kill_timeout_seconds,
                ),
            )
            logger.info("reserved device: %s [%s]", device.summary(), device.remote_connect_url)

    async def _bring_up(self, timeout_ms: int, stop_event: asyncio.Event | None) -> SessionHandle:
        if self._adb_key_pair is not None:
            self._install_adb_key(*self._adb_key_pair)

        # Started up front so later commands don't pay for it; the second
        # call covers a first start that returns before the server is up.
        for _ in range(2):
            try:
                await self.adb.start_server()
            except AdbError as exc:
                logger.warning("adb start-server: %s", exc)

        if not self._workspace.is_dir():
            raise WorkspaceError(f"cannot get the workspace of this job: {self._workspace}")

        slots = list(self.slots.values())
        for slot in slots:
            await slot.capture.start(self._workspace)

        for slot in slots:
            await self.broker.connect(slot)

        logger.info("waiting for STF device connection to complete")
        ready = await self.broker.await_ready(slots, timeout_ms, stop_event=stop_event)
        if not ready:
            if stop_event is not None and stop_event.is_set():
                raise JobAbortedError("interrupted while waiting for device connection")
            raise ConnectionTimeoutError(f"connecting to the STF device(s) failed within {timeout_ms}ms")

        # Give the daemon time to finish the authorization handshake.
        if await pause(self._settle_seconds, stop_event):
            raise JobAbortedError("interrupted while devices were settling")
        return SessionHandle(
            devices=tuple(slot.device for slot in slots),
            env=self.environment(),
            summaries=tuple(slot.device.summary() for slot in slots),
        )

    def _install_adb_key(self, public_key: str, private_key: str) -> None:
        key_dir = Path(os.path.expanduser(os.fspath(self._adb_user_dir)))
        try:
            key_dir.mkdir(parents=True, exist_ok=True)
            (key_dir / "adbkey.pub").write_text(public_key.strip() + "\n")
            private_path = key_dir / "adbkey"
            private_path.write_text(private_key.strip() + "\n")
            private_path.chmod(0o600)
        except OSError as exc:
            raise AdbKeyError(f"cannot create adbkey file in {key_dir}: {exc}") from exc
        logger.info("installed adb key pair into %s", key_dir)

    def environment(self) -> dict[str, str]:
        """Variables published to the job; the first device is the default target."""
        env: dict[str, str] = {"ANDROID_ADB_SERVER_PORT": str(self.adb.server_port)}
        slots = list(self.slots.values())
        if slots:
            # Bound to the first reserved device, not the last one; the rest are reachable through adb.
            env["ANDROID_SERIAL"] = slots[0].endpoint
            env["ANDROID_AVD_DEVICE"] = slots[0].endpoint
        for slot in slots:
            if slot.capture.status is CaptureStatus.RUNNING and slot.capture.path is not None:
                env["ANDROID_TMP_LOGCAT_FILE"] = str(slot.capture.path)
                break
        if self._android_sdk_root:
            env["ANDROID_HOME"] = self._android_sdk_root
        return env

    # ── teardown ────────────────────────────────────────────────

    async def teardown(self) -> list[TeardownError]:
        """Disconnect, release, archive logs and stop adb; best effort throughout.

        Safe to call more than once; later calls do nothing.

        Returns:
            Every non-fatal fault hit; each is also logged.
        """
        if self._torn_down:
            logger.debug("session already torn down")
            return []
        self._torn_down = True

        faults: list[TeardownError] = []
        slots = list(self.slots.values())

        for slot in slots:
            try:
                await self.broker.disconnect(slot)
            except Exception as exc:  # pragma: no cover - broker already logs adb failures
                faults.append(TeardownError("disconnect", slot.endpoint, repr(exc)))

        for slot in slots:
            if slot.released:
                continue
            try:
                await self.farm.release(self.config, slot.device)
            except RemoteAPIError as exc:
                faults.append(TeardownError("release", slot.serial, str(exc)))
            except Exception as exc:
                faults.append(TeardownError("release", slot.serial, repr(exc)))
            finally:
                # One release attempt per device; the farm is not assumed to dedup.
                slot.released = True

        for slot in slots:
            try:
                faults.extend(await slot.capture.stop(self._artifact_dir))
            except Exception as exc:
                faults.append(TeardownError("logcat", slot.serial, repr(exc)))

        try:
            await self.adb.kill_server()
        except AdbError as exc:
            faults.append(TeardownError("kill-server", "adb", str(exc)))
        except Exception as exc:
            faults.append(TeardownError("kill-server", "adb", repr(exc)))

        self.broker.reset(slots)

        for fault in faults:
            logger.warning("teardown: %s", fault)
        logger.info("session torn down (%d device(s), %d fault(s))", len(slots), len(faults))
        return faults

    @property
    def archived_logs(self) -> list[Path]:
        return [s.capture.archived_path for s in self.slots.values() if s.capture.archived_path is not None]
