"""Per-device runtime records for one reservation session."""

from __future__ import annotations

from dataclasses import dataclass, field

from stflease.farm.logcat import LogCapture
from stflease.shared.enums import ConnectionState
from stflease.shared.models import ReservedDevice


@dataclass(slots=True)
class DeviceSlot:
    """Everything the session owns for one reserved device.

    ``state`` is assigned only by ``ConnectionBroker``.
    """

    device: ReservedDevice
    capture: LogCapture
    state: ConnectionState = ConnectionState.UNCONNECTED
    released: bool = False

    @property
    def serial(self) -> str:
        return self.device.serial

    @property
    def endpoint(self) -> str:
        return self.device.adb_serial


@dataclass(frozen=True, slots=True)
class SessionHandle:
    """What a successful setup hands the job runner."""

    devices: tuple[ReservedDevice, ...]
    env: dict[str, str] = field(default_factory=dict)
    summaries: tuple[str, ...] = ()
