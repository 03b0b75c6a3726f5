"""Domain enumerations used across all modules."""

from __future__ import annotations

from enum import Enum, unique


@unique
class ConnectionState(str, Enum):
    """adb connection state of one reserved device."""

    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    UNAUTHORIZED = "unauthorized"
    CONNECTED = "connected"
    FAILED = "failed"


@unique
class CaptureStatus(str, Enum):
    """Lifecycle of a background logcat capture."""

    PENDING = "pending"
    RUNNING = "running"
    UNAVAILABLE = "unavailable"
    STOPPED = "stopped"


@unique
class BuildResult(str, Enum):
    """Outcome reported back to the job runner."""

    SUCCESS = "success"
    FAILURE = "failure"
    # Configuration or reservation failed; the job never truly started.
    NOT_BUILT = "not_built"

    @property
    def exit_code(self) -> int:
        return {BuildResult.SUCCESS: 0, BuildResult.FAILURE: 1, BuildResult.NOT_BUILT: 2}[self]
