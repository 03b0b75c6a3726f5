"""Hierarchical exception types for the stf-lease lifecycle."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from stflease.shared.enums import BuildResult

if TYPE_CHECKING:
    from stflease.shared.models import ReservedDevice


class StfLeaseError(Exception):
    """Base exception for all stf-lease errors."""


class SetupError(StfLeaseError):
    """Session setup aborted; ``result`` is what the job gets marked as."""

    result: BuildResult = BuildResult.FAILURE


# ── Validation ──────────────────────────────────────────────────


class ValidationError(SetupError):
    """Bad filter or configuration. Nothing has been reserved yet."""

    result = BuildResult.NOT_BUILT


class EmptyFilterError(ValidationError):
    """Device filter has no attributes after variable expansion."""


class InvalidRegexError(ValidationError):
    """A ``/regex/`` filter value does not compile."""


class ConfigError(ValidationError):
    """Farm endpoint or token missing or rejected."""


# ── Device farm ─────────────────────────────────────────────────


class StfError(SetupError):
    """Reservation-phase failure.

    ``reserved`` lists devices already claimed in the failing call, so the
    caller can release them.
    """

    result = BuildResult.NOT_BUILT

    def __init__(self, message: str, *, reserved: Sequence[ReservedDevice] = ()) -> None:
        super().__init__(message)
        self.reserved: list[ReservedDevice] = list(reserved)


class RemoteAPIError(StfError):
    """Transport or HTTP failure talking to the farm."""


class NoMatchingDeviceError(StfError):
    """The filter matches zero farm devices."""


class CapacityError(StfError):
    """Matching devices exist but none became available in time."""


# ── adb / connection ────────────────────────────────────────────


class AdbError(StfLeaseError):
    """adb command error."""


class AdbKeyError(SetupError):
    """Could not install the configured adb key pair."""

    result = BuildResult.NOT_BUILT


class WorkspaceError(SetupError):
    """Job workspace is unavailable."""


class ConnectionTimeoutError(SetupError):
    """No reserved device reached the ready state in time."""


class JobAbortedError(SetupError):
    """A stop request (SIGINT/SIGTERM) arrived while the session was being set up."""


# ── Log capture / teardown ──────────────────────────────────────


class CaptureError(StfLeaseError):
    """Log capture could not be started; that device logs nothing."""


class TeardownError(StfLeaseError):
    """Non-fatal fault collected during teardown. Never raised past teardown."""

    def __init__(self, step: str, target: str, message: str) -> None:
        super().__init__(f"{step} {target}: {message}")
        self.step = step
        self.target = target
