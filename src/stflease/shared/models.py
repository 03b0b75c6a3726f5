"""Frozen Pydantic domain models shared by all modules."""

from __future__ import annotations

from typing import Any
from urllib.parse import urljoin

from pydantic import BaseModel, Field

_ICON_PATH = "/static/app/devices/icon/x120/"
_DEFAULT_ICON = "_default.jpg"


class FarmConfig(BaseModel):
    """Connection settings for one farm call. Passed explicitly, never shared."""

    model_config = {"frozen": True}

    endpoint: str
    token: str
    ignore_cert_error: bool = False

    @property
    def base_url(self) -> str:
        return self.endpoint.rstrip("/")


class ReservedDevice(BaseModel):
    """A farm device claimed by this job."""

    model_config = {"frozen": True}

    serial: str
    remote_connect_url: str
    name: str = ""
    model: str = ""
    manufacturer: str = ""
    sdk: str = ""
    version: str = ""
    abi: str = ""
    image: str | None = None
    record: dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_record(cls, record: dict[str, Any], *, remote_connect_url: str | None = None) -> ReservedDevice:
        """Build from a raw ``/api/v1/devices`` entry."""
        url = remote_connect_url or record.get("remoteConnectUrl") or ""
        return cls(
            serial=str(record["serial"]),
            remote_connect_url=str(url),
            name=str(record.get("name") or record.get("model") or ""),
            model=str(record.get("model") or ""),
            manufacturer=str(record.get("manufacturer") or ""),
            sdk=str(record.get("sdk") or ""),
            version=str(record.get("version") or ""),
            abi=str(record.get("abi") or ""),
            image=record.get("image") or None,
            record=dict(record),
        )

    @property
    def adb_serial(self) -> str:
        """Identifier adb knows the device by once connected."""
        return self.remote_connect_url or self.serial

    def icon_url(self, endpoint: str) -> str:
        path = _ICON_PATH + (self.image or _DEFAULT_ICON)
        try:
            return urljoin(endpoint, path)
        except ValueError:
            return ""

    def summary(self) -> str:
        return f"{self.name} (SDK {self.sdk}, Android {self.version})"
