"""Centralised configuration via Pydantic Settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings

from stflease.shared.models import FarmConfig


class Settings(BaseSettings):
    """Job-wide configuration loaded from environment variables."""

    model_config = {"env_prefix": "STFLEASE_", "frozen": True}

    # OpenSTF
    stf_api_endpoint: str = ""
    stf_token: str = ""
    ignore_cert_error: bool = False
    http_timeout_seconds: int = 30

    # Reservation
    # Seconds to keep polling the farm for a matching device to be released.
    device_release_wait_seconds: int = 0
    # Reserve every available matching device instead of the first one.
    reserve_all_filtered_devices: bool = False
    reserve_poll_interval_seconds: int = 10

    # adb
    adb_bin: str = "adb"
    adb_server_port: int = 5037
    adb_command_timeout_seconds: float = 5.0
    # Optional key pair installed into the adb user dir before connecting.
    adb_public_key: str = ""
    adb_private_key: str = ""
    adb_user_dir: str = "~/.android"
    android_sdk_root: str = ""

    # Connection
    connect_timeout_ms: int = 30_000
    settle_seconds: float = 5.0

    # Log capture
    logcat_grace_seconds: float = 3.0
    kill_process_timeout_seconds: float = 10.0

    # Job
    workspace_dir: str = "."
    artifact_dir: str = "./artifacts"

    @property
    def farm(self) -> FarmConfig:
        return FarmConfig(
            endpoint=self.stf_api_endpoint,
            token=self.stf_token,
            ignore_cert_error=self.ignore_cert_error,
        )

    @property
    def use_specific_key(self) -> bool:
        return bool(self.adb_public_key.strip() and self.adb_private_key.strip())

    @property
    def resolved_adb_bin(self) -> str:
        if self.android_sdk_root and self.adb_bin == "adb":
            return f"{self.android_sdk_root.rstrip('/')}/platform-tools/adb"
        return self.adb_bin


def get_settings() -> Settings:
    """Build settings from the environment; tests patch this."""
    return Settings()
