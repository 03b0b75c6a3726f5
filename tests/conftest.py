"""Shared pytest fixtures for the stf-lease test suite."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import pytest

from stflease.config import Settings
from stflease.shared.models import FarmConfig, ReservedDevice


@pytest.fixture()
def settings(tmp_path: Any) -> Settings:
    """Return a Settings instance with test defaults."""
    return Settings(
        stf_api_endpoint="https://stf.example.com",
        stf_token="test-token",
        workspace_dir=str(tmp_path / "workspace"),
        artifact_dir=str(tmp_path / "artifacts"),
        settle_seconds=0,
        logcat_grace_seconds=0.1,
        kill_process_timeout_seconds=1,
        connect_timeout_ms=300,
    )


@pytest.fixture()
def farm_config() -> FarmConfig:
    return FarmConfig(endpoint="https://stf.example.com", token="test-token")


@pytest.fixture()
def device_record() -> dict[str, Any]:
    return {
        "serial": "emulator-5554",
        "name": "Pixel 6",
        "model": "Pixel 6",
        "manufacturer": "Google",
        "sdk": "33",
        "version": "13",
        "abi": "arm64-v8a",
        "image": "pixel6.jpg",
        "present": True,
        "ready": True,
        "using": False,
        "owner": None,
    }


@pytest.fixture()
def reserved_device(device_record: dict[str, Any]) -> ReservedDevice:
    return ReservedDevice.from_record(device_record, remote_connect_url="stf.example.com:7401")


@pytest.fixture()
def mock_adb() -> AsyncMock:
    """Mock debug bridge whose commands all succeed."""
    mock = AsyncMock()
    mock.server_port = 5037
    mock.devices.return_value = "List of devices attached\n"
    mock.spawn_logcat.return_value = AsyncMock(returncode=0)
    return mock
