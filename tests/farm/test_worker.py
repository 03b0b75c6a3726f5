"""Tests for the job runner and its CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from stflease.config import Settings
from stflease.farm.worker import _parser, main, preview, run_command, run_job
from stflease.shared.enums import BuildResult
from stflease.shared.exceptions import CapacityError, ConfigError
from stflease.shared.models import ReservedDevice

READY = "List of devices attached\nstf.example.com:7401\tdevice\n"


@pytest.fixture
def workspace(settings: Settings) -> Path:
    path = Path(settings.workspace_dir)
    path.mkdir(parents=True)
    return path


@pytest.fixture
def mock_farm(reserved_device: ReservedDevice) -> AsyncMock:
    mock = AsyncMock()
    mock.reserve.return_value = [reserved_device]
    mock.list_matching.return_value = [reserved_device]
    return mock


@pytest.fixture
def ready_adb(mock_adb: AsyncMock) -> AsyncMock:
    mock_adb.devices.return_value = READY
    return mock_adb


class TestRunJob:
    async def test_success(
        self, settings: Settings, workspace: Path, mock_farm: AsyncMock, ready_adb: AsyncMock
    ) -> None:
        result = await run_job(settings, [("sdk", "33")], ["true"], farm=mock_farm, adb=ready_adb, variables={})

        assert result is BuildResult.SUCCESS
        mock_farm.release.assert_awaited_once()

    async def test_command_sees_session_environment(
        self, settings: Settings, workspace: Path, mock_farm: AsyncMock, ready_adb: AsyncMock, tmp_path: Path
    ) -> None:
        out = tmp_path / "serial.txt"
        command = ["sh", "-c", f'printf "%s" "$ANDROID_SERIAL" > {out}']

        result = await run_job(settings, [("sdk", "33")], command, farm=mock_farm, adb=ready_adb, variables={})

        assert result is BuildResult.SUCCESS
        assert out.read_text() == "stf.example.com:7401"

    async def test_failing_command(
        self, settings: Settings, workspace: Path, mock_farm: AsyncMock, ready_adb: AsyncMock
    ) -> None:
        result = await run_job(settings, [("sdk", "33")], ["false"], farm=mock_farm, adb=ready_adb, variables={})

        assert result is BuildResult.FAILURE
        mock_farm.release.assert_awaited_once()

    async def test_empty_command_just_releases(
        self, settings: Settings, workspace: Path, mock_farm: AsyncMock, ready_adb: AsyncMock
    ) -> None:
        result = await run_job(settings, [("sdk", "33")], [], farm=mock_farm, adb=ready_adb, variables={})

        assert result is BuildResult.SUCCESS
        mock_farm.release.assert_awaited_once()

    async def test_bad_filter_not_built(self, settings: Settings, mock_farm: AsyncMock, ready_adb: AsyncMock) -> None:
        result = await run_job(settings, [("model", "/[/")], ["true"], farm=mock_farm, adb=ready_adb, variables={})

        assert result is BuildResult.NOT_BUILT
        mock_farm.reserve.assert_not_awaited()

    async def test_empty_filter_not_built(self, settings: Settings, mock_farm: AsyncMock) -> None:
        result = await run_job(settings, [], ["true"], farm=mock_farm, variables={})

        assert result is BuildResult.NOT_BUILT

    async def test_rejected_token_not_built(self, settings: Settings, mock_farm: AsyncMock) -> None:
        mock_farm.check_token.side_effect = ConfigError("STF access token was rejected")

        result = await run_job(settings, [("sdk", "33")], ["true"], farm=mock_farm, variables={})

        assert result is BuildResult.NOT_BUILT
        mock_farm.reserve.assert_not_awaited()

    async def test_capacity_not_built(self, settings: Settings, mock_farm: AsyncMock, ready_adb: AsyncMock) -> None:
        mock_farm.reserve.side_effect = CapacityError("none is available")

        result = await run_job(settings, [("sdk", "33")], ["true"], farm=mock_farm, adb=ready_adb, variables={})

        assert result is BuildResult.NOT_BUILT

    async def test_connection_timeout_fails(
        self, settings: Settings, workspace: Path, mock_farm: AsyncMock, mock_adb: AsyncMock
    ) -> None:
        result = await run_job(settings, [("sdk", "33")], ["true"], farm=mock_farm, adb=mock_adb, variables={})

        assert result is BuildResult.FAILURE
        mock_farm.release.assert_awaited_once()
        mock_adb.disconnect.assert_awaited_once_with("stf.example.com:7401")

    async def test_variables_expanded(
        self, settings: Settings, workspace: Path, mock_farm: AsyncMock, ready_adb: AsyncMock
    ) -> None:
        await run_job(
            settings, [("sdk", "$API_LEVEL")], [], farm=mock_farm, adb=ready_adb, variables={"API_LEVEL": "33"}
        )

        spec = mock_farm.reserve.call_args.args[1]
        assert spec.conditions == {"sdk": "33"}


    async def test_stop_terminates_running_command(
        self, settings: Settings, workspace: Path, mock_farm: AsyncMock, ready_adb: AsyncMock
    ) -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.5, stop.set)
        started = loop.time()

        result = await run_job(
            settings, [("sdk", "33")], ["sleep", "4"], farm=mock_farm, adb=ready_adb, variables={}, stop_event=stop
        )

        assert result is BuildResult.FAILURE
        assert loop.time() - started < 2
        mock_farm.release.assert_awaited_once()
        ready_adb.kill_server.assert_awaited_once()

    async def test_stop_during_settle_releases(
        self, settings: Settings, workspace: Path, mock_farm: AsyncMock, ready_adb: AsyncMock
    ) -> None:
        settings = settings.model_copy(update={"settle_seconds": 30})
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.2, stop.set)
        started = loop.time()

        result = await run_job(
            settings, [("sdk", "33")], ["true"], farm=mock_farm, adb=ready_adb, variables={}, stop_event=stop
        )

        assert result is BuildResult.FAILURE
        assert loop.time() - started < 2
        mock_farm.release.assert_awaited_once()


class TestRunCommand:
    async def test_exit_status_returned(self) -> None:
        assert await run_command(["sh", "-c", "exit 3"], {}, stop_event=asyncio.Event()) == 3

    async def test_stop_terminates_child(self) -> None:
        stop = asyncio.Event()
        stop.set()

        rc = await run_command(["sleep", "30"], {}, stop_event=stop, kill_timeout=2)

        assert rc != 0

    async def test_missing_binary(self) -> None:
        assert await run_command(["/nonexistent/job"], {}) == 127

class TestPreview:
    async def test_preview_reserves_nothing(
        self, settings: Settings, mock_farm: AsyncMock, reserved_device: ReservedDevice
    ) -> None:
        devices = await preview(settings, [("sdk", "33")], farm=mock_farm, variables={})

        assert devices == [reserved_device]
        mock_farm.reserve.assert_not_awaited()


class TestCli:
    def test_run_arguments(self) -> None:
        args = _parser().parse_args(["run", "-c", "sdk=33", "--condition", "abi=/x86.*/", "--", "make", "test"])

        assert args.command == "run"
        assert args.condition == ["sdk=33", "abi=/x86.*/"]
        assert args.job[-2:] == ["make", "test"]

    def test_main_exit_code(self, settings: Settings) -> None:
        with (
            patch("stflease.farm.worker.get_settings", return_value=settings),
            patch("stflease.farm.worker.run_job", new_callable=AsyncMock, return_value=BuildResult.NOT_BUILT),
        ):
            with pytest.raises(SystemExit) as exc_info:
                main(["run", "-c", "sdk=33", "--", "true"])

        assert exc_info.value.code == 2

    def test_main_bad_condition(self, settings: Settings) -> None:
        with patch("stflease.farm.worker.get_settings", return_value=settings):
            with pytest.raises(SystemExit) as exc_info:
                main(["preview", "-c", "sdk"])

        assert exc_info.value.code == 2
