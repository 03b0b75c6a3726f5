"""Job runner: lease devices, run the job command, always release."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from collections.abc import Mapping, Sequence

from stflease.config import Settings, get_settings
from stflease.farm.adb import AdbConnection
from stflease.farm.client import StfClient
from stflease.farm.filters import FilterSpec, parse_condition
from stflease.farm.interfaces import DebugBridge, DeviceFarm
from stflease.farm.service import ReservationSession
from stflease.shared.enums import BuildResult
from stflease.shared.exceptions import SetupError, ValidationError
from stflease.shared.models import ReservedDevice

logger = logging.getLogger(__name__)


def build_session(settings: Settings, farm: DeviceFarm, adb: DebugBridge, spec: FilterSpec) -> ReservationSession:
    """Wire a session from settings."""
    key_pair = (settings.adb_public_key, settings.adb_private_key) if settings.use_specific_key else None
    return ReservationSession(
        farm,
        adb,
        settings.farm,
        spec,
        workspace=settings.workspace_dir,
        artifact_dir=settings.artifact_dir,
        reserve_all=settings.reserve_all_filtered_devices,
        settle_seconds=settings.settle_seconds,
        logcat_grace_seconds=settings.logcat_grace_seconds,
        kill_timeout_seconds=settings.kill_process_timeout_seconds,
        adb_key_pair=key_pair,
        adb_user_dir=settings.adb_user_dir,
        android_sdk_root=settings.android_sdk_root or None,
    )


def _default_farm(settings: Settings) -> StfClient:
    return StfClient(timeout=settings.http_timeout_seconds, poll_interval=settings.reserve_poll_interval_seconds)


def _default_adb(settings: Settings) -> AdbConnection:
    return AdbConnection(
        adb_bin=settings.resolved_adb_bin,
        server_port=settings.adb_server_port,
        timeout=settings.adb_command_timeout_seconds,
    )


async def _prepare(
    settings: Settings,
    conditions: Sequence[tuple[str, str]],
    farm: DeviceFarm,
    variables: Mapping[str, str],
) -> FilterSpec:
    """Validate the filter and farm configuration before anything is reserved.

    Raises:
        ValidationError: Bad filter, endpoint or token.
    """
    spec = FilterSpec.validate(conditions, variables)
    await farm.check_endpoint(settings.farm)
    await farm.check_token(settings.farm)
    return spec


async def run_command(
    command: Sequence[str],
    env: Mapping[str, str],
    *,
    stop_event: asyncio.Event | None = None,
    kill_timeout: float = 10.0,
) -> int:
    """Run the job command with the session bindings added to the environment.

    A ``stop_event`` that fires first terminates the command (SIGTERM, then
    SIGKILL after ``kill_timeout`` seconds); its exit status is returned.
    """
    merged = {**os.environ, **env}
    try:
        proc = await asyncio.create_subprocess_exec(*command, env=merged)
    except OSError as exc:
        logger.error("could not start job command %s: %s", command[0], exc)
        return 127
    if stop_event is None:
        return await proc.wait()

    waiter = asyncio.ensure_future(proc.wait())
    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _terminate(proc, kill_timeout)
        raise
    finally:
        stopper.cancel()
        if not waiter.done():
            waiter.cancel()

    if proc.returncode is None:
        logger.warning("stop requested, terminating job command %s (pid %s)", command[0], proc.pid)
        await _terminate(proc, kill_timeout)
    return proc.returncode if proc.returncode is not None else -1


async def _terminate(proc: asyncio.subprocess.Process, kill_timeout: float) -> None:
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=kill_timeout)
    except ProcessLookupError:
        return
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


async def run_job(
    settings: Settings,
    conditions: Sequence[tuple[str, str]],
    command: Sequence[str],
    *,
    farm: DeviceFarm | None = None,
    adb: DebugBridge | None = None,
    variables: Mapping[str, str] | None = None,
    stop_event: asyncio.Event | None = None,
) -> BuildResult:
    """Lease devices for ``command`` and report the job result.

    Configuration and reservation failures yield ``NOT_BUILT``; connection,
    workspace and job failures yield ``FAILURE``, as does a ``stop_event``
    that fires while the command runs.
    """
    farm = farm or _default_farm(settings)
    variables = dict(os.environ) if variables is None else variables

    try:
        spec = await _prepare(settings, conditions, farm, variables)
    except ValidationError as exc:
        logger.error("invalid configuration: %s", exc)
        return BuildResult.NOT_BUILT

    session = build_session(settings, farm, adb or _default_adb(settings), spec)
    try:
        handle = await session.setup(
            settings.device_release_wait_seconds,
            settings.connect_timeout_ms,
            stop_event=stop_event,
        )
    except SetupError as exc:
        logger.error("device setup failed: %s", exc)
        return exc.result

    try:
        for summary in handle.summaries:
            logger.info("using %s", summary)
        if not command:
            logger.warning("no job command given; releasing devices")
            return BuildResult.SUCCESS
        rc = await run_command(
            command,
            handle.env,
            stop_event=stop_event,
            kill_timeout=settings.kill_process_timeout_seconds,
        )
        if stop_event is not None and stop_event.is_set():
            logger.warning("job interrupted (exit %d); releasing devices", rc)
            return BuildResult.FAILURE
        if rc != 0:
            logger.error("job command exited with %d", rc)
            return BuildResult.FAILURE
        return BuildResult.SUCCESS
    finally:
        await session.teardown()
        for path in session.archived_logs:
            logger.info("logcat archived to %s", path)


async def preview(
    settings: Settings,
    conditions: Sequence[tuple[str, str]],
    *,
    farm: DeviceFarm | None = None,
    variables: Mapping[str, str] | None = None,
) -> list[ReservedDevice]:
    """List the devices a condition set would select, reserving nothing."""
    farm = farm or _default_farm(settings)
    spec = FilterSpec.validate(conditions, dict(os.environ) if variables is None else variables)
    return await farm.list_matching(settings.farm, spec)


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("signal handlers unavailable for %s", sig)


async def _run_cli(args: argparse.Namespace, settings: Settings) -> int:
    conditions = [parse_condition(raw) for raw in args.condition]

    if args.command == "preview":
        devices = await preview(settings, conditions)
        for device in devices:
            print(f"{device.serial}\t{device.summary()}\t{device.icon_url(settings.stf_api_endpoint)}")
        return 0

    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)
    job = list(args.job)
    if job and job[0] == "--":
        job = job[1:]
    result = await run_job(settings, conditions, job, stop_event=stop_event)
    logger.info("job finished: %s", result.value)
    return result.exit_code


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stflease-run", description="Lease STF devices for a build job.")
    sub = parser.add_subparsers(dest="command", required=True)
    for name in ("run", "preview"):
        cmd = sub.add_parser(name)
        cmd.add_argument(
            "-c",
            "--condition",
            action="append",
            default=[],
            metavar="NAME=VALUE",
            help="device attribute condition; wrap VALUE in /.../ for a regexp",
        )
        if name == "run":
            cmd.add_argument("job", nargs=argparse.REMAINDER, help="job command, after --")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for ``stflease-run`` / ``python -m stflease.farm.worker``."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = _parser().parse_args(argv)
    try:
        code = asyncio.run(_run_cli(args, get_settings()))
    except SetupError as exc:
        logger.error("%s", exc)
        code = exc.result.exit_code
    sys.exit(code)


if __name__ == "__main__":
    main()
