"""Trigger and status protocol for detached pipeline runs."""

import logging
import shlex
import sys
from collections import deque
from pathlib import Path

from pydantic import ValidationError

from beverage_sync.config import RunKind, Settings
from beverage_sync.errors import RemoteCommandError
from beverage_sync.schemas.run import (
    LockInfo,
    RunOptions,
    RunStatus,
    StartResult,
    StartStatus,
    utc_now_iso,
)
from beverage_sync.services.launcher import (
    CommandChannel,
    ProcessLauncher,
    ScreenLauncher,
    SshChannel,
    SubprocessLauncher,
)
from beverage_sync.services.locking import LockManager, pid_alive

logger = logging.getLogger(__name__)


def read_lock_state(path: Path) -> tuple[LockInfo | None, bool]:
    """Return (holder, stale). A stale lock is reported but never blocks a start."""
    manager = LockManager(path)
    if not path.exists():
        return None, False
    holder = manager.read()
    if holder is None:
        return None, True
    return holder, not pid_alive(holder.pid)


def read_log_tail(path: Path, lines: int = 50) -> list[str]:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
    except FileNotFoundError:
        return []


def session_running(launcher: ProcessLauncher, name: str) -> bool:
    return launcher.is_alive(name)


def make_launcher(settings: Settings) -> ProcessLauncher:
    if settings.launcher == "screen":
        return ScreenLauncher()
    if settings.launcher == "subprocess":
        return SubprocessLauncher(settings.data_dir)
    raise ValueError(f"Unknown launcher: {settings.launcher}")


class RunController:
    """Start and inspect runs on this host."""

    def __init__(self, settings: Settings, launcher: ProcessLauncher | None = None):
        self.settings = settings
        self.launcher = launcher or make_launcher(settings)

    def run_argv(self, kind: RunKind, options: RunOptions) -> list[str]:
        python = self.settings.python_executable or sys.executable
        return [python, "-m", "beverage_sync.cli", "run", kind.value, *options.to_argv()]

    async def status(self, kind: RunKind) -> RunStatus:
        holder, stale = read_lock_state(self.settings.lock_path(kind))
        session_active = session_running(self.launcher, self.settings.session_name(kind))
        return RunStatus(
            kind=kind.value,
            running=(holder is not None and not stale) or session_active,
            started_at=holder.started_at if holder else None,
            pid=holder.pid if holder else None,
            lock_stale=stale,
            session_active=session_active,
            log_tail=read_log_tail(
                self.settings.log_path(kind), self.settings.log_tail_lines
            ),
        )

    async def start(self, kind: RunKind, options: RunOptions | None = None) -> StartResult:
        """
        Launch a detached run unless one is already live.

        The run takes its own lock once started; a start that races another
        start makes the second process exit with a lock conflict.
        """
        options = options or RunOptions()
        holder, stale = read_lock_state(self.settings.lock_path(kind))
        if holder is not None and not stale:
            return StartResult(
                status=StartStatus.ALREADY_RUNNING,
                kind=kind.value,
                started_at=holder.started_at,
                pid=holder.pid,
                message=f"{kind} already running since {holder.started_at} (pid {holder.pid})",
                options=options,
            )

        session = self.settings.session_name(kind)
        if session_running(self.launcher, session):
            return StartResult(
                status=StartStatus.ALREADY_RUNNING,
                kind=kind.value,
                message=f"{kind} session {session} is still active",
                options=options,
            )

        message = f"{kind} started in background session {session}"
        if stale:
            logger.warning(f"Stale {kind} lock found; the new run will reclaim it")
            message += " (stale lock from a previous run will be reclaimed)"

        handle = self.launcher.start(session, self.run_argv(kind, options))
        return StartResult(
            status=StartStatus.STARTED,
            kind=kind.value,
            started_at=utc_now_iso(),
            pid=str(handle.pid) if handle.pid else None,
            message=message,
            options=options,
        )


class RemoteRunController:
    """
    Same contract as ``RunController``, executed on the orchestrator host.

    Invokes ``beverage-sync trigger|status --json`` over the channel and
    parses the JSON it prints.
    """

    def __init__(self, settings: Settings, channel: CommandChannel | None = None):
        self.settings = settings
        self.channel = channel or SshChannel(
            settings.remote_host, settings.remote_user, settings.remote_key_path
        )

    def _command(self, *args: str) -> str:
        return f"cd {self.settings.remote_app_path} && beverage-sync {shlex.join(args)}"

    async def _call(self, *args: str) -> str:
        result = await self.channel.run(
            self._command(*args), timeout=self.settings.remote_command_timeout_seconds
        )
        if not result.stdout.strip():
            raise RemoteCommandError(
                f"No response from orchestrator host (exit {result.returncode}): "
                f"{result.stderr.strip()}"
            )
        return result.stdout

    async def status(self, kind: RunKind) -> RunStatus:
        output = await self._call("status", kind.value, "--json")
        try:
            return RunStatus.model_validate_json(output)
        except ValidationError as e:
            raise RemoteCommandError(f"Unparseable status response: {e}") from e

    async def start(self, kind: RunKind, options: RunOptions | None = None) -> StartResult:
        options = options or RunOptions()
        output = await self._call("trigger", kind.value, *options.to_argv(), "--json")
        try:
            return StartResult.model_validate_json(output)
        except ValidationError as e:
            raise RemoteCommandError(f"Unparseable trigger response: {e}") from e


def get_controller(settings: Settings) -> RunController | RemoteRunController:
    if settings.remote_host:
        return RemoteRunController(settings)
    return RunController(settings)
