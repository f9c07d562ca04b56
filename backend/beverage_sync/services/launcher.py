"""Detached process launchers and command channels for the control plane."""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from beverage_sync.errors import RemoteCommandError
from beverage_sync.services.locking import pid_alive

logger = logging.getLogger(__name__)


@dataclass
class LaunchHandle:
    name: str
    pid: int | None = None


class ProcessLauncher(Protocol):
    """Starts a named background process that outlives its caller."""

    def start(self, name: str, argv: list[str]) -> LaunchHandle: ...

    def is_alive(self, name: str) -> bool: ...


class SubprocessLauncher:
    """
    Detach with ``start_new_session`` and track the child through a pid file.

    The child logs to its own run-kind log file, so its stdio is discarded.
    Children started by this instance are polled (and so reaped) when
    checked; others are checked through the pid file.
    """

    def __init__(self, run_dir: Path, cwd: Path | None = None):
        self.run_dir = run_dir
        self.cwd = cwd
        self._children: dict[str, subprocess.Popen] = {}

    def pid_path(self, name: str) -> Path:
        return self.run_dir / f".{name}.pid"

    def start(self, name: str, argv: list[str]) -> LaunchHandle:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Launching {name}: {shlex.join(argv)}")
        proc = subprocess.Popen(
            argv,
            cwd=self.cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        self._children[name] = proc
        self.pid_path(name).write_text(str(proc.pid), encoding="utf-8")
        return LaunchHandle(name=name, pid=proc.pid)

    def is_alive(self, name: str) -> bool:
        proc = self._children.get(name)
        if proc is not None:
            if proc.poll() is None:
                return True
            logger.info(f"{name} exited with code {proc.returncode}")
            del self._children[name]
            return False
        try:
            pid = self.pid_path(name).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return False
        return pid_alive(pid)


class ScreenLauncher:
    """Run inside a detached GNU screen session named after the run kind."""

    def __init__(self, cwd: Path | None = None):
        self.cwd = cwd

    def start(self, name: str, argv: list[str]) -> LaunchHandle:
        logger.info(f"Launching screen session {name}: {shlex.join(argv)}")
        subprocess.run(["screen", "-dmS", name, *argv], cwd=self.cwd, check=True)
        return LaunchHandle(name=name)

    def is_alive(self, name: str) -> bool:
        try:
            result = subprocess.run(
                ["screen", "-ls"], capture_output=True, text=True, timeout=10
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Could not list screen sessions: {e}")
            return False
        return any(
            line.split()[0].endswith(f".{name}")
            for line in result.stdout.splitlines()
            if line.strip() and "." in line.split()[0]
        )


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class CommandChannel(Protocol):
    async def run(self, command: str, timeout: float) -> CommandResult: ...


class LocalChannel:
    """Run a shell command on this host."""

    async def _exec(self, argv: list[str], timeout: float) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RemoteCommandError(f"Could not run {argv[0]}: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise RemoteCommandError(f"Command timed out after {timeout}s") from e
        return CommandResult(
            returncode=proc.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def run(self, command: str, timeout: float) -> CommandResult:
        return await self._exec(["sh", "-c", command], timeout)


class SshChannel(LocalChannel):
    """Run a shell command on the orchestrator host over ssh."""

    # ssh reserves 255 for its own connection errors
    SSH_FAILURE = 255

    def __init__(self, host: str, user: str | None = None, key_path: str | None = None):
        self.host = host
        self.user = user
        self.key_path = key_path

    def argv(self, command: str) -> list[str]:
        argv = ["ssh"]
        if self.key_path:
            argv += ["-i", os.path.expanduser(self.key_path)]
        argv += ["-o", "StrictHostKeyChecking=no", "-o", "ConnectTimeout=10"]
        target = f"{self.user}@{self.host}" if self.user else self.host
        return [*argv, target, command]

    async def run(self, command: str, timeout: float) -> CommandResult:
        result = await self._exec(self.argv(command), timeout)
        if result.returncode == self.SSH_FAILURE:
            raise RemoteCommandError(
                f"ssh to {self.host} failed: {result.stderr.strip() or 'connection error'}"
            )
        return result
