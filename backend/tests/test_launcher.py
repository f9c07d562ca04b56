"""Tests for process launchers and command channels."""

import asyncio
import os
import signal
import subprocess
import sys
import time

import pytest

from beverage_sync.config import RunKind
from beverage_sync.errors import RemoteCommandError
from beverage_sync.schemas.run import StartStatus
from beverage_sync.services.control import RunController
from beverage_sync.services.launcher import (
    CommandResult,
    LocalChannel,
    ScreenLauncher,
    SshChannel,
    SubprocessLauncher,
)

QUICK_EXIT = [sys.executable, "-c", "pass"]
SESSION = "beverage-sync-forward"


def wait_for_exit(is_alive, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_alive():
            return True
        time.sleep(0.05)
    return False


class TestSubprocessLauncher:
    def test_start_writes_pid_file(self, tmp_path):
        launcher = SubprocessLauncher(tmp_path)

        handle = launcher.start(SESSION, [sys.executable, "-c", "import time; time.sleep(30)"])

        try:
            assert launcher.pid_path(SESSION).read_text() == str(handle.pid)
            assert launcher.is_alive(SESSION)
        finally:
            os.kill(handle.pid, signal.SIGKILL)
        assert wait_for_exit(lambda: launcher.is_alive(SESSION))

    def test_finished_child_is_not_alive(self, tmp_path):
        launcher = SubprocessLauncher(tmp_path)

        launcher.start(SESSION, QUICK_EXIT)

        assert wait_for_exit(lambda: launcher.is_alive(SESSION))
        assert SESSION not in launcher._children

    def test_finished_child_seen_by_another_launcher(self, tmp_path):
        SubprocessLauncher(tmp_path).start(SESSION, QUICK_EXIT)

        # A new launcher per request only has the pid file to go on
        assert wait_for_exit(lambda: SubprocessLauncher(tmp_path).is_alive(SESSION))

    def test_no_pid_file(self, tmp_path):
        assert not SubprocessLauncher(tmp_path).is_alive(SESSION)


@pytest.mark.asyncio
async def test_finished_run_does_not_block_next_start(test_settings):
    controller = RunController(test_settings, launcher=SubprocessLauncher(test_settings.data_dir))
    controller.run_argv = lambda kind, options: QUICK_EXIT

    first = await controller.start(RunKind.FORWARD)
    assert first.status == StartStatus.STARTED

    # The API builds a fresh controller for every request
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        status = await RunController(test_settings).status(RunKind.FORWARD)
        if not status.running:
            break
        await asyncio.sleep(0.05)

    assert not status.running
    assert not status.session_active

    second = await controller.start(RunKind.FORWARD)
    assert second.status == StartStatus.STARTED
    assert wait_for_exit(lambda: controller.launcher.is_alive(SESSION))


class TestScreenLauncher:
    def test_start(self, monkeypatch):
        calls = []

        def fake_run(args, **kwargs):
            calls.append((args, kwargs))
            return subprocess.CompletedProcess(args, 0)

        monkeypatch.setattr(subprocess, "run", fake_run)

        handle = ScreenLauncher().start(SESSION, ["beverage-sync", "run", "forward"])

        assert calls[0][0] == ["screen", "-dmS", SESSION, "beverage-sync", "run", "forward"]
        assert calls[0][1]["check"] is True
        assert handle.pid is None

    def test_is_alive_parses_session_list(self, monkeypatch):
        output = (
            "There is a screen on:\n"
            f"\t1234.{SESSION}\t(Detached)\n"
            "1 Socket in /run/screen/S-deploy.\n"
        )
        monkeypatch.setattr(
            subprocess,
            "run",
            lambda args, **kwargs: subprocess.CompletedProcess(args, 1, stdout=output),
        )

        launcher = ScreenLauncher()

        assert launcher.is_alive(SESSION)
        assert not launcher.is_alive("beverage-sync-backfill")

    def test_screen_not_installed(self, monkeypatch):
        def missing(args, **kwargs):
            raise FileNotFoundError("screen")

        monkeypatch.setattr(subprocess, "run", missing)

        assert not ScreenLauncher().is_alive(SESSION)


class TestLocalChannel:
    @pytest.mark.asyncio
    async def test_success(self):
        result = await LocalChannel().run("echo hi", timeout=5)

        assert result.returncode == 0
        assert result.stdout == "hi\n"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_returned(self):
        result = await LocalChannel().run("echo oops >&2; exit 3", timeout=5)

        assert result.returncode == 3
        assert result.stderr == "oops\n"

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(RemoteCommandError, match="timed out"):
            await LocalChannel().run("sleep 5", timeout=0.1)

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        with pytest.raises(RemoteCommandError, match="Could not run"):
            await LocalChannel()._exec([str(tmp_path / "no-such-binary")], timeout=5)


class TestSshChannel:
    @pytest.mark.asyncio
    async def test_connection_failure(self, monkeypatch):
        channel = SshChannel("orchestrator.internal")

        async def fake_exec(argv, timeout):
            return CommandResult(returncode=255, stdout="", stderr="Connection refused\n")

        monkeypatch.setattr(channel, "_exec", fake_exec)

        with pytest.raises(RemoteCommandError, match="Connection refused"):
            await channel.run("beverage-sync status forward --json", timeout=5)

    @pytest.mark.asyncio
    async def test_command_failure_is_returned(self, monkeypatch):
        channel = SshChannel("orchestrator.internal")

        async def fake_exec(argv, timeout):
            assert argv[-1] == "false"
            return CommandResult(returncode=1, stdout="", stderr="")

        monkeypatch.setattr(channel, "_exec", fake_exec)

        result = await channel.run("false", timeout=5)

        assert result.returncode == 1
