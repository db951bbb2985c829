import asyncio
import stat
import time

import pytest

from activities import kiro_cli
from activities.kiro_cli import KiroCLIExecutor
from errors import KiroCLIError
from models.schemas import ExecutionOptions


def _script(tmp_path, body: str):
    path = tmp_path / "kiro"
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def no_git(monkeypatch):
    monkeypatch.setattr(kiro_cli, "changed_files", lambda repo_path: ["src/login.ts", "src/login.test.ts"])


def test_build_command():
    executor = KiroCLIExecutor("/repo", executable="kiro")
    options = ExecutionOptions(spec_path=".kiro/specs/login", task_id="2.1", custom_args=["--verbose"])

    assert executor.build_command("2.1", options) == [
        "kiro", "execute-task", "--spec", ".kiro/specs/login", "--task", "2.1", "--verbose",
    ]


@pytest.mark.asyncio
async def test_successful_run_collects_output_and_modified_files(tmp_path, no_git):
    spawned = []
    executor = KiroCLIExecutor(
        str(tmp_path),
        executable=_script(tmp_path, 'echo "task $5 done"; echo "warning" >&2'),
        on_spawn=spawned.append,
    )

    result = await executor.execute_task("2.1", ExecutionOptions(".kiro/specs/login", "2.1", timeout_ms=10_000))

    assert result.success
    assert not result.timed_out
    assert "task 2.1 done" in result.output
    assert "warning" in result.output
    assert result.modified_files == ["src/login.ts", "src/login.test.ts"]
    assert len(spawned) == 1


@pytest.mark.asyncio
async def test_non_zero_exit_raises_with_stderr(tmp_path, no_git):
    executor = KiroCLIExecutor(str(tmp_path), executable=_script(tmp_path, 'echo "spec not found" >&2; exit 3'))

    with pytest.raises(KiroCLIError) as exc_info:
        await executor.execute_task("1", ExecutionOptions(".kiro/specs/login", "1", timeout_ms=10_000))

    err = exc_info.value
    assert err.exit_code == 3
    assert err.message == "Command failed with exit code 3"
    assert "spec not found" in err.output
    assert "execute-task" in err.command
    assert not err.timed_out


@pytest.mark.asyncio
async def test_missing_executable_raises(tmp_path):
    executor = KiroCLIExecutor(str(tmp_path), executable=str(tmp_path / "missing-kiro"))

    with pytest.raises(KiroCLIError) as exc_info:
        await executor.execute_task("1", ExecutionOptions(".kiro/specs/login", "1"))

    assert exc_info.value.message.startswith("Failed to execute command")


@pytest.mark.asyncio
async def test_timeout_terminates_and_returns_partial_result(tmp_path, no_git):
    executor = KiroCLIExecutor(
        str(tmp_path),
        executable=_script(tmp_path, 'echo "generating"; exec sleep 30'),
        kill_grace_seconds=5,
    )

    started = time.monotonic()
    result = await executor.execute_task("1", ExecutionOptions(".kiro/specs/login", "1", timeout_ms=100))
    elapsed = time.monotonic() - started

    assert elapsed < 10
    assert not result.success
    assert result.timed_out
    assert result.partial_result
    assert result.errors == ["Command timed out after 100ms"]
    assert "generating" in result.output
    assert result.modified_files == ["src/login.ts", "src/login.test.ts"]


@pytest.mark.asyncio
async def test_timeout_escalates_to_kill_when_term_is_ignored(tmp_path, no_git):
    executor = KiroCLIExecutor(
        str(tmp_path),
        executable=_script(tmp_path, "trap '' TERM; while true; do sleep 1; done"),
        kill_grace_seconds=0.3,
    )

    started = time.monotonic()
    result = await executor.execute_task("1", ExecutionOptions(".kiro/specs/login", "1", timeout_ms=200))

    assert result.timed_out
    assert time.monotonic() - started < 10


@pytest.mark.asyncio
async def test_timeout_without_git_still_returns_partial_result(tmp_path):
    executor = KiroCLIExecutor(str(tmp_path), executable=_script(tmp_path, "exec sleep 30"), kill_grace_seconds=5)

    result = await executor.execute_task("1", ExecutionOptions(".kiro/specs/login", "1", timeout_ms=200))

    assert result.timed_out
    assert result.modified_files == []


@pytest.mark.asyncio
async def test_warning_timer_starts_shutdown_before_hard_timeout(tmp_path, no_git, monkeypatch):
    monkeypatch.setattr(kiro_cli, "GRACEFUL_SHUTDOWN_WINDOW_MS", 2500)
    executor = KiroCLIExecutor(str(tmp_path), executable=_script(tmp_path, "exec sleep 30"), kill_grace_seconds=5)

    started = time.monotonic()
    result = await executor.execute_task("1", ExecutionOptions(".kiro/specs/login", "1", timeout_ms=3000))
    elapsed = time.monotonic() - started

    # SIGTERM at 500ms, well before the 3s hard timer
    assert elapsed < 2.5
    assert result.timed_out
    assert result.partial_result


@pytest.mark.asyncio
async def test_escalation_runs_once_when_both_timers_fire(tmp_path, no_git, monkeypatch):
    monkeypatch.setattr(kiro_cli, "GRACEFUL_SHUTDOWN_WINDOW_MS", 300)
    terminated = []
    terminate = asyncio.subprocess.Process.terminate

    def counting_terminate(proc):
        terminated.append(proc.pid)
        terminate(proc)

    monkeypatch.setattr(asyncio.subprocess.Process, "terminate", counting_terminate)
    # TERM is ignored, so the hard timer at 600ms fires while the warning escalation still waits
    executor = KiroCLIExecutor(
        str(tmp_path),
        executable=_script(tmp_path, "trap '' TERM; while true; do sleep 1; done"),
        kill_grace_seconds=1.0,
    )

    result = await executor.execute_task("1", ExecutionOptions(".kiro/specs/login", "1", timeout_ms=600))

    assert result.timed_out
    assert len(terminated) == 1


@pytest.mark.asyncio
async def test_exit_hook_reports_reaped_child(tmp_path, no_git):
    spawned, exited = [], []
    executor = KiroCLIExecutor(
        str(tmp_path),
        executable=_script(tmp_path, "exit 0"),
        on_spawn=spawned.append,
        on_exit=exited.append,
    )

    await executor.execute_task("1", ExecutionOptions(".kiro/specs/login", "1", timeout_ms=10_000))

    assert exited == spawned
    assert len(exited) == 1


@pytest.mark.asyncio
async def test_exit_hook_runs_after_failed_exit(tmp_path, no_git):
    exited = []
    executor = KiroCLIExecutor(str(tmp_path), executable=_script(tmp_path, "exit 2"), on_exit=exited.append)

    with pytest.raises(KiroCLIError):
        await executor.execute_task("1", ExecutionOptions(".kiro/specs/login", "1", timeout_ms=10_000))

    assert len(exited) == 1
