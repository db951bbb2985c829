"""
Activity: Kiro CLI — run ``kiro execute-task`` for one spec task.

The child runs in the repository with the inherited environment. Its stdout
and stderr are collected as they arrive and mirrored to our own streams, so
a run that is cut short still has its partial output.

Timeout escalation:
  - a warning timer at (timeout - 5 min), only when the timeout is longer
    than the 5 minute graceful window
  - a hard timer at the full timeout
Whichever fires first sends SIGTERM, then SIGKILL after a grace period.
Escalation happens at most once. A run that was escalated is reported as a
timeout (partial result), whatever its exit code.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
import sys
from typing import Callable

import config
from activities.git_ops import changed_files
from errors import KiroCLIError
from models.schemas import ExecutionOptions, ExecutionResult
from utils.sanitize import sanitize_string

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60 * 60 * 1000
GRACEFUL_SHUTDOWN_WINDOW_MS = 5 * 60 * 1000
KILL_GRACE_SECONDS = 30.0
READER_DRAIN_SECONDS = 1.0


async def _pump(stream: asyncio.StreamReader, buffer: list[str], mirror) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        text = decoder.decode(chunk)
        buffer.append(text)
        mirror.write(text)
        mirror.flush()
    tail = decoder.decode(b"", final=True)
    if tail:
        buffer.append(tail)


class _ProcessRun:
    """One supervised child process and its escalation state."""

    def __init__(self, proc: asyncio.subprocess.Process, command: str, kill_grace_seconds: float):
        self.proc = proc
        self.command = command
        self.kill_grace_seconds = kill_grace_seconds
        self.escalated = False
        self.stdout: list[str] = []
        self.stderr: list[str] = []

    async def _escalate(self, reason: str) -> None:
        if self.escalated:
            return
        self.escalated = True
        log.warning("%s, sending SIGTERM: %s", reason, sanitize_string(self.command))
        try:
            self.proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self.proc.wait(), self.kill_grace_seconds)
        except asyncio.TimeoutError:
            log.error("Process %d did not terminate gracefully, forcing kill", self.proc.pid)
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass

    async def _timer(self, delay_ms: int, reason: str) -> None:
        await asyncio.sleep(delay_ms / 1000)
        await self._escalate(reason)

    async def wait(self, timeout_ms: int) -> int:
        readers = [
            asyncio.create_task(_pump(self.proc.stdout, self.stdout, sys.stdout)),
            asyncio.create_task(_pump(self.proc.stderr, self.stderr, sys.stderr)),
        ]
        timers = [asyncio.create_task(self._timer(timeout_ms, f"Command exceeded timeout of {timeout_ms}ms"))]
        if timeout_ms > GRACEFUL_SHUTDOWN_WINDOW_MS:
            timers.append(asyncio.create_task(self._timer(
                timeout_ms - GRACEFUL_SHUTDOWN_WINDOW_MS, "Approaching timeout limit",
            )))

        try:
            exit_code = await self.proc.wait()
        except asyncio.CancelledError:
            if self.proc.returncode is None:
                self.proc.kill()
            raise
        finally:
            for timer in timers:
                timer.cancel()
            await asyncio.gather(*timers, return_exceptions=True)

        # A grandchild may still hold the pipes open; don't wait on it forever.
        _, pending = await asyncio.wait(readers, timeout=READER_DRAIN_SECONDS)
        for reader in pending:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
        return exit_code

    @property
    def output(self) -> str:
        return "".join(self.stdout) + "".join(self.stderr)


class KiroCLIExecutor:

    def __init__(
        self,
        repo_path: str,
        executable: str = config.KIRO_EXECUTABLE,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
        on_spawn: Callable[[int], None] | None = None,
        on_exit: Callable[[int], None] | None = None,
    ):
        self.repo_path = repo_path
        self.executable = executable
        self.kill_grace_seconds = kill_grace_seconds
        self.on_spawn = on_spawn
        self.on_exit = on_exit

    def build_command(self, task_id: str, options: ExecutionOptions) -> list[str]:
        return [
            self.executable, "execute-task",
            "--spec", options.spec_path,
            "--task", task_id,
            *options.custom_args,
        ]

    async def track_file_changes(self) -> list[str]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, changed_files, self.repo_path)
        except Exception as e:
            raise KiroCLIError(f"Failed to track file changes: {e}", "git diff") from e

    async def execute_task(self, task_id: str, options: ExecutionOptions) -> ExecutionResult:
        """Run one task. Raises KiroCLIError unless it succeeds or times out."""
        timeout_ms = options.timeout_ms or DEFAULT_TIMEOUT_MS
        argv = self.build_command(task_id, options)
        command = shlex.join(argv)
        log.info("Starting Kiro CLI: task=%s spec=%s timeout=%dms", task_id, options.spec_path, timeout_ms)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.repo_path,
                env=os.environ.copy(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error("Failed to start Kiro CLI: %s", e)
            raise KiroCLIError(f"Failed to execute command: {e}", command) from e

        if self.on_spawn is not None:
            self.on_spawn(proc.pid)

        run = _ProcessRun(proc, command, self.kill_grace_seconds)
        try:
            exit_code = await run.wait(timeout_ms)
        finally:
            # The child is reaped (or killed) here; its pid may be reused from now on.
            if self.on_exit is not None:
                self.on_exit(proc.pid)

        if run.escalated:
            log.warning(
                "Kiro CLI timed out (exit %s), returning partial result: %d chars of output",
                exit_code, len(run.output),
            )
            modified: list[str] = []
            try:
                modified = await self.track_file_changes()
            except Exception as e:
                log.warning("Failed to track file changes after timeout: %s", e)
            return ExecutionResult(
                success=False,
                output=run.output,
                modified_files=modified,
                errors=[f"Command timed out after {timeout_ms}ms"],
                timed_out=True,
                partial_result=True,
            )

        if exit_code != 0:
            log.error("Kiro CLI failed with exit code %d (task %s)", exit_code, task_id)
            raise KiroCLIError(
                f"Command failed with exit code {exit_code}",
                command,
                exit_code,
                "".join(run.stderr) or "".join(run.stdout),
            )

        modified = await self.track_file_changes()
        log.info("Kiro CLI completed: task=%s modified_files=%d", task_id, len(modified))
        return ExecutionResult(success=True, output=run.output, modified_files=modified)
