"""
Pipeline Orchestrator — runs one work item through the five phases:

  1. checkout       — branch, spec documents and open pull request must exist
  2. steering       — sync steering files from the central source and commit
  3. kiro-cli       — execute the spec task with the Kiro CLI and commit
  4. tests          — tests must pass and coverage must meet the threshold
  5. pull-request   — push the branch and write the report into the PR body

Phases run strictly in order. Every phase appends a PhaseResult whether it
succeeds or fails; the first failure halts the run and is re-raised after
it has been categorized, sanitized and recorded in ``result.errors``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
import time
import uuid
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable

import config
from activities.git_ops import checkout_branch, commit_changes, push_branch, validate_spec_files
from activities.kiro_cli import KiroCLIExecutor
from activities.pull_request import PullRequestUpdater, generate_pr_body
from activities.steering import sync_steering
from activities.test_run import analyze_coverage, generate_test_summary, run_tests
from config import WorkerConfig
from errors import KiroCLIError, ValidationError, categorize_error
from features.locking import DynamoLockStore, WorkLockManager
from models.schemas import (
    BuildMetadata,
    ExecutionOptions,
    PhaseResult,
    PipelineExecutionResult,
    PipelinePhase,
)
from utils.sanitize import sanitize_error, sanitize_object, sanitize_string

log = logging.getLogger(__name__)


class PipelineOrchestrator:

    def __init__(
        self,
        cfg: WorkerConfig,
        executor: KiroCLIExecutor | None = None,
        pr_updater: PullRequestUpdater | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.executor = executor or KiroCLIExecutor(
            cfg.repo_path, on_spawn=self.register_process, on_exit=self.unregister_process,
        )
        self.pr_updater = pr_updater or PullRequestUpdater(
            cfg.repo_owner, cfg.repo_name, platform=cfg.pr_platform,
            token=config.GITLAB_TOKEN if cfg.pr_platform == "gitlab" else config.GITHUB_TOKEN,
        )
        self._clock = clock
        self._started = 0.0
        self._temp_files: list[str] = []
        self._temp_dirs: list[str] = []
        self._pids: list[int] = []
        self.result = self._new_result()

    def _new_result(self) -> PipelineExecutionResult:
        return PipelineExecutionResult(
            success=False,
            build_id=self.cfg.build_id,
            environment=self.cfg.environment,
            branch_name=self.cfg.branch_name,
        )

    def _elapsed_ms(self, since: float) -> int:
        return int((self._clock() - since) * 1000)

    # ── Resource registration ─────────────────────────────────────────

    def register_temp_file(self, path: str) -> None:
        self._temp_files.append(path)

    def register_temp_dir(self, path: str) -> None:
        self._temp_dirs.append(path)

    def register_process(self, pid: int) -> None:
        self._pids.append(pid)

    def unregister_process(self, pid: int) -> None:
        if pid in self._pids:
            self._pids.remove(pid)

    # ── Run ───────────────────────────────────────────────────────────

    async def execute(self) -> PipelineExecutionResult:
        """Run all phases. Raises the first phase failure; ``self.result`` keeps the record."""
        self._started = self._clock()
        self.result = self._new_result()
        log.info(
            "Pipeline starting: branch=%s spec=%s task=%s build=%s env=%s",
            self.cfg.branch_name, self.cfg.spec_path, self.cfg.task_id or "-",
            self.cfg.build_id or "-", self.cfg.environment,
        )

        try:
            await self._execute_phase(PipelinePhase.CHECKOUT, self._checkout)
            await self._execute_phase(PipelinePhase.STEERING, self._sync_steering)
            await self._execute_phase(PipelinePhase.KIRO_CLI, self._run_kiro)
            await self._execute_phase(PipelinePhase.TESTS, self._run_tests)
            await self._execute_phase(PipelinePhase.PULL_REQUEST, self._update_pull_request)
        except Exception as e:
            message, category = categorize_error(e)
            message = sanitize_string(message)
            self.result.errors.append(message)
            log.error(
                "Pipeline failed [%s] after %d/%d phases: %s",
                category, sum(p.success for p in self.result.phases), len(self.result.phases), message,
            )
            raise
        finally:
            self.result.duration_ms = self._elapsed_ms(self._started)
            self._cleanup()

        self.result.success = True
        log.info(
            "Pipeline completed in %dms (%d phases)", self.result.duration_ms, len(self.result.phases),
        )
        return self.result

    async def _execute_phase(self, phase: PipelinePhase, body: Callable[[], Awaitable[None]]) -> None:
        self._check_timeout()
        started = self._clock()
        log.info("Phase %s starting", phase.value)
        try:
            await body()
        except Exception as e:
            duration = self._elapsed_ms(started)
            self.result.phases.append(PhaseResult(phase.value, False, duration, sanitize_error(e)))
            log.error("Phase %s failed after %dms: %s", phase.value, duration, sanitize_error(e))
            raise
        duration = self._elapsed_ms(started)
        self.result.phases.append(PhaseResult(phase.value, True, duration))
        log.info("Phase %s completed in %dms", phase.value, duration)

    def _check_timeout(self) -> int:
        """Warn when the remaining budget is under the warning threshold."""
        remaining = self.cfg.timeout_ms - self._elapsed_ms(self._started)
        if remaining < config.TIMEOUT_WARNING_MS:
            log.warning(
                "Approaching pipeline timeout: %dms remaining of %dms", max(remaining, 0), self.cfg.timeout_ms,
            )
        return remaining

    async def _run_sync(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    # ── Phases ────────────────────────────────────────────────────────

    async def _checkout(self) -> None:
        cfg = self.cfg
        await self._run_sync(checkout_branch, cfg.repo_path, cfg.branch_name)

        validation = await self._run_sync(validate_spec_files, cfg.repo_path, cfg.spec_path, cfg.branch_name)
        if not validation.is_valid:
            raise ValidationError(
                f"Branch validation failed: {', '.join(validation.errors)}",
                "branch-validation",
                validation.errors,
            )

        if not await self.pr_updater.has_open_pr(cfg.branch_name):
            raise ValidationError(
                f"Pull request does not exist for branch: {cfg.branch_name}",
                "pr-validation",
                [f"No pull request found for branch {cfg.branch_name}"],
            )
        log.info("Branch %s validated", cfg.branch_name)

    async def _sync_steering(self) -> None:
        synced = await self._run_sync(sync_steering, self.cfg.repo_path, self.cfg.steering_source_path)
        for error in synced.errors:
            log.warning("Steering sync: %s", error)
        if synced.added_files or synced.updated_files:
            log.info(
                "Steering files synchronized: %d added, %d updated",
                len(synced.added_files), len(synced.updated_files),
            )

    async def _run_kiro(self) -> None:
        cfg = self.cfg
        execution = await self.executor.execute_task(cfg.task_id, ExecutionOptions(
            spec_path=cfg.spec_path,
            task_id=cfg.task_id,
            timeout_ms=cfg.timeout_ms,
        ))
        self.result.modified_files = execution.modified_files
        self.result.kiro_output = execution.output

        if execution.timed_out:
            raise KiroCLIError(
                f"Kiro CLI timed out: {', '.join(execution.errors or [])}",
                exit_code=None,
                output=execution.output,
                timed_out=True,
            )
        if not execution.success:
            raise KiroCLIError(
                f"Kiro CLI execution failed: {', '.join(execution.errors or [])}",
                output=execution.output,
            )

        log.info("Kiro CLI modified %d files", len(execution.modified_files))
        if execution.modified_files:
            await self._run_sync(
                commit_changes, cfg.repo_path,
                f"feat: implement {cfg.task_id or 'spec tasks'} via Kiro CLI",
                execution.modified_files,
            )

    async def _run_tests(self) -> None:
        cfg = self.cfg
        self.result.test_result = await self._run_sync(run_tests, cfg.repo_path, cfg.test_command)
        self.result.coverage_result = await self._run_sync(
            analyze_coverage, cfg.repo_path, cfg.coverage_threshold, cfg.coverage_command,
        )
        log.info(generate_test_summary(self.result.test_result, self.result.coverage_result))

    async def _update_pull_request(self) -> None:
        cfg = self.cfg
        await self._run_sync(push_branch, cfg.repo_path, cfg.branch_name)

        body = generate_pr_body(
            cfg.task_id,
            self.result.test_result,
            self.result.coverage_result,
            BuildMetadata(
                build_id=cfg.build_id,
                build_url=cfg.build_url,
                environment=cfg.environment,
                timestamp=datetime.now(timezone.utc),
            ),
            threshold=cfg.coverage_threshold,
            modified_files=self.result.modified_files,
        )
        pr = await self.pr_updater.update_pr(cfg.branch_name, body)
        self.result.pr_url = pr.pr_url

    # ── Cleanup ───────────────────────────────────────────────────────

    def _cleanup(self) -> None:
        """Best-effort removal of registered resources. Never raises."""
        log.info(
            "Cleaning up: %d temp files, %d temp dirs, %d processes",
            len(self._temp_files), len(self._temp_dirs), len(self._pids),
        )
        for path in self._temp_files:
            try:
                os.unlink(path)
            except OSError as e:
                log.warning("Failed to remove temp file %s: %s", path, e)
        for path in self._temp_dirs:
            shutil.rmtree(path, ignore_errors=True)
        for pid in self._pids:
            try:
                os.kill(pid, signal.SIGTERM)
                log.info("Terminated process %d", pid)
            except ProcessLookupError:
                log.debug("Process %d already exited", pid)
            except OSError as e:
                log.warning("Failed to terminate process %d: %s", pid, e)
        self._temp_files.clear()
        self._temp_dirs.clear()
        self._pids.clear()


# ── Run records ───────────────────────────────────────────────────────

def new_run_id() -> str:
    return f"run-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


def save_run_log(run_id: str, run_record: dict) -> str:
    """Save the pipeline run log to the pipeline_runs/ directory."""
    runs_dir = config.PIPELINE_RUNS_DIR
    runs_dir.mkdir(parents=True, exist_ok=True)
    file_path = runs_dir / f"{run_id}.json"
    with open(file_path, "w") as f:
        json.dump(run_record, f, indent=2, default=str)
    log.info("Run log saved: %s", file_path)
    return str(file_path)


def load_run_log(run_id: str) -> dict | None:
    file_path = Path(config.PIPELINE_RUNS_DIR) / f"{run_id}.json"
    if not file_path.is_file():
        return None
    with open(file_path) as f:
        return json.load(f)


async def run_pipeline(
    cfg: WorkerConfig,
    orchestrator: PipelineOrchestrator | None = None,
    lock_manager: WorkLockManager | None = None,
) -> dict:
    """Run the pipeline for one work item, release its lock and save the run log.

    Never raises for pipeline failures: the returned record has
    ``status`` "completed" or "failed".
    """
    run_id = new_run_id()
    orchestrator = orchestrator or PipelineOrchestrator(cfg)
    run_record: dict = {
        "run_id": run_id,
        "work_item_id": cfg.work_item_id,
        "task_id": cfg.task_id,
        "started_at": datetime.now(timezone.utc).isoformat(),
        "status": "running",
    }

    try:
        await orchestrator.execute()
        run_record["status"] = "completed"
    except Exception as e:
        message, category = categorize_error(e)
        run_record["status"] = "failed"
        run_record["error"] = sanitize_string(message)
        run_record["error_category"] = category
    finally:
        if cfg.lock_id:
            manager = lock_manager or WorkLockManager(
                DynamoLockStore(config.LOCKS_TABLE_NAME, region=config.AWS_REGION),
                ttl_hours=config.LOCK_TTL_HOURS,
            )
            await manager.release(cfg.lock_id)

    run_record.update(sanitize_object(orchestrator.result.to_dict()))
    run_record["completed_at"] = datetime.now(timezone.utc).isoformat()
    run_record["log_file"] = save_run_log(run_id, run_record)

    log.info(
        "Pipeline %s %s in %dms", run_id, run_record["status"], orchestrator.result.duration_ms,
    )
    return run_record
