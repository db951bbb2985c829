import json
import logging
import signal
import stat

import pytest

from activities import kiro_cli
from config import WorkerConfig
from errors import CoverageThresholdError, KiroCLIError, TestFailureError, ValidationError
from features.locking import LOCK_KEY
from models.schemas import (
    CoverageResult,
    ExecutionResult,
    PRResult,
    SpecValidation,
    SyncResult,
    TestResult,
)
from workflows import orchestrator as orch
from workflows.orchestrator import PipelineOrchestrator, load_run_log, run_pipeline

ALL_PHASES = ["checkout", "steering", "kiro-cli", "tests", "pull-request"]


class FakeExecutor:
    def __init__(self, result=None, error=None):
        self.result = result or ExecutionResult(success=True, output="done", modified_files=["src/login.ts"])
        self.error = error
        self.calls = []

    async def execute_task(self, task_id, options):
        self.calls.append((task_id, options))
        if self.error is not None:
            raise self.error
        return self.result


class FakePRUpdater:
    def __init__(self, pr_exists=True):
        self.pr_exists = pr_exists
        self.bodies = []

    async def has_open_pr(self, branch):
        return self.pr_exists

    async def update_pr(self, branch, body):
        self.bodies.append(body)
        return PRResult(success=True, pr_number=12, pr_url="https://github.com/acme/widgets/pull/12")


@pytest.fixture
def cfg(tmp_path):
    return WorkerConfig(
        branch_name="feature-login",
        spec_path=".kiro/specs/feature-login",
        environment="test",
        repo_path=str(tmp_path),
        task_id="2.1",
        build_id="kiro:42",
        coverage_threshold=80,
        timeout_ms=3_600_000,
    )


@pytest.fixture
def steps(monkeypatch):
    """Replace git, steering and test activities with recording fakes."""
    calls = []

    def record(name, value=None):
        def fake(*args, **kwargs):
            calls.append(name)
            return value
        return fake

    monkeypatch.setattr(orch, "checkout_branch", record("checkout"))
    monkeypatch.setattr(orch, "validate_spec_files", record("validate", SpecValidation(True, True, True, True, True)))
    monkeypatch.setattr(orch, "sync_steering", record("steering", SyncResult()))
    monkeypatch.setattr(orch, "commit_changes", record("commit", {"status": "committed"}))
    monkeypatch.setattr(orch, "run_tests", record("tests", TestResult(True, 4, 4, 0)))
    monkeypatch.setattr(orch, "analyze_coverage", record(
        "coverage", CoverageResult(90.0, True, 90.0, 90.0, 90.0, 90.0),
    ))
    monkeypatch.setattr(orch, "push_branch", record("push"))
    return calls


def _raise(error):
    def fake(*args, **kwargs):
        raise error
    return fake


@pytest.mark.asyncio
async def test_successful_run_executes_all_phases_in_order(cfg, steps):
    pr = FakePRUpdater()
    executor = FakeExecutor()
    pipeline = PipelineOrchestrator(cfg, executor=executor, pr_updater=pr)

    result = await pipeline.execute()

    assert result.success
    assert [p.name for p in result.phases] == ALL_PHASES
    assert all(p.success for p in result.phases)
    assert steps == ["checkout", "validate", "steering", "commit", "tests", "coverage", "push"]
    assert result.modified_files == ["src/login.ts"]
    assert result.pr_url == "https://github.com/acme/widgets/pull/12"
    assert executor.calls[0][0] == "2.1"
    assert executor.calls[0][1].timeout_ms == 3_600_000
    assert pr.bodies[0].startswith("## Kiro Worker Automated Changes")
    assert "`src/login.ts`" in pr.bodies[0]


@pytest.mark.asyncio
async def test_test_failure_halts_before_pull_request(cfg, steps, monkeypatch):
    monkeypatch.setattr(orch, "run_tests", _raise(TestFailureError("Test execution failed: 1 of 4 tests failed", 1, 4)))
    pr = FakePRUpdater()
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(), pr_updater=pr)

    with pytest.raises(TestFailureError):
        await pipeline.execute()

    result = pipeline.result
    assert not result.success
    assert [p.name for p in result.phases] == ["checkout", "steering", "kiro-cli", "tests"]
    assert [p.success for p in result.phases] == [True, True, True, False]
    assert result.phases[-1].error == "Test execution failed: 1 of 4 tests failed"
    assert result.errors == ["Test execution failed: 1 of 4 tests failed"]
    assert "push" not in steps
    assert pr.bodies == []


@pytest.mark.asyncio
async def test_missing_pull_request_fails_checkout(cfg, steps):
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(), pr_updater=FakePRUpdater(pr_exists=False))

    with pytest.raises(ValidationError) as exc_info:
        await pipeline.execute()

    assert exc_info.value.category == "validation"
    assert exc_info.value.validation_type == "pr-validation"
    assert [p.name for p in pipeline.result.phases] == ["checkout"]


@pytest.mark.asyncio
async def test_invalid_spec_fails_checkout(cfg, steps, monkeypatch):
    invalid = SpecValidation(True, True, True, False, True, errors=["Required file missing: design.md"])
    monkeypatch.setattr(orch, "validate_spec_files", lambda *a: invalid)
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(), pr_updater=FakePRUpdater())

    with pytest.raises(ValidationError) as exc_info:
        await pipeline.execute()

    assert exc_info.value.validation_type == "branch-validation"
    assert exc_info.value.errors == ["Required file missing: design.md"]


@pytest.mark.asyncio
async def test_kiro_timeout_keeps_partial_output(cfg, steps):
    timed_out = ExecutionResult(
        success=False, output="partial", modified_files=["src/a.ts"],
        errors=["Command timed out after 1000ms"], timed_out=True, partial_result=True,
    )
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(result=timed_out), pr_updater=FakePRUpdater())

    with pytest.raises(KiroCLIError) as exc_info:
        await pipeline.execute()

    assert exc_info.value.timed_out
    assert pipeline.result.kiro_output == "partial"
    assert pipeline.result.modified_files == ["src/a.ts"]
    assert "commit" not in steps


@pytest.mark.asyncio
async def test_error_messages_are_sanitized(cfg, steps):
    error = KiroCLIError("auth failed with token=ghp_abcdef123456")
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(error=error), pr_updater=FakePRUpdater())

    with pytest.raises(KiroCLIError):
        await pipeline.execute()

    assert "ghp_abcdef123456" not in pipeline.result.errors[0]
    assert "ghp_abcdef123456" not in pipeline.result.phases[-1].error


@pytest.mark.asyncio
async def test_cleanup_removes_registered_resources(cfg, steps, tmp_path):
    temp_file = tmp_path / "scratch.txt"
    temp_file.write_text("x")
    temp_dir = tmp_path / "scratch"
    (temp_dir / "nested").mkdir(parents=True)
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(), pr_updater=FakePRUpdater())
    pipeline.register_temp_file(str(temp_file))
    pipeline.register_temp_file(str(tmp_path / "already-gone.txt"))
    pipeline.register_temp_dir(str(temp_dir))

    await pipeline.execute()

    assert not temp_file.exists()
    assert not temp_dir.exists()


@pytest.mark.asyncio
async def test_cleanup_runs_after_failure(cfg, steps, monkeypatch, tmp_path):
    monkeypatch.setattr(orch, "checkout_branch", _raise(RuntimeError("network down")))
    temp_file = tmp_path / "scratch.txt"
    temp_file.write_text("x")
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(), pr_updater=FakePRUpdater())
    pipeline.register_temp_file(str(temp_file))

    with pytest.raises(RuntimeError):
        await pipeline.execute()

    assert not temp_file.exists()
    assert pipeline.result.duration_ms >= 0


@pytest.fixture
def kills(monkeypatch):
    sent = []
    monkeypatch.setattr(orch.os, "kill", lambda pid, sig: sent.append((pid, sig)))
    return sent


@pytest.mark.asyncio
async def test_cleanup_does_not_signal_exited_kiro_process(cfg, steps, monkeypatch, tmp_path, kills):
    script = tmp_path / "kiro"
    script.write_text("#!/bin/sh\necho done\nexit 0\n")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setattr(kiro_cli, "changed_files", lambda repo_path: [])
    pipeline = PipelineOrchestrator(cfg, pr_updater=FakePRUpdater())
    pipeline.executor.executable = str(script)

    result = await pipeline.execute()

    assert result.success
    assert "done" in result.kiro_output
    assert kills == []


@pytest.mark.asyncio
async def test_cleanup_terminates_processes_still_registered(cfg, steps, kills):
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(), pr_updater=FakePRUpdater())
    pipeline.register_process(4242)
    pipeline.register_process(4343)
    pipeline.unregister_process(4343)

    await pipeline.execute()

    assert kills == [(4242, signal.SIGTERM)]


class ClockAdvancingExecutor(FakeExecutor):
    def __init__(self, clock, seconds):
        super().__init__()
        self.clock = clock
        self.seconds = seconds

    async def execute_task(self, task_id, options):
        self.clock.advance(self.seconds)
        return await super().execute_task(task_id, options)


@pytest.mark.asyncio
async def test_warns_when_timeout_budget_runs_low(cfg, steps, clock, caplog):
    # one hour budget, the Kiro phase eats 58 minutes of it
    executor = ClockAdvancingExecutor(clock, 58 * 60)
    pipeline = PipelineOrchestrator(cfg, executor=executor, pr_updater=FakePRUpdater(), clock=clock)

    with caplog.at_level(logging.WARNING, logger="workflows.orchestrator"):
        result = await pipeline.execute()

    assert result.success
    warnings = [r.getMessage() for r in caplog.records if "Approaching pipeline timeout" in r.getMessage()]
    # checked before the tests and pull-request phases only
    assert warnings == ["Approaching pipeline timeout: 120000ms remaining of 3600000ms"] * 2


@pytest.mark.asyncio
async def test_no_timeout_warning_with_budget_left(cfg, steps, clock, caplog):
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(), pr_updater=FakePRUpdater(), clock=clock)

    with caplog.at_level(logging.WARNING, logger="workflows.orchestrator"):
        await pipeline.execute()

    assert "Approaching pipeline timeout" not in caplog.text


# ── run_pipeline ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_run_pipeline_saves_completed_record(cfg, steps, runs_dir):
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(), pr_updater=FakePRUpdater())

    record = await run_pipeline(cfg, orchestrator=pipeline)

    assert record["status"] == "completed"
    assert record["success"] is True
    assert record["pr_url"] == "https://github.com/acme/widgets/pull/12"
    saved = json.loads((runs_dir / f"{record['run_id']}.json").read_text())
    assert saved["status"] == "completed"
    assert load_run_log(record["run_id"])["branch_name"] == "feature-login"


@pytest.mark.asyncio
async def test_run_pipeline_records_failure_category_and_releases_lock(
    cfg, steps, runs_dir, monkeypatch, lock_manager, lock_store,
):
    held = await lock_manager.acquire("item-1", "kiro:42", "test")
    cfg.lock_id = held.lock_id
    monkeypatch.setattr(orch, "analyze_coverage", _raise(
        CoverageThresholdError("Code coverage below 80% threshold: 70.00%", 70.0, 80.0),
    ))
    pipeline = PipelineOrchestrator(cfg, executor=FakeExecutor(), pr_updater=FakePRUpdater())

    record = await run_pipeline(cfg, orchestrator=pipeline, lock_manager=lock_manager)

    assert record["status"] == "failed"
    assert record["error_category"] == "coverage-threshold"
    assert record["error"] == "Code coverage below 80% threshold: 70.00%"
    assert [p["name"] for p in record["phases"]] == ["checkout", "steering", "kiro-cli", "tests"]
    assert lock_store.get(LOCK_KEY) is None


def test_run_ids_are_unique():
    assert orch.new_run_id() != orch.new_run_id()
    assert orch.new_run_id().startswith("run-")


def test_load_missing_run_log(runs_dir):
    assert load_run_log("run-missing") is None
