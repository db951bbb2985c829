"""
Shared fixtures: in-memory lock store, fake work item sources and triggers,
throwaway git repositories.
"""

import logging
import shutil
import subprocess
from datetime import datetime, timezone

import pytest

import config
from features.locking import InMemoryLockStore, WorkLockManager
from features.polling.models import TriggerResult
from models.schemas import ProjectConfig, WorkItem

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSource:
    def __init__(self, items=None, error: Exception | None = None):
        self.items = list(items or [])
        self.error = error
        self.calls = 0

    async def fetch_ready_items(self, project):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.items)

    async def verify_pull_request_open(self, branch_name):
        return True


class FakeTrigger:
    def __init__(self, result: TriggerResult | None = None, error: Exception | None = None):
        self.result = result or TriggerResult("build-123", "arn:aws:codebuild:build/build-123", success=True)
        self.error = error
        self.started: list[tuple[str, dict]] = []

    async def start(self, project_name, params):
        self.started.append((project_name, dict(params)))
        if self.error is not None:
            raise self.error
        return self.result


def make_item(item_id: str, priority=None, created: str = "2024-01-01T00:00:00", branch: str = "") -> WorkItem:
    return WorkItem(
        id=item_id,
        title=f"Work item {item_id}",
        description="",
        branch_name=branch or f"feature-{item_id}",
        status="For Implementation",
        created_at=datetime.fromisoformat(created).replace(tzinfo=timezone.utc),
        priority=priority,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lock_store():
    return InMemoryLockStore()


@pytest.fixture
def lock_manager(lock_store, clock):
    return WorkLockManager(lock_store, ttl_hours=2, clock=clock)


@pytest.fixture
def project():
    return ProjectConfig(organization="acme", repository="widgets", project_number=7)


@pytest.fixture
def runs_dir(tmp_path, monkeypatch):
    path = tmp_path / "pipeline_runs"
    monkeypatch.setattr(config, "PIPELINE_RUNS_DIR", path)
    return path


def _run_git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


@pytest.fixture
def git_repo(tmp_path):
    """An initialized repository with one commit on ``main``."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _run_git(repo, "init", "-q")
    _run_git(repo, "checkout", "-q", "-b", "main")
    _run_git(repo, "config", "user.email", "ci@example.com")
    _run_git(repo, "config", "user.name", "CI")
    _run_git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# widgets\n")
    _run_git(repo, "add", "README.md")
    _run_git(repo, "commit", "-q", "-m", "initial")
    return repo
