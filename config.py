"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from errors import ConfigurationError
from models.schemas import Environment

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
PIPELINE_RUNS_DIR = Path(os.getenv("PIPELINE_RUNS_DIR", str(PROJECT_ROOT / "pipeline_runs")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# AWS
AWS_REGION = os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or "us-east-1"

# Locking
LOCKS_TABLE_NAME = os.getenv("LOCKS_TABLE_NAME", "kiro-worker-locks")
LOCK_TTL_HOURS = float(os.getenv("LOCK_TTL_HOURS", "2"))

# Pipeline
ENVIRONMENT = os.getenv("ENVIRONMENT", "test")
VALID_ENVIRONMENTS = tuple(e.value for e in Environment)
BUILD_TIMEOUT_MS = int(os.getenv("BUILD_TIMEOUT", "3600000"))  # 60 min
TIMEOUT_WARNING_MS = 5 * 60 * 1000
COVERAGE_THRESHOLD = float(os.getenv("COVERAGE_THRESHOLD", "80"))
TEST_COMMAND = os.getenv("TEST_COMMAND", "npm test")
COVERAGE_COMMAND = os.getenv("COVERAGE_COMMAND", "")
COVERAGE_SUMMARY_PATH = os.getenv("COVERAGE_SUMMARY_PATH", "coverage/coverage-summary.json")
KIRO_EXECUTABLE = os.getenv("KIRO_EXECUTABLE", "kiro")
STEERING_SOURCE_PATH = os.getenv("STEERING_SOURCE_PATH", "")
STEERING_DIR = ".kiro/steering"
SPECS_DIR = ".kiro/specs"
REQUIRED_SPEC_FILES = ("requirements.md", "design.md", "tasks.md")

# Work item source (GitHub Projects)
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
GITHUB_TOKEN_SECRET_ARN = os.getenv("GITHUB_TOKEN_SECRET_ARN", "")
GITHUB_ORGANIZATION = os.getenv("GITHUB_ORGANIZATION", "")
GITHUB_REPOSITORY = os.getenv("GITHUB_REPOSITORY", "")
GITHUB_PROJECT_NUMBER = int(os.getenv("GITHUB_PROJECT_NUMBER", "0") or 0)
TARGET_STATUS_COLUMN = os.getenv("TARGET_STATUS_COLUMN", "For Implementation")

# Pull requests
PR_PLATFORM = os.getenv("PR_PLATFORM", "github")
GITLAB_API_URL = os.getenv("GITLAB_API_URL", "https://gitlab.com/api/v4")
GITLAB_TOKEN = os.getenv("GITLAB_TOKEN", "")
API_TOKEN_SECRET_ARN = os.getenv("API_TOKEN_SECRET_ARN", "")

# Execution trigger
EXECUTION_BACKEND = os.getenv("EXECUTION_BACKEND", "codebuild")  # codebuild | temporal
CODEBUILD_PROJECT_NAME = os.getenv("CODEBUILD_PROJECT_NAME", "")

# Temporal
TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_TASK_QUEUE = os.getenv("TEMPORAL_TASK_QUEUE", "kiro-worker-queue")
TEMPORAL_NAMESPACE = os.getenv("TEMPORAL_NAMESPACE", "default")


@dataclass
class WorkerConfig:
    """Settings for a single pipeline run."""
    branch_name: str
    spec_path: str
    environment: str
    repo_path: str = "."
    target_branch: str = "main"
    task_id: str = ""
    build_id: str = ""
    build_url: str = ""
    work_item_id: str = ""
    lock_id: str = ""
    test_command: str = TEST_COMMAND
    coverage_command: str = COVERAGE_COMMAND
    coverage_threshold: float = COVERAGE_THRESHOLD
    timeout_ms: int = BUILD_TIMEOUT_MS
    steering_source_path: str = STEERING_SOURCE_PATH
    pr_platform: str = PR_PLATFORM
    repo_owner: str = GITHUB_ORGANIZATION
    repo_name: str = GITHUB_REPOSITORY


@dataclass
class PollerConfig:
    """Settings for one poll invocation."""
    locks_table_name: str
    environment: str
    execution_backend: str
    codebuild_project_name: str
    github_organization: str
    github_repository: str
    github_project_number: int
    target_status_column: str
    region: str = AWS_REGION
    lock_ttl_hours: float = LOCK_TTL_HOURS


def validate_worker_config(cfg: WorkerConfig) -> None:
    """Raise ConfigurationError listing every problem with ``cfg``."""
    errors = []
    if not cfg.branch_name:
        errors.append("BRANCH_NAME is required")
    if not cfg.spec_path:
        errors.append("SPEC_PATH is required")
    if cfg.environment not in VALID_ENVIRONMENTS:
        errors.append(f"ENVIRONMENT must be one of: {', '.join(VALID_ENVIRONMENTS)}")
    if not 0 <= cfg.coverage_threshold <= 100:
        errors.append("COVERAGE_THRESHOLD must be between 0 and 100")
    if cfg.timeout_ms <= 0:
        errors.append("BUILD_TIMEOUT must be positive")
    if cfg.pr_platform not in ("github", "gitlab"):
        errors.append("PR_PLATFORM must be one of: github, gitlab")
    if errors:
        raise ConfigurationError("Configuration validation failed", errors)


def load_worker_config(env: dict | None = None) -> WorkerConfig:
    """Build a WorkerConfig from environment variables."""
    env = os.environ if env is None else env
    missing = [name for name in ("BRANCH_NAME", "SPEC_PATH", "ENVIRONMENT") if not env.get(name)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}", missing,
        )

    try:
        coverage_threshold = float(env.get("COVERAGE_THRESHOLD", COVERAGE_THRESHOLD))
        timeout_ms = int(env.get("BUILD_TIMEOUT", BUILD_TIMEOUT_MS))
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}", [str(e)]) from e

    cfg = WorkerConfig(
        branch_name=env["BRANCH_NAME"],
        spec_path=env["SPEC_PATH"],
        environment=env["ENVIRONMENT"],
        repo_path=env.get("REPO_PATH") or os.getcwd(),
        target_branch=env.get("TARGET_BRANCH", "main"),
        task_id=env.get("SPEC_TASK_ID", ""),
        build_id=env.get("CODEBUILD_BUILD_ID") or env.get("BUILD_ID", ""),
        build_url=env.get("CODEBUILD_BUILD_URL") or env.get("BUILD_URL", ""),
        work_item_id=env.get("WORK_ITEM_ID", ""),
        lock_id=env.get("LOCK_ID", ""),
        test_command=env.get("TEST_COMMAND", TEST_COMMAND),
        coverage_command=env.get("COVERAGE_COMMAND", COVERAGE_COMMAND),
        coverage_threshold=coverage_threshold,
        timeout_ms=timeout_ms,
        steering_source_path=env.get("STEERING_SOURCE_PATH", STEERING_SOURCE_PATH),
        pr_platform=env.get("PR_PLATFORM", PR_PLATFORM),
        repo_owner=env.get("GITHUB_ORGANIZATION", GITHUB_ORGANIZATION),
        repo_name=env.get("GITHUB_REPOSITORY", GITHUB_REPOSITORY),
    )
    validate_worker_config(cfg)
    return cfg


def load_poller_config(env: dict | None = None) -> PollerConfig:
    """Build and validate a PollerConfig from environment variables."""
    env = os.environ if env is None else env
    try:
        project_number = int(env.get("GITHUB_PROJECT_NUMBER") or 0)
    except ValueError:
        project_number = 0

    cfg = PollerConfig(
        locks_table_name=env.get("LOCKS_TABLE_NAME", LOCKS_TABLE_NAME),
        environment=env.get("ENVIRONMENT", ENVIRONMENT),
        execution_backend=env.get("EXECUTION_BACKEND", EXECUTION_BACKEND),
        codebuild_project_name=env.get("CODEBUILD_PROJECT_NAME", CODEBUILD_PROJECT_NAME),
        github_organization=env.get("GITHUB_ORGANIZATION", GITHUB_ORGANIZATION),
        github_repository=env.get("GITHUB_REPOSITORY", GITHUB_REPOSITORY),
        github_project_number=project_number,
        target_status_column=env.get("TARGET_STATUS_COLUMN", TARGET_STATUS_COLUMN),
        region=env.get("AWS_REGION", AWS_REGION),
        lock_ttl_hours=float(env.get("LOCK_TTL_HOURS", LOCK_TTL_HOURS)),
    )

    errors = []
    if not cfg.locks_table_name:
        errors.append("LOCKS_TABLE_NAME is required")
    if cfg.environment not in VALID_ENVIRONMENTS:
        errors.append(f"ENVIRONMENT must be one of: {', '.join(VALID_ENVIRONMENTS)}")
    if cfg.execution_backend not in ("codebuild", "temporal"):
        errors.append("EXECUTION_BACKEND must be one of: codebuild, temporal")
    if cfg.execution_backend == "codebuild" and not cfg.codebuild_project_name:
        errors.append("CODEBUILD_PROJECT_NAME is required")
    if not cfg.github_organization:
        errors.append("GITHUB_ORGANIZATION is required")
    if not cfg.github_repository:
        errors.append("GITHUB_REPOSITORY is required")
    if cfg.github_project_number <= 0:
        errors.append("GITHUB_PROJECT_NUMBER is required")
    if errors:
        raise ConfigurationError("Poller configuration validation failed", errors)
    return cfg
