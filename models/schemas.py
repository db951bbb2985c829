"""
Data models for the worker pipeline.

Lock-specific records live in features.locking.models and poller results in
features.polling.models; this module holds the models shared across the
pipeline phases.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum


class Environment(str, Enum):
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


class PipelinePhase(str, Enum):
    CHECKOUT = "checkout"
    STEERING = "steering"
    KIRO_CLI = "kiro-cli"
    TESTS = "tests"
    PULL_REQUEST = "pull-request"


@dataclass(frozen=True)
class WorkItem:
    """A unit of work fetched from the project board. Never mutated."""
    id: str
    title: str
    description: str
    branch_name: str
    status: str
    created_at: datetime
    priority: int | None = None


@dataclass(frozen=True)
class ProjectConfig:
    organization: str
    repository: str
    project_number: int
    target_status_column: str = "For Implementation"


@dataclass
class ExecutionOptions:
    spec_path: str
    task_id: str
    timeout_ms: int | None = None
    custom_args: list[str] = field(default_factory=list)


@dataclass
class ExecutionResult:
    """Outcome of one code-generation CLI invocation."""
    success: bool
    output: str = ""
    modified_files: list[str] = field(default_factory=list)
    errors: list[str] | None = None
    timed_out: bool = False
    partial_result: bool = False


@dataclass
class SpecValidation:
    branch_exists: bool
    spec_folder_exists: bool
    requirements: bool = False
    design: bool = False
    tasks: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return (self.branch_exists and self.spec_folder_exists
                and self.requirements and self.design and self.tasks)


@dataclass
class TestFailure:
    __test__ = False

    test_name: str
    error: str
    stack_trace: str = ""


@dataclass
class TestResult:
    __test__ = False

    passed: bool
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    output: str = ""
    failures: list[TestFailure] = field(default_factory=list)


@dataclass
class CoverageResult:
    percentage: float
    meets_threshold: bool
    lines: float = 0.0
    functions: float = 0.0
    branches: float = 0.0
    statements: float = 0.0
    coverage_by_file: dict[str, float] = field(default_factory=dict)
    summary: str = ""


@dataclass
class VersionInfo:
    current_version: str
    latest_version: str
    is_outdated: bool
    missing_files: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    added_files: list[str] = field(default_factory=list)
    updated_files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class BuildMetadata:
    build_id: str
    build_url: str
    environment: str
    timestamp: datetime


@dataclass
class PRResult:
    success: bool
    pr_number: int | None = None
    pr_url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PhaseResult:
    name: str
    success: bool
    duration_ms: int
    error: str | None = None


@dataclass
class PipelineExecutionResult:
    """Authoritative record of one pipeline run, built phase by phase."""
    success: bool
    build_id: str
    environment: str
    branch_name: str
    phases: list[PhaseResult] = field(default_factory=list)
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)
    modified_files: list[str] | None = None
    kiro_output: str | None = None
    test_result: TestResult | None = None
    coverage_result: CoverageResult | None = None
    pr_url: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)
