"""
Execution triggers — start one pipeline run for a locked work item.

  CodeBuildTrigger — AWS CodeBuild ``start_build`` with environment overrides
  TemporalTrigger  — Temporal ``start_workflow`` on the worker task queue

Both take the same params mapping (``BRANCH_NAME``, ``SPEC_PATH``,
``ENVIRONMENT``, ``WORK_ITEM_ID``, ``LOCK_ID``), which becomes the run's
environment in CodeBuild and the workflow input in Temporal.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Protocol

import boto3

import config
from features.polling.models import TriggerResult

log = logging.getLogger(__name__)

WORKFLOW_NAME = "KiroPipelineWorkflow"


class ExecutionTrigger(Protocol):
    async def start(self, project_name: str, params: dict[str, str]) -> TriggerResult: ...


class CodeBuildTrigger:

    def __init__(self, region: str = config.AWS_REGION, client=None):
        self.client = client or boto3.client("codebuild", region_name=region)

    def _start_build(self, project_name: str, params: dict[str, str]) -> dict:
        return self.client.start_build(
            projectName=project_name,
            environmentVariablesOverride=[
                {"name": name, "value": value, "type": "PLAINTEXT"}
                for name, value in params.items()
            ],
        )

    async def start(self, project_name: str, params: dict[str, str]) -> TriggerResult:
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, partial(self._start_build, project_name, params))

        build = response.get("build") or {}
        if not build.get("id") or not build.get("arn"):
            return TriggerResult("", "", success=False, error="CodeBuild response missing build ID or ARN")
        log.info("CodeBuild build started: %s", build["id"])
        return TriggerResult(build["id"], build["arn"], success=True)


class TemporalTrigger:
    """Starts the pipeline workflow on a Temporal worker.

    ``project_name`` prefixes the workflow id; the task queue comes from
    settings unless given explicitly.
    """

    def __init__(self, client, task_queue: str = config.TEMPORAL_TASK_QUEUE):
        self.client = client
        self.task_queue = task_queue

    async def start(self, project_name: str, params: dict[str, str]) -> TriggerResult:
        workflow_id = f"{project_name or 'kiro-worker'}-{params.get('WORK_ITEM_ID', '')}-{params.get('LOCK_ID', '')[:8]}"
        handle = await self.client.start_workflow(
            WORKFLOW_NAME,
            dict(params),
            id=workflow_id,
            task_queue=self.task_queue,
        )
        run_id = getattr(handle, "result_run_id", None) or getattr(handle, "run_id", None) or ""
        log.info("Temporal workflow started: %s (run %s)", handle.id, run_id)
        return TriggerResult(handle.id, run_id, success=True)
