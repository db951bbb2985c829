"""
Temporal Workflow: Kiro Pipeline

Started by the poller's Temporal trigger with the run parameters
(BRANCH_NAME, SPEC_PATH, ENVIRONMENT, WORK_ITEM_ID, LOCK_ID). The whole
five-phase pipeline runs as a single activity: its phases share a working
tree and a child process, so they cannot be spread across workers.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.run_pipeline import run_kiro_pipeline
    import config

log = logging.getLogger(__name__)

# Headroom over the pipeline timeout for checkout, tests and the PR update.
ACTIVITY_HEADROOM = timedelta(minutes=15)


@workflow.defn(name="KiroPipelineWorkflow")
class KiroPipelineWorkflow:

    @workflow.run
    async def run(self, params: dict) -> dict:
        workflow.logger.info(
            "Kiro pipeline starting for work item %s on %s",
            params.get("WORK_ITEM_ID"), params.get("BRANCH_NAME"),
        )
        run_record = await workflow.execute_activity(
            run_kiro_pipeline,
            args=[params],
            start_to_close_timeout=timedelta(milliseconds=config.BUILD_TIMEOUT_MS) + ACTIVITY_HEADROOM,
            # A retry would re-run code generation on a branch that may already have commits.
            retry_policy=RetryPolicy(maximum_attempts=1),
        )
        workflow.logger.info("Kiro pipeline %s: %s", run_record.get("run_id"), run_record.get("status"))
        return run_record
