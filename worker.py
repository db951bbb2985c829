"""
Temporal Worker — registers the pipeline workflow and activity, then polls
for runs started by the Temporal execution trigger.

Usage:
    python worker.py
"""

from __future__ import annotations

import asyncio
import logging

from temporalio.client import Client
from temporalio.worker import Worker

import config
from activities.run_pipeline import run_kiro_pipeline
from workflows.pipeline import KiroPipelineWorkflow

logging.basicConfig(
    level=config.LOG_LEVEL,
    format=config.LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

ALL_ACTIVITIES = [run_kiro_pipeline]


async def main():
    log.info("Connecting to Temporal at %s", config.TEMPORAL_HOST)
    client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)

    log.info("Starting worker on queue: %s", config.TEMPORAL_TASK_QUEUE)
    worker = Worker(
        client,
        task_queue=config.TEMPORAL_TASK_QUEUE,
        workflows=[KiroPipelineWorkflow],
        activities=ALL_ACTIVITIES,
        # One pipeline at a time: the lock admits a single run per deployment.
        max_concurrent_activities=1,
    )

    log.info("Worker ready — listening for tasks")
    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
