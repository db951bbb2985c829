"""
Scheduled entry point — one poll per invocation.

Deployed as a serverless function behind a schedule; also used by the CLI
``poll`` command and the ``POST /poll`` endpoint through ``run_poll``.
"""

from __future__ import annotations

import asyncio
import json
import logging

import config
from config import PollerConfig, load_poller_config
from features.locking import DynamoLockStore, WorkLockManager
from features.polling.models import PollResult
from features.polling.poller import WorkItemPoller
from features.polling.source import GitHubProjectSource
from features.polling.triggers import CodeBuildTrigger, TemporalTrigger
from models.schemas import ProjectConfig
from utils.sanitize import sanitize_error

log = logging.getLogger(__name__)


async def _create_trigger(cfg: PollerConfig, temporal_client=None):
    if cfg.execution_backend == "temporal":
        if temporal_client is None:
            from temporalio.client import Client
            temporal_client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
        return TemporalTrigger(temporal_client)
    return CodeBuildTrigger(region=cfg.region)


async def create_poller(cfg: PollerConfig, temporal_client=None) -> tuple[WorkItemPoller, GitHubProjectSource]:
    store = DynamoLockStore(cfg.locks_table_name, region=cfg.region)
    source = GitHubProjectSource(
        cfg.github_organization,
        cfg.github_repository,
        token=config.GITHUB_TOKEN,
        token_secret_arn=config.GITHUB_TOKEN_SECRET_ARN,
        region=cfg.region,
    )
    poller = WorkItemPoller(
        lock_manager=WorkLockManager(store, ttl_hours=cfg.lock_ttl_hours),
        source=source,
        trigger=await _create_trigger(cfg, temporal_client),
        project=ProjectConfig(
            organization=cfg.github_organization,
            repository=cfg.github_repository,
            project_number=cfg.github_project_number,
            target_status_column=cfg.target_status_column,
        ),
        environment=cfg.environment,
        trigger_project_name=cfg.codebuild_project_name,
    )
    return poller, source


async def run_poll(cfg: PollerConfig, temporal_client=None) -> PollResult:
    poller, source = await create_poller(cfg, temporal_client)
    try:
        return await poller.poll()
    finally:
        await source.aclose()


def lambda_handler(event, context):
    log.info("Work item poller invoked: %s", json.dumps(event, default=str))
    try:
        cfg = load_poller_config()
        result = asyncio.run(run_poll(cfg))
    except Exception as e:
        message = sanitize_error(e)
        errors = getattr(e, "errors", None)
        log.error("Poller handler failed: %s %s", message, errors or "")
        body = {"error": message}
        if errors:
            body["details"] = errors
        return {"statusCode": 500, "body": json.dumps(body)}

    log.info(
        "Polling completed: found=%d lock=%s triggered=%s errors=%s",
        result.work_items_found, result.lock_acquired, result.build_triggered, result.errors,
    )
    return {"statusCode": 200, "body": json.dumps(result.to_dict())}
