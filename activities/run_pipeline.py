"""
Activity: Run Pipeline — execute one pipeline run on a Temporal worker.

The workflow input is the same parameter mapping the CodeBuild trigger turns
into environment variables, so it is layered over the worker's environment
before the run configuration is loaded.
"""

from __future__ import annotations

import logging
import os

from temporalio import activity

from config import load_worker_config
from errors import ConfigurationError
from workflows.orchestrator import run_pipeline

log = logging.getLogger(__name__)


@activity.defn
async def run_kiro_pipeline(params: dict) -> dict:
    env = {**os.environ, **{k: str(v) for k, v in params.items()}}
    try:
        cfg = load_worker_config(env)
    except ConfigurationError as e:
        log.error("Invalid pipeline parameters: %s %s", e.message, e.errors)
        return {"status": "failed", "error": e.message, "error_category": e.category, "details": e.errors}

    log.info("Running pipeline for work item %s on %s", cfg.work_item_id, cfg.branch_name)
    return await run_pipeline(cfg)
