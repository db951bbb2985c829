"""
FastAPI application — REST API for the Kiro worker.

Endpoints:
  POST /poll              — Run one poll of the work-item board
  GET  /locks/stale       — Work items whose lock outlived its TTL
  POST /pipeline/start    — Start a pipeline run for a branch
  GET  /pipeline/runs     — List all pipeline runs
  GET  /pipeline/{run_id} — Get pipeline run status/results
  GET  /health            — Health check
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

import config
from config import WorkerConfig, load_poller_config, validate_worker_config
from errors import ConfigurationError
from features.locking import DynamoLockStore, WorkLockManager
from features.polling.handler import run_poll
from features.polling.poller import spec_path_for
from temporalio.client import Client
from utils.sanitize import sanitize_error
from workflows.orchestrator import load_run_log, new_run_id, run_pipeline
from workflows.pipeline import KiroPipelineWorkflow

logging.basicConfig(
    level=config.LOG_LEVEL,
    format=config.LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

temporal_client: Client | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global temporal_client
    try:
        temporal_client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
        log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
    except Exception as e:
        log.warning("Could not connect to Temporal: %s (pipeline will run in-process)", e)
        temporal_client = None
    yield


app = FastAPI(
    title="Kiro Worker",
    description="Spec-driven code generation pipeline with lock-guarded work-item polling",
    version="1.0.0",
    lifespan=lifespan,
)


def get_lock_manager() -> WorkLockManager:
    return WorkLockManager(
        DynamoLockStore(config.LOCKS_TABLE_NAME, region=config.AWS_REGION),
        ttl_hours=config.LOCK_TTL_HOURS,
    )


class PollResponse(BaseModel):
    workItemsFound: int
    lockAcquired: bool
    buildTriggered: bool
    workItemTriggered: dict | None = None
    errors: list[str] = []


class StaleWorkItem(BaseModel):
    id: str
    title: str
    description: str
    status: str
    created_at: datetime


class PipelineStartRequest(BaseModel):
    branch_name: str
    spec_path: str = ""
    environment: str = config.ENVIRONMENT
    task_id: str = ""
    work_item_id: str = ""
    repo_path: str = "."


class PipelineStartResponse(BaseModel):
    run_id: str
    status: str
    message: str


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "kiro-worker",
        "temporal_connected": temporal_client is not None,
    }


# ── Polling and locks ─────────────────────────────────────────────────

@app.post("/poll", response_model=PollResponse)
async def poll_work_items():
    """Run one poll: fetch ready items, take the lock, trigger a run."""
    try:
        cfg = load_poller_config()
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail={"error": e.message, "details": e.errors})

    result = await run_poll(cfg, temporal_client)
    return result.to_dict()


@app.get("/locks/stale", response_model=list[StaleWorkItem])
async def stale_locks(manager: WorkLockManager = Depends(get_lock_manager)):
    try:
        stale = await manager.detect_stale()
    except Exception as e:
        raise HTTPException(status_code=500, detail=sanitize_error(e))
    return [
        StaleWorkItem(id=i.id, title=i.title, description=i.description, status=i.status, created_at=i.created_at)
        for i in stale
    ]


# ── Pipeline ──────────────────────────────────────────────────────────

@app.post("/pipeline/start", response_model=PipelineStartResponse)
async def start_pipeline(req: PipelineStartRequest):
    """Start a pipeline run for a branch, via Temporal when connected."""
    cfg = WorkerConfig(
        branch_name=req.branch_name,
        spec_path=req.spec_path or spec_path_for(req.branch_name),
        environment=req.environment,
        repo_path=req.repo_path,
        task_id=req.task_id,
        work_item_id=req.work_item_id,
    )
    try:
        validate_worker_config(cfg)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail={"error": e.message, "details": e.errors})

    if temporal_client:
        run_id = new_run_id()
        await temporal_client.start_workflow(
            KiroPipelineWorkflow.run,
            {
                "BRANCH_NAME": cfg.branch_name,
                "SPEC_PATH": cfg.spec_path,
                "ENVIRONMENT": cfg.environment,
                "WORK_ITEM_ID": cfg.work_item_id,
                "SPEC_TASK_ID": cfg.task_id,
                "REPO_PATH": cfg.repo_path,
            },
            id=run_id,
            task_queue=config.TEMPORAL_TASK_QUEUE,
        )
        return PipelineStartResponse(
            run_id=run_id,
            status="started",
            message=f"Pipeline started via Temporal. Workflow ID: {run_id}",
        )

    run_record = await run_pipeline(cfg)
    return PipelineStartResponse(
        run_id=run_record["run_id"],
        status=run_record["status"],
        message=f"Pipeline ran in-process (no Temporal). Run ID: {run_record['run_id']}",
    )


@app.get("/pipeline/runs")
async def list_pipeline_runs(status: str | None = None, limit: int = 50):
    """List all pipeline runs, newest first."""
    runs = []
    if not config.PIPELINE_RUNS_DIR.is_dir():
        return {"runs": runs}

    for log_file in sorted(config.PIPELINE_RUNS_DIR.glob("*.json"), reverse=True):
        try:
            with open(log_file) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.warning("Skipping unreadable run log %s: %s", log_file, e)
            continue
        if status and data.get("status") != status:
            continue
        runs.append({
            "run_id": data.get("run_id"),
            "status": data.get("status"),
            "work_item_id": data.get("work_item_id"),
            "branch_name": data.get("branch_name"),
            "started_at": data.get("started_at"),
            "duration_ms": data.get("duration_ms"),
            "error_category": data.get("error_category"),
        })
        if len(runs) >= limit:
            break
    return {"runs": runs}


@app.get("/pipeline/{run_id}")
async def get_pipeline_run(run_id: str):
    """Get the results of a pipeline run."""
    record = load_run_log(run_id)
    if record is not None:
        return record

    if temporal_client:
        try:
            handle = temporal_client.get_workflow_handle(run_id)
            desc = await handle.describe()
        except Exception:
            raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
        result = None
        if desc.status.name == "COMPLETED":
            result = await handle.result()
        return {"run_id": run_id, "temporal_status": desc.status.name, "result": result}

    raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
