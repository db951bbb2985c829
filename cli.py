"""Command line interface for the Kiro worker.

    kiro-worker run           run the pipeline for the branch in BRANCH_NAME
    kiro-worker poll          poll the board once and trigger a run
    kiro-worker stale-locks   list work items whose lock has expired
    kiro-worker show RUN_ID   print a saved run record
    kiro-worker serve         serve the REST API
"""

from __future__ import annotations

import asyncio
import json
import logging

import typer

import config
from config import load_poller_config, load_worker_config
from errors import ConfigurationError
from features.locking import DynamoLockStore, WorkLockManager
from features.polling.handler import run_poll
from workflows.orchestrator import load_run_log, run_pipeline

app = typer.Typer(help="Kiro worker: spec-driven code generation in CI")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    """Kiro worker CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.LOG_LEVEL,
        format=config.LOG_FORMAT,
        datefmt="%H:%M:%S",
    )


def _fail_config(e: ConfigurationError) -> None:
    typer.secho(e.message, fg=typer.colors.RED, err=True)
    for error in e.errors:
        typer.secho(f"  - {error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command("run")
def run() -> None:
    """
    Run the five-phase pipeline for one work item.

    Settings come from the environment (BRANCH_NAME, SPEC_PATH, ENVIRONMENT,
    SPEC_TASK_ID, COVERAGE_THRESHOLD, BUILD_TIMEOUT...). Exits 0 when the
    run completes and 1 otherwise, so a CI build reflects the outcome.
    """
    try:
        cfg = load_worker_config()
    except ConfigurationError as e:
        _fail_config(e)

    run_record = asyncio.run(run_pipeline(cfg))

    for phase in run_record.get("phases", []):
        mark = "✓" if phase["success"] else "✗"
        line = f"{mark} {phase['name']:<14} {phase['duration_ms']}ms"
        if phase.get("error"):
            line += f"  {phase['error']}"
        typer.echo(line)

    if run_record["status"] != "completed":
        typer.secho(
            f"Pipeline failed [{run_record.get('error_category')}]: {run_record.get('error')}",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)

    typer.secho(f"Pipeline completed: {run_record.get('pr_url') or run_record['run_id']}", fg=typer.colors.GREEN)


@app.command("poll")
def poll() -> None:
    """Poll the project board once and print the result as JSON."""
    try:
        cfg = load_poller_config()
    except ConfigurationError as e:
        _fail_config(e)

    result = asyncio.run(run_poll(cfg))
    typer.echo(json.dumps(result.to_dict(), indent=2))


@app.command("stale-locks")
def stale_locks() -> None:
    """List work items whose lock outlived its TTL."""
    manager = WorkLockManager(
        DynamoLockStore(config.LOCKS_TABLE_NAME, region=config.AWS_REGION),
        ttl_hours=config.LOCK_TTL_HOURS,
    )
    stale = asyncio.run(manager.detect_stale())
    if not stale:
        typer.echo("No stale locks found")
        return
    for item in stale:
        typer.echo(f"{item.id}\t{item.description}")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
) -> None:
    """Serve the REST API."""
    import uvicorn

    uvicorn.run("app:app", host=host, port=port)


@app.command("show")
def show(run_id: str) -> None:
    """Print a saved pipeline run record."""
    record = load_run_log(run_id)
    if record is None:
        typer.secho(f"Run not found: {run_id}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(record, indent=2))


if __name__ == "__main__":
    app()
