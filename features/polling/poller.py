"""
Work Item Poller — pick the best ready work item, take the lock, start a run.

One ``poll()`` per scheduled invocation. It always returns a PollResult;
failures are reported in ``errors`` instead of being raised.
"""

from __future__ import annotations

import logging
from typing import Protocol

import config
from features.locking import WorkLockManager
from features.polling.models import PollResult
from features.polling.triggers import ExecutionTrigger
from models.schemas import ProjectConfig, WorkItem
from utils.sanitize import sanitize_error

log = logging.getLogger(__name__)

PENDING_EXECUTION_ID = "pending"


class WorkItemSource(Protocol):
    async def fetch_ready_items(self, project: ProjectConfig) -> list[WorkItem]: ...

    async def verify_pull_request_open(self, branch_name: str) -> bool: ...


def _rank_key(item: WorkItem):
    # prioritized items first, higher priority first, then oldest first
    has_priority = item.priority is not None
    return (0 if has_priority else 1, -(item.priority or 0), item.created_at)


def rank_work_items(items: list[WorkItem]) -> list[WorkItem]:
    """Return ``items`` best-first without mutating the input."""
    return sorted(items, key=_rank_key)


def spec_path_for(branch_name: str) -> str:
    return f"{config.SPECS_DIR}/{branch_name}"


class WorkItemPoller:

    def __init__(
        self,
        lock_manager: WorkLockManager,
        source: WorkItemSource,
        trigger: ExecutionTrigger,
        project: ProjectConfig,
        environment: str,
        trigger_project_name: str = "",
    ):
        self.lock_manager = lock_manager
        self.source = source
        self.trigger = trigger
        self.project = project
        self.environment = environment
        self.trigger_project_name = trigger_project_name

    async def poll(self) -> PollResult:
        log.info("Polling for work items (environment=%s)", self.environment)
        found = 0
        try:
            items = await self.source.fetch_ready_items(self.project)
            found = len(items)
            if not items:
                log.info("No work items available")
                return PollResult(work_items_found=0, lock_acquired=False, build_triggered=False)

            selected = rank_work_items(items)[0]
            log.info(
                "Selected work item %s (%r) on branch %s",
                selected.id, selected.title, selected.branch_name,
            )

            lock = await self.lock_manager.acquire(selected.id, PENDING_EXECUTION_ID, self.environment)
        except Exception as e:
            message = sanitize_error(e)
            log.error("Polling failed: %s", message)
            return PollResult(
                work_items_found=found, lock_acquired=False, build_triggered=False, errors=[message],
            )

        if not lock.acquired:
            log.info("Lock not acquired, another process is working: %s", lock.reason)
            return PollResult(work_items_found=found, lock_acquired=False, build_triggered=False)

        return await self._trigger(selected, lock.lock_id, found)

    async def _trigger(self, item: WorkItem, lock_id: str, found: int) -> PollResult:
        params = {
            "BRANCH_NAME": item.branch_name,
            "SPEC_PATH": spec_path_for(item.branch_name),
            "ENVIRONMENT": self.environment,
            "WORK_ITEM_ID": item.id,
            "LOCK_ID": lock_id,
        }
        try:
            started = await self.trigger.start(self.trigger_project_name, params)
            error = None if started.success else (started.error or "Unknown execution trigger error")
        except Exception as e:
            started = None
            error = sanitize_error(e)

        if error is not None:
            log.error("Failed to trigger execution for %s: %s", item.id, error)
            await self.lock_manager.release(lock_id)
            return PollResult(
                work_items_found=found,
                lock_acquired=True,
                build_triggered=False,
                work_item_triggered=item,
                errors=[error],
            )

        log.info("Execution started for %s: %s", item.id, started.execution_id)
        await self.lock_manager.mark_in_progress(lock_id, item.id, started.execution_id)
        return PollResult(
            work_items_found=found,
            lock_acquired=True,
            build_triggered=True,
            work_item_triggered=item,
        )
