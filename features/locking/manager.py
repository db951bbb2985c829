"""
Work Lock Manager — acquisition, release and staleness detection for the
single work-item processor lock.

The manager holds no mutable state of its own, so it is safe to create one
per call. Atomicity is delegated to the store's conditional write: when N
callers race for the lock inside one TTL window, exactly one sees
``acquired=True``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from functools import partial
from typing import Callable

from errors import LockAcquisitionError
from features.locking.models import LOCK_KEY, LockRecord, LockResult, LockStatus
from features.locking.store import ConditionFailed, LockStore
from models.schemas import WorkItem

log = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 2
LOCK_HELD_REASON = "Lock already held by another process"


class WorkLockManager:

    def __init__(
        self,
        store: LockStore,
        ttl_hours: float = DEFAULT_TTL_HOURS,
        lock_key: str = LOCK_KEY,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = int(ttl_hours * 3600)
        self.lock_key = lock_key
        self._clock = clock

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    async def acquire(self, work_item_id: str, execution_id: str, environment: str) -> LockResult:
        """Try to take the lock. "Already held" is returned, never raised."""
        now = int(self._clock())
        lock_id = str(uuid.uuid4())
        record = LockRecord(
            lock_key=self.lock_key,
            lock_id=lock_id,
            work_item_id=work_item_id,
            build_id=execution_id,
            acquired_at=now,
            expires_at=now + self.ttl_seconds,
            status=LockStatus.IN_PROGRESS,
            environment=environment,
        )

        try:
            await self._call(self.store.put_if_absent_or_expired, record, now)
        except ConditionFailed:
            log.info("Work lock already held by another process (work item %s)", work_item_id)
            return LockResult(
                acquired=False,
                lock_id="",
                expires_at=datetime.fromtimestamp(now, timezone.utc),
                reason=LOCK_HELD_REASON,
            )
        except Exception as e:
            log.error("Failed to acquire work lock for %s: %s", work_item_id, e)
            raise LockAcquisitionError(
                f"Failed to acquire work lock: {e}", self.lock_key,
            ) from e

        expires_at = datetime.fromtimestamp(record.expires_at, timezone.utc)
        log.info(
            "Work lock acquired: lock=%s item=%s execution=%s env=%s expires=%s",
            lock_id, work_item_id, execution_id, environment, expires_at.isoformat(),
        )
        return LockResult(acquired=True, lock_id=lock_id, expires_at=expires_at)

    async def release(self, lock_id: str) -> None:
        """Delete the lock if ``lock_id`` still owns it. Never raises."""
        try:
            await self._call(self.store.delete_if_token_matches, self.lock_key, lock_id)
        except ConditionFailed:
            log.warning("Lock release skipped: lock %s not held (expired or already released)", lock_id)
            return
        except Exception as e:
            # The lock expires through its TTL regardless.
            log.error("Failed to release work lock %s: %s", lock_id, e)
            return
        log.info("Work lock released: %s", lock_id)

    async def mark_in_progress(self, lock_id: str, work_item_id: str, execution_id: str) -> None:
        """Record the real execution id on the held lock. Never raises."""
        log.info("Marking work item %s in progress (execution %s)", work_item_id, execution_id)
        try:
            await self._call(self.store.update_build_id, self.lock_key, lock_id, execution_id)
        except ConditionFailed:
            log.warning("Could not record execution %s: lock %s no longer held", execution_id, lock_id)
        except Exception as e:
            log.error("Failed to record execution %s on lock %s: %s", execution_id, lock_id, e)

    async def detect_stale(self) -> list[WorkItem]:
        """Expired locks still ``in_progress``: their holder crashed or hung."""
        now = int(self._clock())
        try:
            records = await self._call(self.store.query_expired_in_progress, self.lock_key, now)
        except Exception as e:
            log.error("Failed to detect stale work items: %s", e)
            raise LockAcquisitionError(
                f"Failed to detect stale work items: {e}", self.lock_key,
            ) from e

        stale = [
            WorkItem(
                id=r.work_item_id,
                title="Stale work item",
                description=f"Build {r.build_id} timed out or crashed",
                branch_name="",
                status=LockStatus.FAILED.value,
                created_at=datetime.fromtimestamp(r.acquired_at, timezone.utc),
            )
            for r in records
            if r.expires_at < now and r.status == LockStatus.IN_PROGRESS
        ]
        if stale:
            log.warning("Detected %d stale work items: %s", len(stale), [w.id for w in stale])
        return stale
