"""
Data models for the locking feature.

A LockRecord is the single row that says which process may work right now.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

LOCK_KEY = "work-item-processor-lock"


class LockStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class LockRecord:
    """Persisted lock row. Timestamps are epoch seconds (DynamoDB TTL format)."""
    lock_key: str
    lock_id: str
    work_item_id: str
    build_id: str
    acquired_at: int
    expires_at: int
    status: LockStatus
    environment: str

    def to_item(self) -> dict:
        """Attribute names as stored in the table."""
        return {
            "lockKey": self.lock_key,
            "lockId": self.lock_id,
            "workItemId": self.work_item_id,
            "buildId": self.build_id,
            "acquiredAt": self.acquired_at,
            "expiresAt": self.expires_at,
            "status": self.status.value,
            "environment": self.environment,
        }

    @classmethod
    def from_item(cls, item: dict) -> "LockRecord":
        return cls(
            lock_key=item["lockKey"],
            lock_id=item["lockId"],
            work_item_id=item.get("workItemId", ""),
            build_id=item.get("buildId", ""),
            acquired_at=int(item.get("acquiredAt", 0)),
            expires_at=int(item.get("expiresAt", 0)),
            status=LockStatus(item.get("status", LockStatus.IN_PROGRESS.value)),
            environment=item.get("environment", ""),
        )


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    lock_id: str
    expires_at: datetime
    reason: str | None = None
