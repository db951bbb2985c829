"""
Data models for the polling feature.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from models.schemas import WorkItem


@dataclass
class PollResult:
    """Outcome of one poll. Expected outcomes are data, not exceptions."""
    work_items_found: int
    lock_acquired: bool
    build_triggered: bool
    work_item_triggered: WorkItem | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        item = self.work_item_triggered
        return {
            "workItemsFound": self.work_items_found,
            "lockAcquired": self.lock_acquired,
            "buildTriggered": self.build_triggered,
            "workItemTriggered": None if item is None else {
                "id": item.id,
                "title": item.title,
                "branchName": item.branch_name,
                "status": item.status,
                "createdAt": item.created_at.isoformat(),
                "priority": item.priority,
            },
            "errors": list(self.errors),
        }


@dataclass
class TriggerResult:
    execution_id: str
    execution_arn: str
    success: bool
    error: str | None = None
