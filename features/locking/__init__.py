"""
Locking feature — distributed mutual exclusion for work-item processing.

Public API:
    from features.locking import WorkLockManager, DynamoLockStore, InMemoryLockStore
"""

from features.locking.manager import WorkLockManager
from features.locking.models import LOCK_KEY, LockRecord, LockResult, LockStatus
from features.locking.store import ConditionFailed, DynamoLockStore, InMemoryLockStore

__all__ = [
    "LOCK_KEY",
    "ConditionFailed",
    "DynamoLockStore",
    "InMemoryLockStore",
    "LockRecord",
    "LockResult",
    "LockStatus",
    "WorkLockManager",
]
