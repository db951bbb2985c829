"""
Lock stores — key-value backends with conditional writes.

The store is the only cross-process synchronization primitive in the system:
mutual exclusion comes from its conditional put, never from in-memory locks
in the manager. Store methods are synchronous (boto3 style); the manager runs
them off the event loop.

  DynamoLockStore   — DynamoDB table keyed by ``lockKey`` with TTL on ``expiresAt``
  InMemoryLockStore — process-local store for tests and local runs
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Protocol

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.config import Config
from botocore.exceptions import ClientError

from features.locking.models import LockRecord, LockStatus


class ConditionFailed(Exception):
    """The store rejected a write because its condition did not hold."""


class LockStore(Protocol):
    def put_if_absent_or_expired(self, record: LockRecord, now: int) -> None: ...

    def delete_if_token_matches(self, lock_key: str, lock_id: str) -> None: ...

    def update_build_id(self, lock_key: str, lock_id: str, build_id: str) -> None: ...

    def query_expired_in_progress(self, lock_key: str, now: int) -> list[LockRecord]: ...


# ── DynamoDB ──────────────────────────────────────────────────────────

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _serialize(value) -> dict:
    return _serializer.serialize(value)


def _deserialize(item: dict) -> dict:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


def _is_condition_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoLockStore:
    """Lock store backed by a DynamoDB table (partition key ``lockKey``)."""

    def __init__(self, table_name: str, region: str = "us-east-1", client=None):
        self.table_name = table_name
        self.client = client or boto3.client(
            "dynamodb",
            region_name=region,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )

    def put_if_absent_or_expired(self, record: LockRecord, now: int) -> None:
        try:
            self.client.put_item(
                TableName=self.table_name,
                Item={k: _serialize(v) for k, v in record.to_item().items()},
                ConditionExpression="attribute_not_exists(lockKey) OR expiresAt < :now",
                ExpressionAttributeValues={":now": _serialize(now)},
            )
        except ClientError as exc:
            if _is_condition_failure(exc):
                raise ConditionFailed(record.lock_key) from exc
            raise

    def delete_if_token_matches(self, lock_key: str, lock_id: str) -> None:
        try:
            self.client.delete_item(
                TableName=self.table_name,
                Key={"lockKey": _serialize(lock_key)},
                ConditionExpression="lockId = :lockId",
                ExpressionAttributeValues={":lockId": _serialize(lock_id)},
            )
        except ClientError as exc:
            if _is_condition_failure(exc):
                raise ConditionFailed(lock_key) from exc
            raise

    def update_build_id(self, lock_key: str, lock_id: str, build_id: str) -> None:
        try:
            self.client.update_item(
                TableName=self.table_name,
                Key={"lockKey": _serialize(lock_key)},
                UpdateExpression="SET buildId = :buildId",
                ConditionExpression="lockId = :lockId",
                ExpressionAttributeValues={
                    ":buildId": _serialize(build_id),
                    ":lockId": _serialize(lock_id),
                },
            )
        except ClientError as exc:
            if _is_condition_failure(exc):
                raise ConditionFailed(lock_key) from exc
            raise

    def query_expired_in_progress(self, lock_key: str, now: int) -> list[LockRecord]:
        records: list[LockRecord] = []
        kwargs: dict = {
            "TableName": self.table_name,
            "KeyConditionExpression": "lockKey = :lockKey",
            "FilterExpression": "expiresAt < :now AND #status = :status",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {
                ":lockKey": _serialize(lock_key),
                ":now": _serialize(now),
                ":status": _serialize(LockStatus.IN_PROGRESS.value),
            },
        }
        while True:
            page = self.client.query(**kwargs)
            records.extend(LockRecord.from_item(_deserialize(item)) for item in page.get("Items", []))
            last_key = page.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        return records


# ── In-memory ─────────────────────────────────────────────────────────

class InMemoryLockStore:
    """Thread-safe dict store with the same conditional semantics as DynamoDB."""

    def __init__(self):
        self._records: dict[str, LockRecord] = {}
        self._mutex = threading.Lock()

    def put_if_absent_or_expired(self, record: LockRecord, now: int) -> None:
        with self._mutex:
            existing = self._records.get(record.lock_key)
            if existing is not None and not existing.expires_at < now:
                raise ConditionFailed(record.lock_key)
            self._records[record.lock_key] = record

    def delete_if_token_matches(self, lock_key: str, lock_id: str) -> None:
        with self._mutex:
            existing = self._records.get(lock_key)
            if existing is None or existing.lock_id != lock_id:
                raise ConditionFailed(lock_key)
            del self._records[lock_key]

    def update_build_id(self, lock_key: str, lock_id: str, build_id: str) -> None:
        with self._mutex:
            existing = self._records.get(lock_key)
            if existing is None or existing.lock_id != lock_id:
                raise ConditionFailed(lock_key)
            self._records[lock_key] = replace(existing, build_id=build_id)

    def query_expired_in_progress(self, lock_key: str, now: int) -> list[LockRecord]:
        with self._mutex:
            record = self._records.get(lock_key)
            if record is None:
                return []
            if record.expires_at < now and record.status == LockStatus.IN_PROGRESS:
                return [record]
            return []

    def get(self, lock_key: str) -> LockRecord | None:
        with self._mutex:
            return self._records.get(lock_key)

    def put(self, record: LockRecord) -> None:
        """Write unconditionally (seeding state in tests and tooling)."""
        with self._mutex:
            self._records[record.lock_key] = record
