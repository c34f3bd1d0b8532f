"""Workflow record persistence: Redis-backed with an in-memory fallback."""
from __future__ import annotations

import copy
import json
import logging
import threading
from typing import Dict, List, Optional, Protocol

from redis import Redis

from ..orchestration.models import Subject, WorkflowRecord, WorkflowStatus

LOGGER = logging.getLogger(__name__)


class WorkflowRepository(Protocol):
    """Storage for workflow aggregates.

    ``upsert`` writes the record, its steps and logs as one unit; readers
    never observe a partially updated record.
    """

    def get(self, workflow_id: str) -> Optional[WorkflowRecord]:
        ...

    def list(self, status: Optional[WorkflowStatus] = None) -> List[WorkflowRecord]:
        ...

    def list_active_for_subject(self, subject: Subject) -> List[WorkflowRecord]:
        ...

    def upsert(self, record: WorkflowRecord) -> None:
        ...


def _sort_key(record: WorkflowRecord) -> float:
    return record.start_time.timestamp() if record.start_time else 0.0


class InMemoryWorkflowRepository:
    """Process-local repository; stores and returns deep copies."""

    def __init__(self) -> None:
        self._records: Dict[str, WorkflowRecord] = {}
        self._lock = threading.Lock()

    def get(self, workflow_id: str) -> Optional[WorkflowRecord]:
        with self._lock:
            record = self._records.get(workflow_id)
            return copy.deepcopy(record) if record else None

    def list(self, status: Optional[WorkflowStatus] = None) -> List[WorkflowRecord]:
        with self._lock:
            records = [copy.deepcopy(record) for record in self._records.values()]
        if status is not None:
            records = [record for record in records if record.status == status]
        return sorted(records, key=_sort_key, reverse=True)

    def list_active_for_subject(self, subject: Subject) -> List[WorkflowRecord]:
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._records.values()
                if record.subject == subject and not record.is_terminal
            ]

    def upsert(self, record: WorkflowRecord) -> None:
        with self._lock:
            self._records[record.id] = copy.deepcopy(record)


class RedisWorkflowRepository:
    """Persist workflow aggregates as JSON documents in Redis.

    Each record lives under one key; status and subject index sets plus a
    start-time ordered index are rewritten in the same MULTI transaction.
    """

    RECORD_KEY_TEMPLATE = "{prefix}:{workflow_id}"
    STATUS_KEY_TEMPLATE = "{prefix}:status:{status}"
    SUBJECT_KEY_TEMPLATE = "{prefix}:subject:{subject}"
    INDEX_KEY_TEMPLATE = "{prefix}:index"

    def __init__(self, redis_client: Redis, key_prefix: str = "idp:workflow") -> None:
        self._redis = redis_client
        self._prefix = key_prefix

    def _record_key(self, workflow_id: str) -> str:
        return self.RECORD_KEY_TEMPLATE.format(prefix=self._prefix, workflow_id=workflow_id)

    def _status_key(self, status: WorkflowStatus) -> str:
        return self.STATUS_KEY_TEMPLATE.format(prefix=self._prefix, status=status.value)

    def _subject_key(self, subject: Subject) -> str:
        return self.SUBJECT_KEY_TEMPLATE.format(prefix=self._prefix, subject=subject.key)

    def _index_key(self) -> str:
        return self.INDEX_KEY_TEMPLATE.format(prefix=self._prefix)

    def get(self, workflow_id: str) -> Optional[WorkflowRecord]:
        raw = self._redis.get(self._record_key(workflow_id))
        if not raw:
            return None
        try:
            return WorkflowRecord.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, ValueError):
            LOGGER.warning("Stored workflow record is invalid", extra={"workflow_id": workflow_id})
            return None

    def _load_many(self, workflow_ids: List[str]) -> List[WorkflowRecord]:
        records = []
        for workflow_id in workflow_ids:
            record = self.get(workflow_id)
            if record is not None:
                records.append(record)
        return records

    def list(self, status: Optional[WorkflowStatus] = None) -> List[WorkflowRecord]:
        ordered = list(self._redis.zrevrange(self._index_key(), 0, -1))
        if status is not None:
            members = self._redis.smembers(self._status_key(status))
            ordered = [workflow_id for workflow_id in ordered if workflow_id in members]
        records = self._load_many(ordered)
        if status is not None:
            # Index sets can lag a concurrent upsert; the record itself is authoritative.
            records = [record for record in records if record.status == status]
        return records

    def list_active_for_subject(self, subject: Subject) -> List[WorkflowRecord]:
        workflow_ids = sorted(self._redis.smembers(self._subject_key(subject)))
        return [record for record in self._load_many(workflow_ids) if not record.is_terminal]

    def upsert(self, record: WorkflowRecord) -> None:
        LOGGER.debug(
            "Persisting workflow record",
            extra={"workflow_id": record.id, "status": record.status.value},
        )
        pipeline = self._redis.pipeline(transaction=True)
        pipeline.set(self._record_key(record.id), json.dumps(record.to_dict()))
        for status in WorkflowStatus:
            if status != record.status:
                pipeline.srem(self._status_key(status), record.id)
        pipeline.sadd(self._status_key(record.status), record.id)
        pipeline.sadd(self._subject_key(record.subject), record.id)
        pipeline.zadd(self._index_key(), {record.id: _sort_key(record)})
        pipeline.execute()


__all__ = ["WorkflowRepository", "InMemoryWorkflowRepository", "RedisWorkflowRepository"]
