from __future__ import annotations

from datetime import timedelta
from typing import Callable, Dict, List, Set, Tuple

import pytest

from idp_orchestrator.orchestration.models import (
    StepRecord,
    StepStatus,
    Subject,
    SubjectKind,
    WorkflowRecord,
    WorkflowStatus,
    utcnow,
)
from idp_orchestrator.services.repository import InMemoryWorkflowRepository, RedisWorkflowRepository


class FakeRedis:
    """Just enough of the decoded redis-py client for the repository."""

    def __init__(self) -> None:
        self.strings: Dict[str, str] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}

    def get(self, key: str):
        return self.strings.get(key)

    def set(self, key: str, value: str) -> None:
        self.strings[key] = value

    def sadd(self, key: str, member: str) -> None:
        self.sets.setdefault(key, set()).add(member)

    def srem(self, key: str, member: str) -> None:
        self.sets.get(key, set()).discard(member)

    def smembers(self, key: str) -> Set[str]:
        return set(self.sets.get(key, set()))

    def zadd(self, key: str, mapping: Dict[str, float]) -> None:
        self.zsets.setdefault(key, {}).update(mapping)

    def zrevrange(self, key: str, start: int, end: int) -> List[str]:
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1], reverse=True)
        members = [member for member, _ in ordered]
        return members[start:] if end == -1 else members[start : end + 1]

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, client: FakeRedis) -> None:
        self._client = client
        self._queued: List[Tuple[Callable, tuple]] = []

    def __getattr__(self, name: str):
        command = getattr(self._client, name)

        def queue(*args):
            self._queued.append((command, args))

        return queue

    def execute(self) -> list:
        return [command(*args) for command, args in self._queued]


def _record(workflow_id: str, status: WorkflowStatus, name: str = "team-a", age: int = 0) -> WorkflowRecord:
    return WorkflowRecord(
        id=workflow_id,
        name=name,
        subject=Subject(SubjectKind.NAMESPACE, name),
        status=status,
        steps=[StepRecord("validate-namespace", StepStatus.SUCCEEDED), StepRecord("create-namespace")],
        manifests={"namespace": {"kind": "Namespace", "metadata": {"name": name}}},
        start_time=utcnow() - timedelta(seconds=age),
    )


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return InMemoryWorkflowRepository()
    return RedisWorkflowRepository(FakeRedis(), "test:workflow")


def test_upsert_and_get(store) -> None:
    store.upsert(_record("wf-1", WorkflowStatus.RUNNING))

    loaded = store.get("wf-1")

    assert loaded.status == WorkflowStatus.RUNNING
    assert loaded.steps[0].status == StepStatus.SUCCEEDED
    assert loaded.manifests["namespace"]["metadata"]["name"] == "team-a"
    assert store.get("missing") is None


def test_list_is_newest_first_and_filters_by_status(store) -> None:
    store.upsert(_record("old", WorkflowStatus.SUCCEEDED, "old-ns", age=30))
    store.upsert(_record("new", WorkflowStatus.RUNNING, "new-ns", age=1))
    store.upsert(_record("mid", WorkflowStatus.FAILED, "mid-ns", age=10))

    assert [record.id for record in store.list()] == ["new", "mid", "old"]
    assert [record.id for record in store.list(WorkflowStatus.FAILED)] == ["mid"]


def test_status_index_follows_transitions(store) -> None:
    record = _record("wf-1", WorkflowStatus.RUNNING)
    store.upsert(record)
    record.status = WorkflowStatus.SUCCEEDED
    store.upsert(record)

    assert store.list(WorkflowStatus.RUNNING) == []
    assert [item.id for item in store.list(WorkflowStatus.SUCCEEDED)] == ["wf-1"]


def test_list_active_for_subject(store) -> None:
    store.upsert(_record("done", WorkflowStatus.FAILED))
    store.upsert(_record("live", WorkflowStatus.PENDING))
    store.upsert(_record("other", WorkflowStatus.RUNNING, "team-b"))

    active = store.list_active_for_subject(Subject(SubjectKind.NAMESPACE, "team-a"))

    assert [record.id for record in active] == ["live"]


def test_in_memory_repository_returns_copies() -> None:
    repository = InMemoryWorkflowRepository()
    record = _record("wf-1", WorkflowStatus.RUNNING)
    repository.upsert(record)

    record.status = WorkflowStatus.FAILED
    loaded = repository.get("wf-1")
    loaded.steps[1].status = StepStatus.FAILED

    assert repository.get("wf-1").status == WorkflowStatus.RUNNING
    assert repository.get("wf-1").steps[1].status == StepStatus.PENDING


def test_redis_repository_skips_corrupt_records() -> None:
    client = FakeRedis()
    repository = RedisWorkflowRepository(client, "test:workflow")
    client.set("test:workflow:broken", "{not json")

    assert repository.get("broken") is None
