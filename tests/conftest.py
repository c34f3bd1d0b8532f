from __future__ import annotations

import threading
import time
from itertools import count
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple, Union

import pytest

from idp_orchestrator.config import PollingConfig
from idp_orchestrator.orchestration.dry_run import document_identity
from idp_orchestrator.orchestration.engines.base import EngineObservation, ResourceAction
from idp_orchestrator.orchestration.errors import EngineUnavailable
from idp_orchestrator.orchestration.main import WorkflowOrchestrator
from idp_orchestrator.orchestration.models import ManifestSet
from idp_orchestrator.orchestration.strategy import StrategyToggle
from idp_orchestrator.services.repository import InMemoryWorkflowRepository

FINISHED_PHASES = {"succeeded", "failed", "error"}

ScriptItem = Union[str, EngineObservation]


class FakeClusterApi:
    def __init__(self) -> None:
        self.existing: Set[Tuple[str, str]] = set()
        self.calls: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def add(self, document: dict) -> None:
        with self._lock:
            self.existing.add(document_identity(document))

    def remove(self, document: dict) -> None:
        with self._lock:
            self.existing.discard(document_identity(document))

    def exists(self, kind: str, name: str) -> bool:
        with self._lock:
            self.calls.append((kind, name))
            return (kind, name) in self.existing


class FakeEngine:
    """Scriptable engine; successful jobs apply or remove their documents in the cluster."""

    def __init__(self, cluster: FakeClusterApi) -> None:
        self.cluster = cluster
        self.script: Dict[str, List[ScriptItem]] = {}
        self.default_phases: List[ScriptItem] = ["running", "succeeded"]
        self.submitted: List[Tuple[str, ManifestSet]] = []
        self.actions: Dict[str, ResourceAction] = {}
        self.cancelled: List[str] = []
        self.unavailable_submits = 0
        self.unavailable_observes = 0
        self.gate = threading.Event()
        self.gate.set()
        self._jobs: Dict[str, List[ScriptItem]] = {}
        self._manifests: Dict[str, ManifestSet] = {}
        self._ids = count(1)
        self._lock = threading.Lock()

    def submit(self, manifests: ManifestSet, action: ResourceAction = ResourceAction.APPLY) -> str:
        with self._lock:
            if self.unavailable_submits > 0:
                self.unavailable_submits -= 1
                raise EngineUnavailable("engine api unreachable")
            job_id = f"job-{next(self._ids)}"
            key = next(iter(manifests))
            self._jobs[job_id] = list(self.script.get(key, self.default_phases))
            self._manifests[job_id] = manifests
            self.submitted.append((job_id, manifests))
            self.actions[job_id] = action
            return job_id

    def observe(self, job_id: str) -> EngineObservation:
        with self._lock:
            if self.unavailable_observes > 0:
                self.unavailable_observes -= 1
                raise EngineUnavailable("engine api unreachable")
        if not self.gate.is_set():
            return EngineObservation(phase="running", logs=[f"{job_id}: waiting"])
        with self._lock:
            phases = self._jobs[job_id]
            item = phases.pop(0) if len(phases) > 1 else phases[0]
        if isinstance(item, EngineObservation):
            observation = item
        else:
            observation = EngineObservation(
                phase=item, finished=item in FINISHED_PHASES, logs=[f"{job_id}: {item}"]
            )
        if observation.phase == "succeeded":
            for document in self._manifests[job_id].values():
                if self.actions[job_id] == ResourceAction.DELETE:
                    self.cluster.remove(document)
                else:
                    self.cluster.add(document)
        return observation

    def cancel(self, job_id: str) -> None:
        with self._lock:
            self.cancelled.append(job_id)

    def submitted_keys(self) -> List[str]:
        return [key for _, manifests in self.submitted for key in manifests]


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, routing_key: str, payload: Dict[str, Any], headers: Optional[dict] = None) -> None:
        self.events.append((routing_key, payload))

    def routing_keys(self) -> List[str]:
        return [routing_key for routing_key, _ in self.events]


class RecordingAuditPublisher:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def publish(self, workflow_id: str, action: str, outcome: str, details: Optional[dict] = None) -> None:
        self.events.append(
            {"workflow_id": workflow_id, "action": action, "outcome": outcome, "details": details or {}}
        )


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(0.005)


@pytest.fixture
def polling() -> PollingConfig:
    return PollingConfig(
        initial_interval=0.001,
        max_interval=0.01,
        observation_window=2.0,
        max_engine_unavailable=3,
        submit_attempts=3,
    )


@pytest.fixture
def cluster_api() -> FakeClusterApi:
    return FakeClusterApi()


@pytest.fixture
def engine(cluster_api: FakeClusterApi) -> FakeEngine:
    return FakeEngine(cluster_api)


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def toggle() -> StrategyToggle:
    return StrategyToggle(use_direct=False)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def audit_publisher() -> RecordingAuditPublisher:
    return RecordingAuditPublisher()


@pytest.fixture
def orchestrator(
    repository: InMemoryWorkflowRepository,
    engine: FakeEngine,
    cluster_api: FakeClusterApi,
    toggle: StrategyToggle,
    polling: PollingConfig,
    publisher: RecordingPublisher,
    audit_publisher: RecordingAuditPublisher,
) -> Iterator[WorkflowOrchestrator]:
    instance = WorkflowOrchestrator(
        repository,
        engine,
        cluster_api,
        toggle=toggle,
        polling=polling,
        max_workers=8,
        event_publisher=publisher,
        audit_publisher=audit_publisher,
    )
    yield instance
    engine.gate.set()
    instance.shutdown(wait=True)


@pytest.fixture
def eventually() -> Callable[..., None]:
    return wait_until
