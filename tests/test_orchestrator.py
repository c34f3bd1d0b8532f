from __future__ import annotations

import threading
from typing import List, Optional

import pytest

from idp_orchestrator.events.models import EventType, ProvisioningEvent
from idp_orchestrator.orchestration.engines.base import EngineObservation, ResourceAction
from idp_orchestrator.orchestration.errors import (
    AlreadyExists,
    ConflictingWorkflow,
    InvalidName,
    InvalidState,
    NotFound,
    ProvisioningError,
    RequestExceedsLimit,
    UnknownStep,
)
from idp_orchestrator.orchestration.models import (
    ProvisioningRequest,
    ResourceLimits,
    ResourcePair,
    StepStatus,
    StrategyId,
    Subject,
    SubjectKind,
    WorkflowOperation,
    WorkflowRecord,
    WorkflowStatus,
)
from idp_orchestrator.orchestration.main import WorkflowOrchestrator
from idp_orchestrator.services.repository import InMemoryWorkflowRepository

NAMESPACE_STEP_NAMES = [
    "validate-namespace",
    "create-namespace",
    "apply-limit-range",
    "apply-network-policy",
    "verify-resources",
]


def _statuses(record) -> List[str]:
    return [step.status.value for step in record.steps]


def test_namespace_workflow_runs_every_step(orchestrator, engine, publisher) -> None:
    created = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))

    assert created.status == WorkflowStatus.RUNNING
    record = orchestrator.wait(created.id, timeout=5)

    assert record.status == WorkflowStatus.SUCCEEDED
    assert [step.name for step in record.steps] == NAMESPACE_STEP_NAMES
    assert all(step.status == StepStatus.SUCCEEDED for step in record.steps)
    assert engine.submitted_keys() == ["namespace", "limit-range", "network-policy"]
    assert record.end_time is not None
    assert publisher.routing_keys() == ["provisioning.workflow.succeeded"]


def test_namespace_without_isolation_has_no_network_policy_step(orchestrator) -> None:
    created = orchestrator.provision_namespace(
        ProvisioningRequest.namespace("team-open", network_isolated=False)
    )
    record = orchestrator.wait(created.id, timeout=5)

    assert "apply-network-policy" not in [step.name for step in record.steps]
    assert "network-policy" not in record.manifests
    assert record.status == WorkflowStatus.SUCCEEDED


def test_validation_errors_are_raised_before_a_record_exists(orchestrator, repository) -> None:
    with pytest.raises(InvalidName):
        orchestrator.provision_namespace(ProvisioningRequest.namespace("Team_A"))
    limits = ResourceLimits(cpu=ResourcePair(request="2", limit="500m"))
    with pytest.raises(RequestExceedsLimit) as excinfo:
        orchestrator.provision_namespace(ProvisioningRequest.namespace("team-b", resource_limits=limits))

    assert excinfo.value.field == "resource_limits.cpu.request"
    assert repository.list() == []


def test_cluster_uses_composition_strategy_by_default(orchestrator, engine) -> None:
    created = orchestrator.provision_cluster(ProvisioningRequest.cluster("demo-cluster", dry_run=False))
    record = orchestrator.wait(created.id, timeout=5)

    assert record.strategy == StrategyId.COMPOSITION
    assert [step.name for step in record.steps] == [
        "validate-cluster-config",
        "create-kro-cluster",
        "wait-cluster-ready",
    ]
    assert record.status == WorkflowStatus.SUCCEEDED
    assert engine.submitted[0][1]["managed-cluster"]["kind"] == "AKSCluster"


def test_cluster_uses_direct_strategy_when_toggle_enabled(orchestrator, toggle, engine) -> None:
    toggle.set(True)
    created = orchestrator.provision_cluster(ProvisioningRequest.cluster("demo-cluster", dry_run=False))
    record = orchestrator.wait(created.id, timeout=5)

    assert record.strategy == StrategyId.DIRECT
    assert list(record.manifests) == ["managed-cluster", "node-class", "node-pool"]
    assert engine.submitted_keys() == ["managed-cluster", "node-class", "node-pool"]
    assert record.status == WorkflowStatus.SUCCEEDED


def test_strategy_flip_does_not_affect_running_workflow(orchestrator, toggle, engine, eventually) -> None:
    engine.gate.clear()
    created = orchestrator.provision_cluster(ProvisioningRequest.cluster("flip-cluster", dry_run=False))
    eventually(lambda: engine.submitted)
    toggle.set(True)
    engine.gate.set()
    record = orchestrator.wait(created.id, timeout=5)

    assert record.strategy == StrategyId.COMPOSITION
    assert list(record.manifests) == ["managed-cluster"]
    assert record.manifests == created.manifests
    assert engine.submitted_keys() == ["managed-cluster"]


def test_start_rejects_subject_that_already_exists(orchestrator, cluster_api, repository) -> None:
    cluster_api.existing.add(("Namespace", "team-a"))

    with pytest.raises(AlreadyExists):
        orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))
    assert repository.list() == []


def test_second_start_for_same_subject_conflicts(orchestrator, engine) -> None:
    engine.gate.clear()
    first = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))

    with pytest.raises(ConflictingWorkflow):
        orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))
    engine.gate.set()
    assert orchestrator.wait(first.id, timeout=5).status == WorkflowStatus.SUCCEEDED


def test_concurrent_starts_admit_exactly_one(orchestrator, engine, repository) -> None:
    engine.gate.clear()
    barrier = threading.Barrier(6)
    outcomes: List[str] = []
    lock = threading.Lock()

    def start() -> None:
        barrier.wait()
        try:
            orchestrator.provision_namespace(ProvisioningRequest.namespace("shared-ns"))
            result = "started"
        except ProvisioningError as exc:
            result = exc.code
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=start) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)
    engine.gate.set()

    assert outcomes.count("started") == 1
    assert outcomes.count("ConflictingWorkflow") == 5
    assert len(repository.list()) == 1


def test_abort_running_workflow_skips_remaining_steps(orchestrator, engine, publisher, eventually) -> None:
    engine.gate.clear()
    created = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))
    eventually(lambda: engine.submitted)

    aborted = orchestrator.abort(created.id, "operator request")
    engine.gate.set()
    record = orchestrator.wait(created.id, timeout=5)

    assert aborted.status == WorkflowStatus.ABORTED
    assert record.status == WorkflowStatus.ABORTED
    assert record.abort_reason == "operator request"
    assert _statuses(record) == ["Succeeded", "Skipped", "Skipped", "Skipped", "Skipped"]
    assert engine.cancelled == [engine.submitted[0][0]]
    assert len(engine.submitted) == 1
    assert publisher.routing_keys() == ["provisioning.workflow.aborted"]


def test_abort_terminal_workflow_is_invalid(orchestrator) -> None:
    created = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))
    orchestrator.wait(created.id, timeout=5)

    with pytest.raises(InvalidState):
        orchestrator.abort(created.id)
    assert orchestrator.get_status(created.id).status == WorkflowStatus.SUCCEEDED


def test_abort_unknown_workflow(orchestrator) -> None:
    with pytest.raises(NotFound):
        orchestrator.abort("missing")


def test_failed_step_marks_rest_skipped(orchestrator, engine, publisher) -> None:
    engine.script["limit-range"] = ["running", "failed"]
    created = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))
    record = orchestrator.wait(created.id, timeout=5)

    assert record.status == WorkflowStatus.FAILED
    assert _statuses(record) == ["Succeeded", "Succeeded", "Failed", "Skipped", "Skipped"]
    assert record.last_error["step"] == "apply-limit-range"
    assert record.last_error["code"] == "StepFailed"
    assert record.step("apply-limit-range").error["step"] == "apply-limit-range"
    assert publisher.routing_keys() == ["provisioning.workflow.failed"]


def test_unknown_phase_reported_finished_counts_as_failure(orchestrator, engine) -> None:
    engine.script["namespace"] = [EngineObservation(phase="Mystery", finished=True, message="odd")]
    created = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))
    record = orchestrator.wait(created.id, timeout=5)

    assert record.status == WorkflowStatus.FAILED
    assert record.last_error["step"] == "create-namespace"


def test_retry_resumes_from_first_unfinished_step(orchestrator, engine) -> None:
    engine.script["limit-range"] = ["failed"]
    failed = orchestrator.wait(
        orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a")).id, timeout=5
    )
    before = failed.to_dict()
    engine.script.clear()

    retried = orchestrator.retry(failed.id)
    record = orchestrator.wait(retried.id, timeout=5)

    assert record.id != failed.id
    assert record.retry_of == failed.id
    assert [step.name for step in record.steps] == [
        "apply-limit-range",
        "apply-network-policy",
        "verify-resources",
    ]
    assert record.manifests == failed.manifests
    assert record.strategy == failed.strategy
    assert record.status == WorkflowStatus.SUCCEEDED
    assert orchestrator.get_status(failed.id).to_dict() == before


def test_retry_from_explicit_step(orchestrator, engine, toggle) -> None:
    toggle.set(True)
    engine.script["node-pool"] = ["failed"]
    failed = orchestrator.wait(
        orchestrator.provision_cluster(ProvisioningRequest.cluster("retry-me", dry_run=False)).id,
        timeout=5,
    )
    toggle.set(False)
    engine.script.clear()

    retried = orchestrator.wait(orchestrator.retry(failed.id, "create-karpenter-nodeclass").id, timeout=5)

    assert retried.strategy == StrategyId.DIRECT
    assert [step.name for step in retried.steps] == [
        "create-karpenter-nodeclass",
        "create-karpenter-nodepool",
        "wait-for-cluster-ready",
    ]
    assert retried.status == WorkflowStatus.SUCCEEDED


def test_retry_rejects_non_terminal_and_unknown_step(orchestrator, engine) -> None:
    engine.gate.clear()
    running = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))
    with pytest.raises(InvalidState):
        orchestrator.retry(running.id)
    orchestrator.abort(running.id)
    engine.gate.set()
    orchestrator.wait(running.id, timeout=5)

    with pytest.raises(UnknownStep):
        orchestrator.retry(running.id, "no-such-step")


def test_observation_timeout_fails_step_and_cancels_job(orchestrator, engine, polling) -> None:
    polling.observation_window = 0.1
    engine.script["namespace"] = ["running"]
    created = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))
    record = orchestrator.wait(created.id, timeout=5)

    assert record.status == WorkflowStatus.FAILED
    assert record.last_error["code"] == "ObservationTimeout"
    assert engine.cancelled == [engine.submitted[0][0]]


def test_persistent_engine_unavailability_fails_step(orchestrator, engine) -> None:
    engine.unavailable_observes = 50
    created = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))
    record = orchestrator.wait(created.id, timeout=5)

    assert record.status == WorkflowStatus.FAILED
    assert record.last_error["code"] == "EngineUnavailable"
    assert record.last_error["step"] == "create-namespace"


def test_transient_engine_unavailability_is_retried(orchestrator, engine) -> None:
    engine.unavailable_observes = 2
    engine.unavailable_submits = 2
    created = orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a"))

    assert orchestrator.wait(created.id, timeout=5).status == WorkflowStatus.SUCCEEDED


def test_queries_list_and_logs(orchestrator) -> None:
    first = orchestrator.wait(
        orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a")).id, timeout=5
    )
    orchestrator.wait(orchestrator.provision_namespace(ProvisioningRequest.namespace("team-b")).id, timeout=5)

    assert len(orchestrator.list_workflows()) == 2
    assert len(orchestrator.list_workflows(limit=1)) == 1
    assert orchestrator.list_workflows(status=WorkflowStatus.FAILED) == []
    assert [step.name for step in orchestrator.get_steps(first.id)] == NAMESPACE_STEP_NAMES
    messages = [entry.message for entry in orchestrator.get_logs(first.id)]
    assert "Workflow succeeded" in messages
    with pytest.raises(NotFound):
        orchestrator.get_status("missing")


def test_handle_event_routes_commands(orchestrator, repository, audit_publisher) -> None:
    orchestrator.handle_event(
        ProvisioningEvent(type=EventType.NAMESPACE_REQUESTED, payload={"name": "from-bus", "dryRun": True})
    )
    records = repository.list()
    assert [record.subject.name for record in records] == ["from-bus"]
    orchestrator.wait(records[0].id, timeout=5)

    orchestrator.handle_event(
        ProvisioningEvent(type=EventType.WORKFLOW_ABORT_REQUESTED, workflow_id=records[0].id)
    )
    rejected = [event for event in audit_publisher.events if event["outcome"] == "REJECTED"]
    assert rejected[0]["details"]["code"] == "InvalidState"


def test_handle_event_rejects_invalid_payload(orchestrator, repository, audit_publisher) -> None:
    orchestrator.handle_event(ProvisioningEvent(type=EventType.CLUSTER_REQUESTED, payload={"location": "mars"}))

    assert repository.list() == []
    assert audit_publisher.events[-1]["outcome"] == "REJECTED"


class _AbortingRepository(InMemoryWorkflowRepository):
    """Aborts a workflow as soon as its Pending record is stored."""

    def __init__(self) -> None:
        super().__init__()
        self.orchestrator: Optional[WorkflowOrchestrator] = None
        self.aborted: List[str] = []

    def upsert(self, record: WorkflowRecord) -> None:
        super().upsert(record)
        if record.status == WorkflowStatus.PENDING and record.id not in self.aborted:
            self.aborted.append(record.id)
            self.orchestrator.abort(record.id, "cancelled before start")


def test_abort_of_pending_workflow_is_not_overwritten_by_launch(engine, cluster_api, polling) -> None:
    repository = _AbortingRepository()
    instance = WorkflowOrchestrator(repository, engine, cluster_api, polling=polling)
    repository.orchestrator = instance
    try:
        created = instance.provision_namespace(ProvisioningRequest.namespace("team-a"))
        record = instance.wait(created.id, timeout=5)
    finally:
        instance.shutdown(wait=True)

    assert created.status == WorkflowStatus.ABORTED
    assert record.status == WorkflowStatus.ABORTED
    assert record.abort_reason == "cancelled before start"
    assert _statuses(record) == ["Skipped"] * len(NAMESPACE_STEP_NAMES)
    assert "Workflow running" not in [entry.message for entry in record.logs]
    assert engine.submitted == []


def _deleted_keys(engine) -> List[str]:
    return [
        key
        for job_id, manifests in engine.submitted
        if engine.actions[job_id] == ResourceAction.DELETE
        for key in manifests
    ]


def test_namespace_deletion_removes_provisioned_resources(
    orchestrator, engine, cluster_api, publisher, audit_publisher
) -> None:
    provisioned = orchestrator.wait(
        orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a")).id, timeout=5
    )

    created = orchestrator.delete_namespace("team-a")
    record = orchestrator.wait(created.id, timeout=5)

    assert created.operation == WorkflowOperation.DELETE
    assert created.dry_run is False
    assert created.parameters["provisionedBy"] == provisioned.id
    assert record.status == WorkflowStatus.SUCCEEDED
    assert [step.name for step in record.steps] == [
        "validate-deletion",
        "cleanup-network-policy",
        "cleanup-limit-range",
        "delete-namespace",
        "verify-deletion",
    ]
    assert _deleted_keys(engine) == ["network-policy", "limit-range", "namespace"]
    assert cluster_api.existing == set()
    assert publisher.events[-1][1]["operation"] == "delete"
    assert audit_publisher.events[-1]["action"] == "DELETE_NAMESPACE"
    assert audit_publisher.events[-1]["outcome"] == "SUCCESS"


def test_deleting_never_provisioned_namespace_is_not_found(orchestrator, repository) -> None:
    with pytest.raises(NotFound) as excinfo:
        orchestrator.delete_namespace("ghost")

    assert excinfo.value.field == "name"
    assert repository.list() == []


def test_deleting_namespace_removed_from_cluster_is_not_found(orchestrator, cluster_api, repository) -> None:
    orchestrator.wait(orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a")).id, timeout=5)
    cluster_api.existing.clear()

    with pytest.raises(NotFound):
        orchestrator.delete_namespace("team-a")
    assert [record.operation for record in repository.list()] == [WorkflowOperation.PROVISION]


def test_deletion_rejects_invalid_name(orchestrator) -> None:
    with pytest.raises(InvalidName):
        orchestrator.delete_namespace("Team_A")


def test_second_deletion_for_same_subject_conflicts(orchestrator, engine) -> None:
    orchestrator.wait(orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a")).id, timeout=5)
    engine.gate.clear()
    first = orchestrator.delete_namespace("team-a")

    with pytest.raises(ConflictingWorkflow):
        orchestrator.delete_namespace("team-a")
    engine.gate.set()
    assert orchestrator.wait(first.id, timeout=5).status == WorkflowStatus.SUCCEEDED


def test_direct_cluster_deletion_uses_recorded_strategy(orchestrator, toggle, engine, cluster_api) -> None:
    toggle.set(True)
    orchestrator.wait(
        orchestrator.provision_cluster(ProvisioningRequest.cluster("demo-cluster", dry_run=False)).id,
        timeout=5,
    )
    toggle.set(False)

    record = orchestrator.wait(orchestrator.delete_cluster("Demo-Cluster", dry_run=False).id, timeout=5)

    assert record.subject == Subject(SubjectKind.CLUSTER, "demo-cluster")
    assert record.strategy == StrategyId.DIRECT
    assert [step.name for step in record.steps] == [
        "validate-deletion",
        "delete-karpenter-nodepool",
        "delete-karpenter-nodeclass",
        "delete-managed-cluster",
        "verify-deletion",
    ]
    assert _deleted_keys(engine) == ["node-pool", "node-class", "managed-cluster"]
    assert record.status == WorkflowStatus.SUCCEEDED
    assert cluster_api.existing == set()


def test_failed_deletion_retries_remaining_deletes(orchestrator, engine, cluster_api) -> None:
    orchestrator.wait(orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a")).id, timeout=5)
    engine.script["limit-range"] = ["failed"]
    failed = orchestrator.wait(orchestrator.delete_namespace("team-a").id, timeout=5)
    engine.script.clear()

    assert failed.status == WorkflowStatus.FAILED
    assert failed.last_error["step"] == "cleanup-limit-range"

    record = orchestrator.wait(orchestrator.retry(failed.id).id, timeout=5)

    assert record.operation == WorkflowOperation.DELETE
    assert [step.name for step in record.steps] == ["cleanup-limit-range", "delete-namespace", "verify-deletion"]
    assert record.status == WorkflowStatus.SUCCEEDED
    assert cluster_api.existing == set()


def test_provisioned_prefers_live_record(orchestrator) -> None:
    dry = orchestrator.wait(
        orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a", dry_run=True)).id, timeout=5
    )
    live = orchestrator.wait(
        orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a")).id, timeout=5
    )

    assert dry.status == WorkflowStatus.SUCCEEDED
    assert orchestrator.provisioned(Subject(SubjectKind.NAMESPACE, "team-a")).id == live.id


def test_preview_returns_plan_without_starting_workflow(orchestrator, toggle, engine, repository) -> None:
    namespace = orchestrator.preview(ProvisioningRequest.namespace("team-a"))
    toggle.set(True)
    cluster = orchestrator.preview(ProvisioningRequest.cluster("demo-cluster"))

    assert namespace.steps == NAMESPACE_STEP_NAMES
    assert list(namespace.manifests) == ["namespace", "limit-range", "network-policy"]
    assert namespace.strategy is None
    assert cluster.strategy == StrategyId.DIRECT
    assert list(cluster.manifests) == ["managed-cluster", "node-class", "node-pool"]
    assert cluster.to_dict()["steps"][0] == "validate-inputs"
    assert repository.list() == []
    assert engine.submitted == []
    with pytest.raises(InvalidName):
        orchestrator.preview(ProvisioningRequest.namespace("Team_A"))


def test_handle_event_routes_deletion_commands(orchestrator, repository, audit_publisher) -> None:
    orchestrator.wait(orchestrator.provision_namespace(ProvisioningRequest.namespace("team-a")).id, timeout=5)

    orchestrator.handle_event(
        ProvisioningEvent(type=EventType.NAMESPACE_DELETE_REQUESTED, payload={"name": "team-a"})
    )
    deletions = [record for record in repository.list() if record.operation == WorkflowOperation.DELETE]
    assert len(deletions) == 1
    assert deletions[0].dry_run is False
    assert orchestrator.wait(deletions[0].id, timeout=5).status == WorkflowStatus.SUCCEEDED

    orchestrator.handle_event(
        ProvisioningEvent(type=EventType.CLUSTER_DELETE_REQUESTED, payload={"name": "no-such-cluster"})
    )
    assert audit_publisher.events[-1]["outcome"] == "REJECTED"
    assert audit_publisher.events[-1]["details"]["code"] == "NotFound"
