"""Workflow orchestration: start, execute, observe, abort and retry provisioning and deletion workflows."""
from __future__ import annotations

import copy
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from pydantic import ValidationError as SchemaValidationError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_any,
    stop_when_event_set,
    wait_exponential,
)

from ..config import PollingConfig
from ..events.commands import decode_request
from ..events.models import EventType, ProvisioningEvent, workflow_status_routing_key
from ..services.repository import WorkflowRepository
from ..services.validation import validate_name, validate_request
from .dry_run import DryRunSimulator, ExecutionGateway, LiveGateway, document_identity
from .engines.base import ClusterApi, EngineObservation, ResourceAction, WorkflowEngine
from .errors import (
    AlreadyExists,
    ConflictingWorkflow,
    EngineUnavailable,
    InvalidState,
    NotFound,
    ObservationTimeout,
    ProvisioningError,
    StepExecutionError,
    UnknownStep,
)
from .manifests.cluster import generate_cluster_manifests
from .manifests.namespace import generate_namespace_manifests
from .models import (
    LogEntry,
    ManifestPreview,
    ManifestSet,
    ProvisioningRequest,
    StepRecord,
    StepStatus,
    Subject,
    SubjectKind,
    WorkflowOperation,
    WorkflowParameters,
    WorkflowRecord,
    WorkflowStatus,
    utcnow,
)
from .steps import (
    ENGINE_ACTIONS,
    StepAction,
    StepDefinition,
    definition_for,
    initial_steps,
    plan_for,
    resolve_plan,
)
from .strategy import StrategyToggle, map_parameters, select_strategy

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

LOG_EXCERPT_LIMIT = 4000
ABORTABLE_STATUSES = frozenset({WorkflowStatus.PENDING, WorkflowStatus.RUNNING})
RETRYABLE_STATUSES = frozenset({WorkflowStatus.FAILED, WorkflowStatus.ABORTED})


class _WorkflowCancelled(Exception):
    """Raised inside the worker when the cancellation token fires."""


@dataclass
class _WorkflowRuntime:
    gateway: ExecutionGateway
    lock: threading.RLock = field(default_factory=threading.RLock)
    cancel: threading.Event = field(default_factory=threading.Event)
    active_job_id: Optional[str] = None
    future: Optional[Future] = None


def _excerpt(lines: List[str]) -> str:
    text = "\n".join(lines)
    return text[-LOG_EXCERPT_LIMIT:]


class WorkflowOrchestrator:
    """Primary entry point for running provisioning workflows.

    Each workflow executes sequentially on one worker thread. Step
    transitions, ``abort`` and ``retry`` serialize on a per-workflow lock;
    queries read repository snapshots and never block on a running workflow.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        engine: WorkflowEngine,
        cluster_api: ClusterApi,
        *,
        toggle: Optional[StrategyToggle] = None,
        polling: Optional[PollingConfig] = None,
        max_workers: int = 4,
        event_publisher: Optional[Any] = None,
        audit_publisher: Optional[Any] = None,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._cluster_api = cluster_api
        self._toggle = toggle or StrategyToggle()
        self._polling = polling or PollingConfig()
        self._event_publisher = event_publisher
        self._audit_publisher = audit_publisher
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="workflow")
        self._runtimes: Dict[str, _WorkflowRuntime] = {}
        self._runtimes_guard = threading.Lock()
        self._subject_locks: Dict[str, threading.Lock] = {}
        self._subject_guard = threading.Lock()
        # Used for records with no live runtime in this process.
        self._detached_lock = threading.RLock()

    @property
    def strategy_toggle(self) -> StrategyToggle:
        return self._toggle

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def provision_namespace(self, request: ProvisioningRequest) -> WorkflowRecord:
        if request.kind != SubjectKind.NAMESPACE:
            raise ValueError("provision_namespace requires a namespace request")
        manifests, parameters = self._prepare(request)
        return self.start(manifests, parameters, dry_run=request.dry_run)

    def provision_cluster(self, request: ProvisioningRequest) -> WorkflowRecord:
        if request.kind != SubjectKind.CLUSTER:
            raise ValueError("provision_cluster requires a cluster request")
        manifests, parameters = self._prepare(request)
        return self.start(manifests, parameters, dry_run=request.dry_run)

    def preview(self, request: ProvisioningRequest) -> ManifestPreview:
        """Validate ``request`` and return what provisioning would apply, without starting anything."""

        manifests, parameters = self._prepare(request)
        definitions = resolve_plan(parameters.subject.kind, parameters.strategy, manifests)
        return ManifestPreview(
            subject=parameters.subject,
            manifests=manifests,
            steps=[definition.name for definition in definitions],
            strategy=parameters.strategy,
        )

    def delete_namespace(self, name: str, dry_run: bool = False) -> WorkflowRecord:
        validate_name(name, SubjectKind.NAMESPACE)
        return self._start_deletion(Subject(SubjectKind.NAMESPACE, name), dry_run)

    def delete_cluster(self, name: str, dry_run: bool = True) -> WorkflowRecord:
        validate_name(name, SubjectKind.CLUSTER)
        return self._start_deletion(Subject(SubjectKind.CLUSTER, name.lower()), dry_run)

    def provisioned(self, subject: Subject) -> WorkflowRecord:
        """Latest succeeded provisioning workflow for ``subject``.

        Live records win over dry-run ones. Raises ``NotFound`` when the
        subject was never provisioned successfully.
        """

        candidates = [
            record
            for record in self._repository.list(WorkflowStatus.SUCCEEDED)
            if record.subject == subject and record.operation == WorkflowOperation.PROVISION
        ]
        if not candidates:
            raise NotFound(f"{subject.key} has no successful provisioning workflow", field="name")
        live = [record for record in candidates if not record.dry_run]
        return (live or candidates)[0]

    def start(
        self, manifests: ManifestSet, parameters: WorkflowParameters, dry_run: bool = False
    ) -> WorkflowRecord:
        """Create a workflow record for ``manifests`` and schedule it.

        The first document in ``manifests`` is the subject document used for
        the existence check. Provisioning raises ``AlreadyExists`` when the
        subject is already present in the cluster and deletion raises
        ``NotFound`` when it is missing. Either raises ``ConflictingWorkflow``
        when a non-terminal workflow already targets the subject.
        """

        if not manifests:
            raise ValueError("cannot start a workflow without manifests")
        subject = parameters.subject
        operation = parameters.operation
        definitions = resolve_plan(subject.kind, parameters.strategy, manifests, operation)
        kind, name = document_identity(next(iter(manifests.values())))

        with self._subject_lock(subject):
            self._ensure_no_conflict(subject)
            present = self._cluster_api.exists(kind, name)
            if operation == WorkflowOperation.PROVISION and present:
                raise AlreadyExists(f"{kind} {name} already exists", field="name")
            if operation == WorkflowOperation.DELETE and not present:
                raise NotFound(f"{kind} {name} was not found", field="name")
            record = WorkflowRecord(
                id=str(uuid.uuid4()),
                name=subject.name,
                subject=subject,
                status=WorkflowStatus.PENDING,
                steps=initial_steps(definitions),
                manifests=copy.deepcopy(manifests),
                parameters=copy.deepcopy(parameters.values),
                strategy=parameters.strategy,
                dry_run=dry_run,
                start_time=utcnow(),
                operation=operation,
            )
            record.add_log(
                f"Workflow created to {operation.value} {subject.key}" + (" (dry run)" if dry_run else "")
            )
            LOGGER.info(
                "Workflow created",
                extra={
                    "workflow_id": record.id,
                    "subject": subject.key,
                    "operation": operation.value,
                    "strategy": getattr(record.strategy, "value", None),
                    "dry_run": dry_run,
                },
            )
            if not dry_run:
                gateway: ExecutionGateway = self._live_gateway()
            elif operation == WorkflowOperation.DELETE:
                # The simulated cluster starts out holding everything being deleted.
                gateway = DryRunSimulator(seed=list(record.manifests.values()))
            else:
                gateway = DryRunSimulator()
            return self._launch(record, gateway)

    def get_status(self, workflow_id: str) -> WorkflowRecord:
        record = self._repository.get(workflow_id)
        if record is None:
            raise NotFound(f"workflow {workflow_id} not found")
        return record

    def get_steps(self, workflow_id: str) -> List[StepRecord]:
        return self.get_status(workflow_id).steps

    def get_logs(self, workflow_id: str) -> List[LogEntry]:
        return self.get_status(workflow_id).logs

    def list_workflows(
        self, status: Optional[WorkflowStatus] = None, limit: Optional[int] = None
    ) -> List[WorkflowRecord]:
        records = self._repository.list(status)
        return records[:limit] if limit is not None else records

    def wait(self, workflow_id: str, timeout: Optional[float] = None) -> WorkflowRecord:
        """Block until the workflow's worker finishes (or ``timeout`` passes)."""

        runtime = self._runtime(workflow_id)
        if runtime is not None and runtime.future is not None:
            wait_futures([runtime.future], timeout=timeout)
        return self.get_status(workflow_id)

    def abort(self, workflow_id: str, reason: str = "") -> WorkflowRecord:
        runtime = self._runtime(workflow_id)
        lock = runtime.lock if runtime is not None else self._detached_lock
        with lock:
            record = self.get_status(workflow_id)
            if record.status not in ABORTABLE_STATUSES:
                raise InvalidState(
                    f"workflow {workflow_id} is {record.status.value}; only Pending or Running workflows can be aborted"
                )
            now = utcnow()
            for step in record.steps:
                if step.status in (StepStatus.RUNNING, StepStatus.PENDING):
                    if step.status == StepStatus.RUNNING:
                        step.end_time = now
                    step.status = StepStatus.SKIPPED
            record.status = WorkflowStatus.ABORTED
            record.end_time = now
            record.abort_reason = reason or "aborted by operator"
            record.add_log(f"Workflow aborted: {record.abort_reason}", level="warning")
            self._repository.upsert(record)
            job_id = None
            if runtime is not None:
                runtime.cancel.set()
                job_id = runtime.active_job_id
        LOGGER.info("Workflow aborted", extra={"workflow_id": workflow_id, "reason": record.abort_reason})
        if runtime is not None and job_id:
            self._cancel_job(runtime, workflow_id, job_id)
        self._publish_terminal(record)
        return record

    def retry(self, workflow_id: str, from_step: Optional[str] = None) -> WorkflowRecord:
        """Start a new workflow re-executing ``workflow_id`` from ``from_step``.

        The source record is left untouched; the new record references it via
        ``retry_of`` and reuses its manifests and strategy verbatim.
        """

        runtime = self._runtime(workflow_id)
        lock = runtime.lock if runtime is not None else self._detached_lock
        with lock:
            source = self.get_status(workflow_id)
            if source.status not in RETRYABLE_STATUSES:
                raise InvalidState(
                    f"workflow {workflow_id} is {source.status.value}; only Failed or Aborted workflows can be retried"
                )
            names = [step.name for step in source.steps]
            if from_step is None:
                from_step = next(
                    (step.name for step in source.steps if step.status != StepStatus.SUCCEEDED),
                    names[0],
                )
            elif from_step not in names:
                raise UnknownStep(f"workflow {workflow_id} has no step {from_step!r}", step=from_step)
        index = names.index(from_step)

        with self._subject_lock(source.subject):
            self._ensure_no_conflict(source.subject)
            record = WorkflowRecord(
                id=str(uuid.uuid4()),
                name=source.name,
                subject=source.subject,
                status=WorkflowStatus.PENDING,
                steps=[StepRecord(name=name) for name in names[index:]],
                manifests=copy.deepcopy(source.manifests),
                parameters=copy.deepcopy(source.parameters),
                strategy=source.strategy,
                dry_run=source.dry_run,
                start_time=utcnow(),
                retry_of=source.id,
                operation=source.operation,
            )
            record.add_log(f"Retry of workflow {source.id} starting at step {from_step}")
            LOGGER.info(
                "Workflow retry created",
                extra={"workflow_id": record.id, "retry_of": source.id, "from_step": from_step},
            )
            if record.dry_run:
                gateway: ExecutionGateway = DryRunSimulator(seed=self._retry_seed(source, names[index:]))
            else:
                gateway = self._live_gateway()
            return self._launch(record, gateway)

    def handle_event(self, event: ProvisioningEvent) -> None:
        """Route an incoming provisioning command to the correct operation."""

        LOGGER.info(
            "Handling provisioning event",
            extra={"event_type": event.type, "workflow_id": event.workflow_id},
        )
        try:
            if event.type in (EventType.NAMESPACE_REQUESTED, EventType.CLUSTER_REQUESTED):
                request = decode_request(event)
                if request.kind == SubjectKind.NAMESPACE:
                    self.provision_namespace(request)
                else:
                    self.provision_cluster(request)
            elif event.type == EventType.NAMESPACE_DELETE_REQUESTED:
                self.delete_namespace(
                    str(event.payload.get("name", "")), bool(event.payload.get("dryRun", False))
                )
            elif event.type == EventType.CLUSTER_DELETE_REQUESTED:
                self.delete_cluster(
                    str(event.payload.get("name", "")), bool(event.payload.get("dryRun", True))
                )
            elif event.type == EventType.WORKFLOW_ABORT_REQUESTED:
                self.abort(self._require_workflow_id(event), event.payload.get("reason", ""))
            elif event.type == EventType.WORKFLOW_RETRY_REQUESTED:
                self.retry(
                    self._require_workflow_id(event),
                    event.payload.get("fromStep") or event.payload.get("from_step"),
                )
            else:
                LOGGER.warning("Received unsupported event", extra={"type": event.type})
        except (ProvisioningError, SchemaValidationError) as exc:
            LOGGER.warning(
                "Provisioning event rejected",
                extra={"event_type": event.type, "workflow_id": event.workflow_id, "error": str(exc)},
            )
            details: Dict[str, Any] = {"eventType": event.type.value, "error": str(exc)}
            if isinstance(exc, ProvisioningError):
                details.update(exc.to_dict())
            self._publish_audit_event(event.workflow_id or "-", "HANDLE_EVENT", "REJECTED", details)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _launch(self, record: WorkflowRecord, gateway: ExecutionGateway) -> WorkflowRecord:
        """Persist the Pending ``record`` and hand it to a worker.

        The runtime is registered and locked before the record becomes
        visible, so an ``abort`` of the Pending record serializes with the
        transition to Running instead of racing it.
        """

        runtime = _WorkflowRuntime(gateway=gateway)
        with runtime.lock:
            with self._runtimes_guard:
                self._runtimes[record.id] = runtime
            try:
                self._repository.upsert(record)
                current = self._repository.get(record.id)
                if current is None or current.is_terminal:
                    with self._runtimes_guard:
                        self._runtimes.pop(record.id, None)
                    LOGGER.info("Workflow finished before launch", extra={"workflow_id": record.id})
                    return current or record.copy()
                current.status = WorkflowStatus.RUNNING
                current.add_log("Workflow running")
                self._repository.upsert(current)
                runtime.future = self._executor.submit(self._execute, record.id)
            except Exception:
                with self._runtimes_guard:
                    self._runtimes.pop(record.id, None)
                raise
        return current.copy()

    def _execute(self, workflow_id: str) -> None:
        runtime = self._runtime(workflow_id)
        if runtime is None:
            return
        try:
            record = self._repository.get(workflow_id)
            if record is None or record.is_terminal:
                return
            for step_name in [step.name for step in record.steps]:
                definition = definition_for(record.subject.kind, record.strategy, step_name, record.operation)
                if definition is None:
                    self._fail_step(
                        runtime, workflow_id, step_name, StepExecutionError(f"no definition for step {step_name}")
                    )
                    return
                if not self._begin_step(runtime, workflow_id, step_name):
                    return
                try:
                    log = self._run_step(runtime, workflow_id, record, definition)
                except _WorkflowCancelled:
                    LOGGER.info("Workflow cancelled mid-step", extra={"workflow_id": workflow_id, "step": step_name})
                    return
                except ProvisioningError as exc:
                    self._fail_step(runtime, workflow_id, step_name, exc)
                    return
                except Exception as exc:
                    LOGGER.exception(
                        "Unexpected error while executing step",
                        extra={"workflow_id": workflow_id, "step": step_name},
                    )
                    self._fail_step(runtime, workflow_id, step_name, StepExecutionError(str(exc)))
                    return
                if not self._complete_step(runtime, workflow_id, step_name, log):
                    return
            self._finish(runtime, workflow_id)
        finally:
            with self._runtimes_guard:
                self._runtimes.pop(workflow_id, None)

    def _run_step(
        self,
        runtime: _WorkflowRuntime,
        workflow_id: str,
        record: WorkflowRecord,
        definition: StepDefinition,
    ) -> str:
        kind, name = document_identity(next(iter(record.manifests.values())))
        action = definition.action
        if action not in ENGINE_ACTIONS:
            present = self._call_with_retry(runtime, lambda: runtime.gateway.exists(kind, name))
            if action == StepAction.CHECK_ABSENT and present:
                raise AlreadyExists(f"{kind} {name} already exists", step=definition.name)
            if action == StepAction.VERIFY_ABSENT and present:
                raise StepExecutionError(f"{kind} {name} still exists after delete", step=definition.name)
            if action == StepAction.CHECK_PRESENT and not present:
                raise NotFound(f"{kind} {name} was not found", step=definition.name)
            if action == StepAction.VERIFY and not present:
                raise StepExecutionError(f"{kind} {name} was not found after apply", step=definition.name)
            return f"{kind} {name} is {'present' if present else 'absent'}"

        resource_action = ResourceAction.DELETE if action == StepAction.DELETE else ResourceAction.APPLY
        manifest_key = definition.manifest or ""
        submission = {manifest_key: record.manifests[manifest_key]}
        job_id = self._call_with_retry(runtime, lambda: runtime.gateway.submit(submission, resource_action))
        self._record_job(runtime, workflow_id, definition.name, job_id)
        observation = self._observe_until_terminal(runtime, job_id)
        if observation.status == WorkflowStatus.FAILED:
            raise StepExecutionError(
                observation.message or f"engine job {job_id} failed",
                step=definition.name,
                details={"job_id": job_id, "phase": observation.phase},
            )
        return _excerpt(observation.logs) or f"engine job {job_id} {observation.phase}"

    def _call_with_retry(self, runtime: _WorkflowRuntime, call: Callable[[], T]) -> T:
        retrying = Retrying(
            retry=retry_if_exception_type(EngineUnavailable),
            stop=stop_any(
                stop_after_attempt(self._polling.submit_attempts),
                stop_when_event_set(runtime.cancel),
            ),
            wait=wait_exponential(multiplier=self._polling.initial_interval, max=self._polling.max_interval),
            sleep=runtime.cancel.wait,
            reraise=True,
        )
        result = retrying(call)
        if runtime.cancel.is_set():
            raise _WorkflowCancelled()
        return result

    def _observe_until_terminal(self, runtime: _WorkflowRuntime, job_id: str) -> EngineObservation:
        """Poll ``observe`` with exponential backoff until the job is terminal.

        Bounded by the observation window and by the number of consecutive
        ``EngineUnavailable`` errors; wakes immediately on cancellation.
        """

        polling = self._polling
        unavailable_streak = [0]

        def observe() -> EngineObservation:
            try:
                observation = runtime.gateway.observe(job_id)
            except EngineUnavailable:
                unavailable_streak[0] += 1
                raise
            unavailable_streak[0] = 0
            return observation

        def too_many_unavailable(retry_state: RetryCallState) -> bool:
            return unavailable_streak[0] >= polling.max_engine_unavailable

        def exhausted(retry_state: RetryCallState) -> EngineObservation:
            if runtime.cancel.is_set():
                raise _WorkflowCancelled()
            outcome = retry_state.outcome
            if unavailable_streak[0] >= polling.max_engine_unavailable and outcome is not None and outcome.failed:
                raise EngineUnavailable(
                    f"engine unavailable after {unavailable_streak[0]} consecutive attempts"
                ) from outcome.exception()
            self._cancel_job(runtime, None, job_id)
            raise ObservationTimeout(
                f"job {job_id} did not finish within {polling.observation_window:g}s",
                details={"job_id": job_id},
            )

        retrying = Retrying(
            retry=retry_if_exception_type(EngineUnavailable)
            | retry_if_result(lambda observation: not observation.is_terminal),
            stop=stop_any(
                stop_after_delay(polling.observation_window),
                stop_when_event_set(runtime.cancel),
                too_many_unavailable,
            ),
            wait=wait_exponential(multiplier=polling.initial_interval, max=polling.max_interval),
            sleep=runtime.cancel.wait,
            retry_error_callback=exhausted,
        )
        observation = retrying(observe)
        if runtime.cancel.is_set():
            raise _WorkflowCancelled()
        return observation

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    def _begin_step(self, runtime: _WorkflowRuntime, workflow_id: str, step_name: str) -> bool:
        with runtime.lock:
            if runtime.cancel.is_set():
                return False
            record = self._repository.get(workflow_id)
            if record is None or record.is_terminal:
                return False
            step = record.step(step_name)
            step.status = StepStatus.RUNNING
            step.start_time = utcnow()
            record.add_log(f"Step {step_name} started", step=step_name)
            self._repository.upsert(record)
        LOGGER.info("Step started", extra={"workflow_id": workflow_id, "step": step_name})
        return True

    def _record_job(self, runtime: _WorkflowRuntime, workflow_id: str, step_name: str, job_id: str) -> None:
        with runtime.lock:
            runtime.active_job_id = job_id
            record = self._repository.get(workflow_id)
            cancelled = record is None or record.is_terminal
            if not cancelled:
                record.step(step_name).engine_job_id = job_id
                record.add_log(f"Submitted engine job {job_id}", step=step_name)
                self._repository.upsert(record)
        if cancelled:
            # Aborted while the submission was in flight.
            self._cancel_job(runtime, workflow_id, job_id)
            raise _WorkflowCancelled()

    def _complete_step(self, runtime: _WorkflowRuntime, workflow_id: str, step_name: str, log: str) -> bool:
        with runtime.lock:
            runtime.active_job_id = None
            record = self._repository.get(workflow_id)
            if record is None or record.is_terminal:
                LOGGER.info(
                    "Dropping step result for finished workflow",
                    extra={"workflow_id": workflow_id, "step": step_name},
                )
                return False
            step = record.step(step_name)
            step.status = StepStatus.SUCCEEDED
            step.end_time = utcnow()
            step.log = log
            record.add_log(f"Step {step_name} succeeded", step=step_name)
            self._repository.upsert(record)
        LOGGER.info("Step succeeded", extra={"workflow_id": workflow_id, "step": step_name})
        return True

    def _fail_step(
        self, runtime: _WorkflowRuntime, workflow_id: str, step_name: str, error: ProvisioningError
    ) -> None:
        with runtime.lock:
            runtime.active_job_id = None
            record = self._repository.get(workflow_id)
            if record is None or record.is_terminal:
                LOGGER.info(
                    "Dropping step failure for finished workflow",
                    extra={"workflow_id": workflow_id, "step": step_name},
                )
                return
            now = utcnow()
            failed_seen = False
            for step in record.steps:
                if step.name == step_name:
                    step.status = StepStatus.FAILED
                    step.end_time = now
                    step.error = {**error.to_dict(), "step": step_name}
                    failed_seen = True
                elif failed_seen and step.status == StepStatus.PENDING:
                    step.status = StepStatus.SKIPPED
            record.status = WorkflowStatus.FAILED
            record.end_time = now
            record.last_error = {"code": error.code, "message": error.message, "step": step_name}
            record.add_log(f"Step {step_name} failed: {error.message}", level="error", step=step_name)
            self._repository.upsert(record)
        LOGGER.warning(
            "Workflow failed",
            extra={"workflow_id": workflow_id, "step": step_name, "code": error.code, "error": error.message},
        )
        self._publish_terminal(record)

    def _finish(self, runtime: _WorkflowRuntime, workflow_id: str) -> None:
        with runtime.lock:
            record = self._repository.get(workflow_id)
            if record is None or record.is_terminal:
                return
            record.status = WorkflowStatus.SUCCEEDED
            record.end_time = utcnow()
            record.add_log("Workflow succeeded")
            self._repository.upsert(record)
        LOGGER.info("Workflow succeeded", extra={"workflow_id": workflow_id})
        self._publish_terminal(record)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _live_gateway(self) -> LiveGateway:
        return LiveGateway(self._engine, self._cluster_api)

    def _runtime(self, workflow_id: str) -> Optional[_WorkflowRuntime]:
        with self._runtimes_guard:
            return self._runtimes.get(workflow_id)

    def _subject_lock(self, subject: Subject) -> threading.Lock:
        with self._subject_guard:
            return self._subject_locks.setdefault(subject.key, threading.Lock())

    def _ensure_no_conflict(self, subject: Subject) -> None:
        active = self._repository.list_active_for_subject(subject)
        if active:
            raise ConflictingWorkflow(
                f"workflow {active[0].id} is already {active[0].status.value} for {subject.key}",
                details={"workflow_id": active[0].id},
            )

    def _prepare(self, request: ProvisioningRequest) -> Tuple[ManifestSet, WorkflowParameters]:
        validate_request(request)
        if request.kind == SubjectKind.NAMESPACE:
            parameters = WorkflowParameters(
                subject=Subject(SubjectKind.NAMESPACE, request.name),
                values={
                    "namespaceName": request.name,
                    "description": request.description,
                    "resourceLimits": request.resource_limits.to_dict(),
                    "networkIsolated": request.network_isolated,
                },
            )
            return generate_namespace_manifests(request), parameters
        # The toggle is read exactly once; the record keeps this choice for life.
        strategy = select_strategy(self._toggle.enabled)
        parameters = WorkflowParameters(
            subject=Subject(SubjectKind.CLUSTER, request.name.lower()),
            strategy=strategy,
            values=map_parameters(request, strategy),
        )
        return generate_cluster_manifests(request, strategy), parameters

    def _start_deletion(self, subject: Subject, dry_run: bool) -> WorkflowRecord:
        source = self.provisioned(subject)
        parameters = WorkflowParameters(
            subject=subject,
            strategy=source.strategy,
            values={**copy.deepcopy(source.parameters), "provisionedBy": source.id},
            operation=WorkflowOperation.DELETE,
        )
        return self.start(source.manifests, parameters, dry_run=dry_run)

    def _retry_seed(self, source: WorkflowRecord, remaining: List[str]) -> List[dict]:
        """Documents a dry-run retry starts with in its simulated cluster.

        Provisioning: everything the remaining steps will not apply, which
        covers documents applied anywhere earlier in a retry chain. Deletion:
        exactly the documents the remaining steps still have to delete.
        """

        pending = {
            definition.manifest
            for definition in plan_for(source.subject.kind, source.strategy, source.operation)
            if definition.name in remaining and definition.manifest is not None
        }
        deleting = source.operation == WorkflowOperation.DELETE
        return [
            document
            for key, document in source.manifests.items()
            if (key in pending) == deleting
        ]

    def _cancel_job(self, runtime: _WorkflowRuntime, workflow_id: Optional[str], job_id: str) -> None:
        try:
            runtime.gateway.cancel(job_id)
        except Exception:
            LOGGER.exception(
                "Failed to cancel engine job", extra={"workflow_id": workflow_id, "job_id": job_id}
            )

    def _require_workflow_id(self, event: ProvisioningEvent) -> str:
        workflow_id = event.workflow_id or event.payload.get("workflowId")
        if not workflow_id:
            raise NotFound("event payload missing workflowId")
        return str(workflow_id)

    def _publish_terminal(self, record: WorkflowRecord) -> None:
        payload: Dict[str, Any] = {
            "workflowId": record.id,
            "subject": {"kind": record.subject.kind.value, "name": record.subject.name},
            "status": record.status.value,
            "operation": record.operation.value,
            "strategy": getattr(record.strategy, "value", None),
            "dryRun": record.dry_run,
            "retryOf": record.retry_of,
            "lastError": record.last_error,
        }
        routing_key = workflow_status_routing_key(record.status.value)
        if self._event_publisher is not None:
            try:
                self._event_publisher.publish(routing_key, payload)
            except Exception:
                LOGGER.exception(
                    "Failed to publish workflow status event",
                    extra={"routing_key": routing_key, "workflow_id": record.id},
                )
        outcome = {
            WorkflowStatus.SUCCEEDED: "SUCCESS",
            WorkflowStatus.FAILED: "FAILURE",
            WorkflowStatus.ABORTED: "ABORTED",
        }.get(record.status, record.status.value)
        self._publish_audit_event(
            record.id,
            f"{record.operation.value.upper()}_{record.subject.kind.value.upper()}",
            outcome,
            {
                "subject": record.subject.key,
                "strategy": getattr(record.strategy, "value", None),
                "dryRun": record.dry_run,
                "error": record.last_error,
                "abortReason": record.abort_reason,
            },
        )

    def _publish_audit_event(
        self, workflow_id: str, action: str, outcome: str, details: Dict[str, Any]
    ) -> None:
        if self._audit_publisher is None:
            return
        filtered_details = {key: value for key, value in details.items() if value is not None}
        self._audit_publisher.publish(workflow_id, action, outcome, filtered_details)


__all__ = ["WorkflowOrchestrator", "LOG_EXCERPT_LIMIT"]
