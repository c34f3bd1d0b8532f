"""Domain models for provisioning requests and tracked workflows."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

ManifestSet = Dict[str, Dict[str, Any]]


class SubjectKind(str, Enum):
    """Kinds of target resources the platform provisions."""

    NAMESPACE = "namespace"
    CLUSTER = "cluster"


class StrategyId(str, Enum):
    """Cluster provisioning strategies."""

    DIRECT = "direct"
    COMPOSITION = "composition"


class WorkflowOperation(str, Enum):
    """What a workflow does to its subject."""

    PROVISION = "provision"
    DELETE = "delete"


class WorkflowStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WORKFLOW_STATUSES


TERMINAL_WORKFLOW_STATUSES = frozenset(
    {WorkflowStatus.SUCCEEDED, WorkflowStatus.FAILED, WorkflowStatus.ABORTED}
)


class StepStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass(frozen=True)
class ResourcePair:
    """Request/limit pair for a single resource dimension."""

    request: str
    limit: str


@dataclass(frozen=True)
class ResourceLimits:
    cpu: ResourcePair = ResourcePair(request="100m", limit="1000m")
    memory: ResourcePair = ResourcePair(request="128Mi", limit="1Gi")

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {
            "cpu": {"request": self.cpu.request, "limit": self.cpu.limit},
            "memory": {"request": self.memory.request, "limit": self.memory.limit},
        }


@dataclass(frozen=True)
class AdvancedClusterConfig:
    kubernetes_version: str = "1.28.3"
    max_nodes: int = 10
    enable_spot: bool = False


@dataclass(frozen=True)
class ProvisioningRequest:
    """User-submitted configuration for a namespace or a cluster."""

    kind: SubjectKind
    name: str
    description: str = ""
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    network_isolated: bool = True
    dry_run: bool = False
    enable_node_auto_provisioning: bool = True
    location: Optional[str] = None
    node_pool_type: Optional[str] = None
    advanced: AdvancedClusterConfig = field(default_factory=AdvancedClusterConfig)

    @classmethod
    def namespace(cls, name: str, **kwargs: Any) -> "ProvisioningRequest":
        return cls(kind=SubjectKind.NAMESPACE, name=name, **kwargs)

    @classmethod
    def cluster(cls, name: str, **kwargs: Any) -> "ProvisioningRequest":
        kwargs.setdefault("dry_run", True)
        kwargs.setdefault("node_pool_type", "standard")
        kwargs.setdefault("location", "eastus")
        return cls(kind=SubjectKind.CLUSTER, name=name, **kwargs)


@dataclass(frozen=True)
class Subject:
    kind: SubjectKind
    name: str

    @property
    def key(self) -> str:
        return f"{self.kind.value}/{self.name}"


@dataclass(frozen=True)
class WorkflowParameters:
    """Strategy-specific parameters handed to ``start`` alongside the manifests."""

    subject: Subject
    strategy: Optional[StrategyId] = None
    values: Dict[str, Any] = field(default_factory=dict)
    operation: WorkflowOperation = WorkflowOperation.PROVISION


@dataclass(frozen=True)
class ManifestPreview:
    """Generated manifests and step plan for a request, without a workflow."""

    subject: Subject
    manifests: ManifestSet
    steps: List[str]
    strategy: Optional[StrategyId] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": {"kind": self.subject.kind.value, "name": self.subject.name},
            "strategy": self.strategy.value if self.strategy else None,
            "steps": list(self.steps),
            "manifests": self.manifests,
        }


@dataclass
class StepRecord:
    name: str
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    log: str = ""
    error: Optional[Dict[str, Any]] = None
    engine_job_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "log": self.log,
            "error": self.error,
            "engine_job_id": self.engine_job_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRecord":
        return cls(
            name=data["name"],
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            start_time=_parse(data.get("start_time")),
            end_time=_parse(data.get("end_time")),
            log=data.get("log", ""),
            error=data.get("error"),
            engine_job_id=data.get("engine_job_id"),
        )


@dataclass
class LogEntry:
    timestamp: datetime
    level: str
    message: str
    step: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "level": self.level,
            "message": self.message,
            "step": self.step,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            timestamp=_parse(data["timestamp"]) or utcnow(),
            level=data.get("level", "info"),
            message=data.get("message", ""),
            step=data.get("step"),
        )


@dataclass
class WorkflowRecord:
    """Tracked workflow aggregate; steps and logs are persisted with it."""

    id: str
    name: str
    subject: Subject
    status: WorkflowStatus
    steps: List[StepRecord]
    manifests: ManifestSet
    parameters: Dict[str, Any] = field(default_factory=dict)
    strategy: Optional[StrategyId] = None
    dry_run: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_error: Optional[Dict[str, Any]] = None
    abort_reason: Optional[str] = None
    retry_of: Optional[str] = None
    logs: List[LogEntry] = field(default_factory=list)
    operation: WorkflowOperation = WorkflowOperation.PROVISION

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step(self, name: str) -> Optional[StepRecord]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def add_log(self, message: str, level: str = "info", step: Optional[str] = None) -> None:
        self.logs.append(LogEntry(timestamp=utcnow(), level=level, message=message, step=step))

    def copy(self) -> "WorkflowRecord":
        return copy.deepcopy(self)

    def to_dict(self, *, include_manifests: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "subject": {"kind": self.subject.kind.value, "name": self.subject.name},
            "status": self.status.value,
            "steps": [step.to_dict() for step in self.steps],
            "parameters": self.parameters,
            "strategy": self.strategy.value if self.strategy else None,
            "dry_run": self.dry_run,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "last_error": self.last_error,
            "abort_reason": self.abort_reason,
            "retry_of": self.retry_of,
            "operation": self.operation.value,
            "logs": [entry.to_dict() for entry in self.logs],
        }
        if include_manifests:
            payload["manifests"] = self.manifests
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowRecord":
        subject_data = data["subject"]
        strategy = data.get("strategy")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            subject=Subject(SubjectKind(subject_data["kind"]), subject_data["name"]),
            status=WorkflowStatus(data["status"]),
            steps=[StepRecord.from_dict(step) for step in data.get("steps", [])],
            manifests=data.get("manifests", {}),
            parameters=data.get("parameters", {}),
            strategy=StrategyId(strategy) if strategy else None,
            dry_run=data.get("dry_run", False),
            start_time=_parse(data.get("start_time")),
            end_time=_parse(data.get("end_time")),
            last_error=data.get("last_error"),
            abort_reason=data.get("abort_reason"),
            retry_of=data.get("retry_of"),
            logs=[LogEntry.from_dict(entry) for entry in data.get("logs", [])],
            operation=WorkflowOperation(data.get("operation", WorkflowOperation.PROVISION.value)),
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


__all__ = [
    "ManifestSet",
    "SubjectKind",
    "StrategyId",
    "WorkflowOperation",
    "WorkflowStatus",
    "StepStatus",
    "TERMINAL_WORKFLOW_STATUSES",
    "ResourcePair",
    "ResourceLimits",
    "AdvancedClusterConfig",
    "ProvisioningRequest",
    "Subject",
    "WorkflowParameters",
    "ManifestPreview",
    "StepRecord",
    "LogEntry",
    "WorkflowRecord",
    "utcnow",
]
