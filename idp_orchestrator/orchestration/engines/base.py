"""Narrow command/observation interface to the external workflow engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Protocol

from ..models import ManifestSet, WorkflowStatus

RUNNING_PHASES = frozenset({"running", "pending"})
SUCCEEDED_PHASES = frozenset({"succeeded"})
FAILED_PHASES = frozenset({"failed", "error"})


class ResourceAction(str, Enum):
    """What an engine job does with the documents it is given."""

    APPLY = "apply"
    DELETE = "delete"


@dataclass
class EngineObservation:
    """Snapshot of an engine job as reported by ``observe``."""

    phase: str
    finished: bool = False
    step_status: Dict[str, str] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    message: str = ""

    @property
    def status(self) -> WorkflowStatus:
        return map_engine_phase(self.phase, self.finished)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


def map_engine_phase(phase: str, finished: bool = False) -> WorkflowStatus:
    """Map an engine phase onto the workflow status vocabulary.

    Unknown phases are treated as running unless the engine reports the job
    finished, in which case they count as failures.
    """

    normalized = (phase or "").strip().lower()
    if normalized in SUCCEEDED_PHASES:
        return WorkflowStatus.SUCCEEDED
    if normalized in FAILED_PHASES:
        return WorkflowStatus.FAILED
    if normalized in RUNNING_PHASES:
        return WorkflowStatus.RUNNING
    return WorkflowStatus.FAILED if finished else WorkflowStatus.RUNNING


class WorkflowEngine(Protocol):
    """External engine driven by the orchestrator.

    Implementations raise ``EngineUnavailable`` for transient failures so the
    caller can retry with backoff.
    """

    def submit(self, manifests: ManifestSet, action: ResourceAction = ResourceAction.APPLY) -> str:
        ...

    def observe(self, job_id: str) -> EngineObservation:
        ...

    def cancel(self, job_id: str) -> None:
        ...


class ClusterApi(Protocol):
    """Existence checks against the cluster API server."""

    def exists(self, kind: str, name: str) -> bool:
        ...


__all__ = [
    "ResourceAction",
    "EngineObservation",
    "map_engine_phase",
    "WorkflowEngine",
    "ClusterApi",
]
