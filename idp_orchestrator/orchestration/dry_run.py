"""Execution gateways: the live engine/cluster pair and the dry-run simulator.

A workflow talks to exactly one gateway for its whole life. Dry-run
workflows get a private :class:`DryRunSimulator`, so no mutating call ever
reaches the real engine.
"""
from __future__ import annotations

import logging
import threading
import uuid
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

import yaml

from .engines.base import ClusterApi, EngineObservation, ResourceAction, WorkflowEngine
from .models import ManifestSet

LOGGER = logging.getLogger(__name__)

DRY_RUN_JOB_PREFIX = "dry-run-"


class ExecutionGateway(Protocol):
    def submit(self, manifests: ManifestSet, action: ResourceAction = ResourceAction.APPLY) -> str:
        ...

    def observe(self, job_id: str) -> EngineObservation:
        ...

    def cancel(self, job_id: str) -> None:
        ...

    def exists(self, kind: str, name: str) -> bool:
        ...


class LiveGateway:
    """Routes job calls to the engine and existence checks to the cluster API."""

    def __init__(self, engine: WorkflowEngine, cluster_api: ClusterApi) -> None:
        self._engine = engine
        self._cluster_api = cluster_api

    def submit(self, manifests: ManifestSet, action: ResourceAction = ResourceAction.APPLY) -> str:
        return self._engine.submit(manifests, action)

    def observe(self, job_id: str) -> EngineObservation:
        return self._engine.observe(job_id)

    def cancel(self, job_id: str) -> None:
        self._engine.cancel(job_id)

    def exists(self, kind: str, name: str) -> bool:
        return self._cluster_api.exists(kind, name)


def document_identity(document: dict) -> Tuple[str, str]:
    return document.get("kind", ""), (document.get("metadata") or {}).get("name", "")


class DryRunSimulator:
    """Simulated ledger standing in for the engine and the cluster API.

    Applied documents enter the ledger and deleted ones leave it, so later
    existence checks in the same workflow see the simulated state.
    """

    def __init__(self, seed: Optional[Iterable[dict]] = None) -> None:
        self._lock = threading.Lock()
        self._ledger: Dict[Tuple[str, str], dict] = {}
        self._jobs: Dict[str, Tuple[ManifestSet, ResourceAction]] = {}
        for document in seed or ():
            self._ledger[document_identity(document)] = document

    def submit(self, manifests: ManifestSet, action: ResourceAction = ResourceAction.APPLY) -> str:
        job_id = f"{DRY_RUN_JOB_PREFIX}{uuid.uuid4()}"
        with self._lock:
            self._jobs[job_id] = (manifests, action)
            for document in manifests.values():
                if action == ResourceAction.DELETE:
                    self._ledger.pop(document_identity(document), None)
                else:
                    self._ledger[document_identity(document)] = document
        LOGGER.debug(
            "Dry run recorded submission",
            extra={"job_id": job_id, "manifests": list(manifests), "action": action.value},
        )
        return job_id

    def observe(self, job_id: str) -> EngineObservation:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            return EngineObservation(phase="error", finished=True, message=f"unknown dry-run job {job_id}")
        manifests, action = job
        logs: List[str] = []
        for key, document in manifests.items():
            kind, name = document_identity(document)
            logs.append(
                f"[dry-run] would {action.value} {key} ({kind}/{name}):\n"
                f"{yaml.safe_dump(document, sort_keys=False)}"
            )
        return EngineObservation(
            phase="succeeded",
            finished=True,
            step_status={key: "succeeded" for key in manifests},
            logs=logs,
        )

    def cancel(self, job_id: str) -> None:
        LOGGER.debug("Dry run cancellation is a no-op", extra={"job_id": job_id})

    def exists(self, kind: str, name: str) -> bool:
        with self._lock:
            return (kind, name) in self._ledger

    @property
    def ledger(self) -> Dict[Tuple[str, str], dict]:
        with self._lock:
            return dict(self._ledger)


__all__ = [
    "ExecutionGateway",
    "LiveGateway",
    "DryRunSimulator",
    "DRY_RUN_JOB_PREFIX",
    "document_identity",
]
