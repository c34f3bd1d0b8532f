"""Pulumi Automation API adapter: one stack per submitted document set."""
from __future__ import annotations

import hashlib
import logging
import re
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Union

from pulumi import automation as auto
from pulumi_kubernetes.yaml.v2 import ConfigGroup

from ...config import PulumiConfig
from ..dry_run import document_identity
from ..errors import EngineUnavailable
from ..models import ManifestSet
from .base import EngineObservation, ResourceAction

LOGGER = logging.getLogger(__name__)

MAX_STACK_NAME = 100
_INVALID_STACK_CHARS = re.compile(r"[^a-z0-9.-]+")

StackResult = Union[auto.UpResult, auto.DestroyResult]


@dataclass
class _StackJob:
    stack: auto.Stack
    stack_name: str
    action: ResourceAction
    future: "Future[StackResult]"
    output: List[str] = field(default_factory=list)


def stack_name_for(prefix: str, manifests: ManifestSet) -> str:
    """Deterministic stack name for a document set.

    Re-applying the same documents selects the same stack, so a stack owns
    its documents until a delete destroys and removes it.
    """

    parts = [prefix]
    for document in manifests.values():
        kind, name = document_identity(document)
        namespace = (document.get("metadata") or {}).get("namespace")
        parts.extend(part for part in (kind, namespace, name) if part)
    candidate = _INVALID_STACK_CHARS.sub("-", "-".join(parts).lower()).strip("-")
    if len(candidate) <= MAX_STACK_NAME:
        return candidate
    digest = hashlib.sha1(candidate.encode("utf-8")).hexdigest()[:16]
    return f"{candidate[:MAX_STACK_NAME - len(digest) - 1]}-{digest}"


class PulumiStackEngine:
    """Applies or deletes manifest sets through an inline ``ConfigGroup`` program.

    ``stack.up`` and ``stack.destroy`` block, so they run on a private
    executor and ``observe`` reports the state of that future. A finished job
    is forgotten once it has been observed.
    """

    def __init__(self, settings: PulumiConfig, max_workers: int = 2) -> None:
        self._settings = settings
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pulumi-up")
        self._jobs: Dict[str, _StackJob] = {}
        self._lock = threading.Lock()

    def submit(self, manifests: ManifestSet, action: ResourceAction = ResourceAction.APPLY) -> str:
        stack_name = self._qualified(stack_name_for(self._settings.stack_prefix, manifests))
        try:
            stack = self._create_or_select_stack(stack_name, manifests)
        except auto.CommandError as exc:
            LOGGER.warning("Pulumi stack selection failed", extra={"stack": stack_name, "error": str(exc)})
            raise EngineUnavailable(f"pulumi stack {stack_name} unavailable: {exc}") from exc
        output: List[str] = []
        future = self._executor.submit(self._run_stack, stack, stack_name, action, output)
        job_id = f"{stack_name.rsplit('/', 1)[-1]}-{uuid.uuid4().hex[:8]}"
        with self._lock:
            self._jobs[job_id] = _StackJob(
                stack=stack, stack_name=stack_name, action=action, future=future, output=output
            )
        LOGGER.info(
            "Pulumi stack operation started",
            extra={"stack": stack_name, "job_id": job_id, "action": action.value, "manifests": list(manifests)},
        )
        return job_id

    def observe(self, job_id: str) -> EngineObservation:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            return EngineObservation(phase="error", finished=True, message=f"unknown stack job {job_id}")
        logs = list(job.output)
        if not job.future.done():
            return EngineObservation(phase="running", logs=logs)
        with self._lock:
            self._jobs.pop(job_id, None)
        exc = job.future.exception()
        if exc is not None:
            return EngineObservation(phase="failed", finished=True, logs=logs, message=str(exc))
        result = job.future.result()
        return EngineObservation(
            phase=result.summary.result or "succeeded",
            finished=True,
            logs=logs,
            message=result.summary.message or "",
        )

    def cancel(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None or job.future.done():
            return
        try:
            job.stack.cancel()
        except auto.CommandError as exc:
            raise EngineUnavailable(f"cancelling stack job {job_id} failed: {exc}") from exc
        LOGGER.info("Pulumi stack operation cancelled", extra={"stack": job.stack_name, "job_id": job_id})

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def _run_stack(
        self, stack: auto.Stack, stack_name: str, action: ResourceAction, output: List[str]
    ) -> StackResult:
        if self._settings.refresh_before_update:
            stack.refresh(on_output=lambda line: LOGGER.debug(line))

        def collect(line: str) -> None:
            output.append(line)
            LOGGER.info(line)

        # The kubernetes provider upserts, so ``up`` adopts documents the stack
        # does not manage yet before ``destroy`` removes them.
        result: StackResult = stack.up(on_output=collect)
        if action != ResourceAction.DELETE or result.summary.result != "succeeded":
            return result
        result = stack.destroy(on_output=collect)
        if result.summary.result == "succeeded":
            stack.workspace.remove_stack(stack_name)
            LOGGER.info("Removed destroyed stack", extra={"stack": stack_name})
        return result

    def _qualified(self, stack_name: str) -> str:
        if self._settings.organization:
            return f"{self._settings.organization}/{self._settings.project_name}/{stack_name}"
        return stack_name

    def _create_or_select_stack(self, stack_name: str, manifests: ManifestSet) -> auto.Stack:
        stack = auto.create_or_select_stack(
            stack_name=stack_name,
            project_name=self._settings.project_name,
            program=self._build_pulumi_program(stack_name, manifests),
        )
        stack.workspace.install_plugin("kubernetes", self._settings.kubernetes_plugin_version)
        return stack

    @staticmethod
    def _build_pulumi_program(stack_name: str, manifests: ManifestSet):
        documents = list(manifests.values())
        resource_name = stack_name.rsplit("/", 1)[-1]

        def pulumi_program() -> None:
            ConfigGroup(resource_name, objs=documents)

        return pulumi_program


__all__ = ["PulumiStackEngine", "stack_name_for"]
