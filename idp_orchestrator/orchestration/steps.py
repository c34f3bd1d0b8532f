"""Declared step lists for each workflow shape.

Ordering and skip-on-failure semantics live here as data; the orchestrator
only walks the list. Deletion plans remove documents in the reverse order
provisioning created them.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from .models import ManifestSet, StepRecord, StrategyId, SubjectKind, WorkflowOperation


class StepAction(str, Enum):
    CHECK_ABSENT = "check-absent"
    APPLY = "apply"
    VERIFY = "verify"
    CHECK_PRESENT = "check-present"
    DELETE = "delete"
    VERIFY_ABSENT = "verify-absent"


# Actions that submit an engine job for their manifest.
ENGINE_ACTIONS = frozenset({StepAction.APPLY, StepAction.DELETE})


@dataclass(frozen=True)
class StepDefinition:
    """One step: its action and, for engine steps, the manifest it submits."""

    name: str
    action: StepAction
    manifest: Optional[str] = None


NAMESPACE_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition("validate-namespace", StepAction.CHECK_ABSENT),
    StepDefinition("create-namespace", StepAction.APPLY, "namespace"),
    StepDefinition("apply-limit-range", StepAction.APPLY, "limit-range"),
    StepDefinition("apply-network-policy", StepAction.APPLY, "network-policy"),
    StepDefinition("verify-resources", StepAction.VERIFY),
)

DIRECT_CLUSTER_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition("validate-inputs", StepAction.CHECK_ABSENT),
    StepDefinition("create-managed-cluster", StepAction.APPLY, "managed-cluster"),
    StepDefinition("create-karpenter-nodeclass", StepAction.APPLY, "node-class"),
    StepDefinition("create-karpenter-nodepool", StepAction.APPLY, "node-pool"),
    StepDefinition("wait-for-cluster-ready", StepAction.VERIFY),
)

COMPOSITION_CLUSTER_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition("validate-cluster-config", StepAction.CHECK_ABSENT),
    StepDefinition("create-kro-cluster", StepAction.APPLY, "managed-cluster"),
    StepDefinition("wait-cluster-ready", StepAction.VERIFY),
)

NAMESPACE_DELETION_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition("validate-deletion", StepAction.CHECK_PRESENT),
    StepDefinition("cleanup-network-policy", StepAction.DELETE, "network-policy"),
    StepDefinition("cleanup-limit-range", StepAction.DELETE, "limit-range"),
    StepDefinition("delete-namespace", StepAction.DELETE, "namespace"),
    StepDefinition("verify-deletion", StepAction.VERIFY_ABSENT),
)

DIRECT_CLUSTER_DELETION_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition("validate-deletion", StepAction.CHECK_PRESENT),
    StepDefinition("delete-karpenter-nodepool", StepAction.DELETE, "node-pool"),
    StepDefinition("delete-karpenter-nodeclass", StepAction.DELETE, "node-class"),
    StepDefinition("delete-managed-cluster", StepAction.DELETE, "managed-cluster"),
    StepDefinition("verify-deletion", StepAction.VERIFY_ABSENT),
)

COMPOSITION_CLUSTER_DELETION_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition("validate-deletion", StepAction.CHECK_PRESENT),
    StepDefinition("delete-kro-instance", StepAction.DELETE, "managed-cluster"),
    StepDefinition("verify-deletion", StepAction.VERIFY_ABSENT),
)


def plan_for(
    kind: SubjectKind,
    strategy: Optional[StrategyId],
    operation: WorkflowOperation = WorkflowOperation.PROVISION,
) -> Tuple[StepDefinition, ...]:
    deleting = operation == WorkflowOperation.DELETE
    if kind == SubjectKind.NAMESPACE:
        return NAMESPACE_DELETION_STEPS if deleting else NAMESPACE_STEPS
    if strategy == StrategyId.DIRECT:
        return DIRECT_CLUSTER_DELETION_STEPS if deleting else DIRECT_CLUSTER_STEPS
    return COMPOSITION_CLUSTER_DELETION_STEPS if deleting else COMPOSITION_CLUSTER_STEPS


def resolve_plan(
    kind: SubjectKind,
    strategy: Optional[StrategyId],
    manifests: ManifestSet,
    operation: WorkflowOperation = WorkflowOperation.PROVISION,
) -> List[StepDefinition]:
    """Steps whose manifest is absent from the set are dropped, not skipped."""

    return [
        definition
        for definition in plan_for(kind, strategy, operation)
        if definition.manifest is None or definition.manifest in manifests
    ]


def initial_steps(definitions: List[StepDefinition]) -> List[StepRecord]:
    return [StepRecord(name=definition.name) for definition in definitions]


def definition_for(
    kind: SubjectKind,
    strategy: Optional[StrategyId],
    step_name: str,
    operation: WorkflowOperation = WorkflowOperation.PROVISION,
) -> Optional[StepDefinition]:
    for definition in plan_for(kind, strategy, operation):
        if definition.name == step_name:
            return definition
    return None


__all__ = [
    "StepAction",
    "StepDefinition",
    "ENGINE_ACTIONS",
    "NAMESPACE_STEPS",
    "DIRECT_CLUSTER_STEPS",
    "COMPOSITION_CLUSTER_STEPS",
    "NAMESPACE_DELETION_STEPS",
    "DIRECT_CLUSTER_DELETION_STEPS",
    "COMPOSITION_CLUSTER_DELETION_STEPS",
    "plan_for",
    "resolve_plan",
    "initial_steps",
    "definition_for",
]
