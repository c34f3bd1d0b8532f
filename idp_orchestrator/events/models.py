"""Domain models for provisioning events."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

WORKFLOW_STATUS_ROUTING_KEY = "provisioning.workflow.{status}"
AUDIT_ROUTING_KEY = "audit.provisioning.event"


class EventType(str, Enum):
    """Command events consumed from the message bus."""

    NAMESPACE_REQUESTED = "provisioning.namespace.requested"
    CLUSTER_REQUESTED = "provisioning.cluster.requested"
    NAMESPACE_DELETE_REQUESTED = "provisioning.namespace.delete_requested"
    CLUSTER_DELETE_REQUESTED = "provisioning.cluster.delete_requested"
    WORKFLOW_ABORT_REQUESTED = "provisioning.workflow.abort_requested"
    WORKFLOW_RETRY_REQUESTED = "provisioning.workflow.retry_requested"


@dataclass
class ProvisioningEvent:
    """Event payload as received from the message bus."""

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    workflow_id: Optional[str] = None
    message_id: Optional[str] = None


def workflow_status_routing_key(status: str) -> str:
    return WORKFLOW_STATUS_ROUTING_KEY.format(status=status.lower())


__all__ = [
    "EventType",
    "ProvisioningEvent",
    "WORKFLOW_STATUS_ROUTING_KEY",
    "AUDIT_ROUTING_KEY",
    "workflow_status_routing_key",
]
