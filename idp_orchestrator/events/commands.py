"""Decode provisioning command payloads into domain requests."""
from __future__ import annotations

from ..api.schemas import ClusterRequestSchema, NamespaceRequestSchema
from ..orchestration.models import ProvisioningRequest
from .models import EventType, ProvisioningEvent

# Bus payloads share the HTTP request bodies.
REQUEST_SCHEMAS = {
    EventType.NAMESPACE_REQUESTED: NamespaceRequestSchema,
    EventType.CLUSTER_REQUESTED: ClusterRequestSchema,
}


def decode_request(event: ProvisioningEvent) -> ProvisioningRequest:
    """Build the provisioning request carried by a namespace or cluster event.

    Raises ``pydantic.ValidationError`` for a malformed payload and
    ``ValueError`` for events that carry no request.
    """

    schema = REQUEST_SCHEMAS.get(event.type)
    if schema is None:
        raise ValueError(f"{event.type.value} does not carry a provisioning request")
    return schema.model_validate(event.payload).to_request()


__all__ = ["decode_request", "REQUEST_SCHEMAS"]
