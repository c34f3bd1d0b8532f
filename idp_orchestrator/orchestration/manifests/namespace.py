"""Manifest builders for namespace onboarding."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from ...services.validation import Dimension, parse_quantity
from ..models import ManifestSet, ProvisioningRequest, ResourceLimits
from .labels import CREATED_AT_ANNOTATION, created_at, managed_labels

QUOTA_MAX_MULTIPLIER = 2
DNS_NAMESPACE = "kube-system"
LIMIT_RANGE_NAME = "resource-limits"
NETWORK_POLICY_NAME = "namespace-isolation"
CONTAINER_MIN = {"cpu": "10m", "memory": "64Mi"}
PVC_BOUNDS = {"min": "1Gi", "max": "10Gi"}


def _max_quantity(limit: str, dimension: Dimension) -> str:
    # Same unit as the limit: 1Gi -> 2Gi, 1000m -> 2000m.
    return str(parse_quantity(limit, dimension).scaled(QUOTA_MAX_MULTIPLIER))


def build_namespace(
    name: str, description: str = "", generated_at: Optional[datetime] = None
) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": name,
            "labels": managed_labels(
                **{
                    "idp-platform/created-by": "namespace-onboarding",
                    "idp-platform/resource-managed": "true",
                }
            ),
            "annotations": {
                "idp-platform/description": description,
                CREATED_AT_ANNOTATION: created_at(generated_at),
            },
        },
    }


def build_limit_range(namespace: str, limits: ResourceLimits) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "LimitRange",
        "metadata": {
            "name": LIMIT_RANGE_NAME,
            "namespace": namespace,
            "labels": managed_labels(),
        },
        "spec": {
            "limits": [
                {
                    "type": "Container",
                    "default": {"cpu": limits.cpu.limit, "memory": limits.memory.limit},
                    "defaultRequest": {"cpu": limits.cpu.request, "memory": limits.memory.request},
                    "max": {
                        "cpu": _max_quantity(limits.cpu.limit, Dimension.CPU),
                        "memory": _max_quantity(limits.memory.limit, Dimension.MEMORY),
                    },
                    "min": dict(CONTAINER_MIN),
                },
                {
                    "type": "PersistentVolumeClaim",
                    "max": {"storage": PVC_BOUNDS["max"]},
                    "min": {"storage": PVC_BOUNDS["min"]},
                },
            ]
        },
    }


def build_network_policy(namespace: str) -> dict:
    """Same-namespace traffic only, plus DNS egress to kube-system."""

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {
            "name": NETWORK_POLICY_NAME,
            "namespace": namespace,
            "labels": managed_labels(),
        },
        "spec": {
            "podSelector": {},
            "policyTypes": ["Ingress", "Egress"],
            "ingress": [{"from": [{"podSelector": {}}]}],
            "egress": [
                {"to": [{"podSelector": {}}]},
                {
                    "to": [
                        {
                            "namespaceSelector": {
                                "matchLabels": {"kubernetes.io/metadata.name": DNS_NAMESPACE}
                            }
                        }
                    ],
                    "ports": [
                        {"protocol": "UDP", "port": 53},
                        {"protocol": "TCP", "port": 53},
                    ],
                },
            ],
        },
    }


def generate_namespace_manifests(
    request: ProvisioningRequest, generated_at: Optional[datetime] = None
) -> ManifestSet:
    """Render the namespace manifest set.

    The request must already be validated; only the created-at annotation
    varies between calls unless ``generated_at`` pins it.
    """

    manifests: ManifestSet = {
        "namespace": build_namespace(request.name, request.description, generated_at),
        "limit-range": build_limit_range(request.name, request.resource_limits),
    }
    if request.network_isolated:
        manifests["network-policy"] = build_network_policy(request.name)
    return manifests


__all__ = [
    "QUOTA_MAX_MULTIPLIER",
    "build_namespace",
    "build_limit_range",
    "build_network_policy",
    "generate_namespace_manifests",
]
