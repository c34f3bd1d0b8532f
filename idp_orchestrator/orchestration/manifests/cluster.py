"""Manifest builders for managed cluster provisioning.

The direct strategy emits the Azure Service Operator ``ManagedCluster`` plus
Karpenter ``AKSNodeClass``/``NodePool`` documents. The composition strategy
emits a single KRO ``AKSCluster`` instance that the composition controller
expands into the same resources.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from ..models import ManifestSet, ProvisioningRequest, StrategyId
from ..strategy import map_parameters
from .labels import CREATED_AT_ANNOTATION, created_at, managed_labels

ASO_NAMESPACE = "azure-system"
COMPOSITION_NAMESPACE = "default"
MANAGED_CLUSTER_API_VERSION = "containerservice.azure.com/v1api20240402preview"
NODE_CLASS_API_VERSION = "karpenter.azure.com/v1alpha2"
NODE_POOL_API_VERSION = "karpenter.sh/v1"
COMPOSITION_API_VERSION = "kro.run/v1alpha1"
CLUSTER_LABEL = "idp-platform/cluster"


def resource_group_name(cluster_name: str) -> str:
    return f"rg-{cluster_name}".lower()


def node_class_name(params: Dict[str, Any]) -> str:
    return f"{params['clusterName']}-{params['nodeClassType']}".lower()


def node_pool_name(params: Dict[str, Any]) -> str:
    return f"{params['clusterName']}-{params['nodePoolType']}".lower()


def _metadata(
    name: str, namespace: Optional[str], cluster: str, generated_at: Optional[datetime]
) -> dict:
    metadata = {
        "name": name.lower(),
        "labels": managed_labels(**{CLUSTER_LABEL: cluster}),
        "annotations": {CREATED_AT_ANNOTATION: created_at(generated_at)},
    }
    if namespace:
        metadata["namespace"] = namespace
    return metadata


def build_managed_cluster(params: Dict[str, Any], generated_at: Optional[datetime] = None) -> dict:
    cluster = params["clusterName"]
    return {
        "apiVersion": MANAGED_CLUSTER_API_VERSION,
        "kind": "ManagedCluster",
        "metadata": _metadata(cluster, ASO_NAMESPACE, cluster, generated_at),
        "spec": {
            "azureName": cluster,
            "location": params["location"],
            "owner": {"name": resource_group_name(cluster)},
            "dnsPrefix": cluster.lower(),
            "kubernetesVersion": params["kubernetesVersion"],
            "identity": {"type": "SystemAssigned"},
            "agentPoolProfiles": [
                {
                    "name": "system",
                    "mode": "System",
                    "vmSize": params["systemVmSize"],
                    "count": 1,
                    "enableAutoScaling": True,
                    "minCount": 1,
                    "maxCount": params["maxNodes"],
                }
            ],
            "nodeProvisioningProfile": {"mode": "Auto" if params["enableNAP"] else "Manual"},
        },
    }


def build_node_class(params: Dict[str, Any], generated_at: Optional[datetime] = None) -> dict:
    cluster = params["clusterName"]
    return {
        "apiVersion": NODE_CLASS_API_VERSION,
        "kind": "AKSNodeClass",
        "metadata": _metadata(node_class_name(params), None, cluster, generated_at),
        "spec": {"imageFamily": "Ubuntu2204"},
    }


def build_node_pool(params: Dict[str, Any], generated_at: Optional[datetime] = None) -> dict:
    cluster = params["clusterName"]
    if params["nodePoolType"] == "spot-optimized":
        capacity_types = ["spot", "on-demand"]
    elif params["enableSpot"]:
        capacity_types = ["spot"]
    else:
        capacity_types = ["on-demand"]
    return {
        "apiVersion": NODE_POOL_API_VERSION,
        "kind": "NodePool",
        "metadata": _metadata(node_pool_name(params), None, cluster, generated_at),
        "spec": {
            "template": {
                "metadata": {"labels": {CLUSTER_LABEL: cluster, "idp-platform/pool-type": params["nodePoolType"]}},
                "spec": {
                    "nodeClassRef": {
                        "group": "karpenter.azure.com",
                        "kind": "AKSNodeClass",
                        "name": node_class_name(params),
                    },
                    "requirements": [
                        {"key": "karpenter.azure.com/sku-family", "operator": "In", "values": [params["skuFamily"]]},
                        {
                            "key": "node.kubernetes.io/instance-type",
                            "operator": "In",
                            "values": [params["primaryVmSize"], params["secondaryVmSize"]],
                        },
                        {"key": "karpenter.sh/capacity-type", "operator": "In", "values": capacity_types},
                    ],
                },
            },
            "limits": {"cpu": params["maxCpu"], "memory": params["maxMemory"]},
            "disruption": {"consolidationPolicy": "WhenEmptyOrUnderutilized"},
        },
    }


def build_composition_cluster(params: Dict[str, Any], generated_at: Optional[datetime] = None) -> dict:
    cluster = params["clusterName"]
    return {
        "apiVersion": COMPOSITION_API_VERSION,
        "kind": "AKSCluster",
        "metadata": _metadata(cluster, COMPOSITION_NAMESPACE, cluster, generated_at),
        "spec": {
            "name": cluster,
            "location": params["location"],
            "resourceGroup": resource_group_name(cluster),
            "nodePoolType": params["nodePoolType"],
            "kubernetesVersion": params["kubernetesVersion"],
            "enableNAP": params["enableNAP"],
            "maxNodes": params["maxNodes"],
            "enableSpot": params["enableSpot"],
        },
    }


def generate_cluster_manifests(
    request: ProvisioningRequest,
    strategy: StrategyId,
    generated_at: Optional[datetime] = None,
) -> ManifestSet:
    """Render the manifest set for ``request`` under ``strategy``.

    Raises ``UnknownPoolType`` when the pool type has no catalog entry.
    """

    params = map_parameters(request, strategy)
    if strategy == StrategyId.DIRECT:
        return {
            "managed-cluster": build_managed_cluster(params, generated_at),
            "node-class": build_node_class(params, generated_at),
            "node-pool": build_node_pool(params, generated_at),
        }
    return {"managed-cluster": build_composition_cluster(params, generated_at)}


__all__ = [
    "resource_group_name",
    "node_class_name",
    "node_pool_name",
    "build_managed_cluster",
    "build_node_class",
    "build_node_pool",
    "build_composition_cluster",
    "generate_cluster_manifests",
]
