"""Selection between the direct and composition cluster provisioning strategies."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict

from ..services import catalog
from .errors import NotFound, UnknownPoolType
from .models import ProvisioningRequest, StrategyId

LOGGER = logging.getLogger(__name__)

CONSUMED = "consumed"

# Every ProvisioningRequest field, per strategy: consumed, or ignored with the reason.
FIELD_USAGE: Dict[str, Dict[StrategyId, str]] = {
    "name": {StrategyId.DIRECT: CONSUMED, StrategyId.COMPOSITION: CONSUMED},
    "location": {StrategyId.DIRECT: CONSUMED, StrategyId.COMPOSITION: CONSUMED},
    "node_pool_type": {StrategyId.DIRECT: CONSUMED, StrategyId.COMPOSITION: CONSUMED},
    "dry_run": {StrategyId.DIRECT: CONSUMED, StrategyId.COMPOSITION: CONSUMED},
    "enable_node_auto_provisioning": {StrategyId.DIRECT: CONSUMED, StrategyId.COMPOSITION: CONSUMED},
    "advanced.kubernetes_version": {StrategyId.DIRECT: CONSUMED, StrategyId.COMPOSITION: CONSUMED},
    "advanced.max_nodes": {StrategyId.DIRECT: CONSUMED, StrategyId.COMPOSITION: CONSUMED},
    "advanced.enable_spot": {StrategyId.DIRECT: CONSUMED, StrategyId.COMPOSITION: CONSUMED},
    "kind": {StrategyId.DIRECT: CONSUMED, StrategyId.COMPOSITION: CONSUMED},
    "description": {
        StrategyId.DIRECT: "ignored: cluster documents carry no free-text description",
        StrategyId.COMPOSITION: "ignored: cluster documents carry no free-text description",
    },
    "resource_limits": {
        StrategyId.DIRECT: "ignored: namespace-only field; capacity comes from the node pool catalog",
        StrategyId.COMPOSITION: "ignored: namespace-only field; capacity comes from the node pool catalog",
    },
    "network_isolated": {
        StrategyId.DIRECT: "ignored: namespace-only field",
        StrategyId.COMPOSITION: "ignored: namespace-only field",
    },
}


class StrategyToggle:
    """Process-wide switch; read once per request, never by running workflows."""

    def __init__(self, use_direct: bool = False) -> None:
        self._lock = threading.Lock()
        self._use_direct = use_direct

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._use_direct

    def set(self, use_direct: bool) -> None:
        with self._lock:
            previous, self._use_direct = self._use_direct, use_direct
        if previous != use_direct:
            LOGGER.info(
                "Strategy toggle flipped",
                extra={"strategy": select_strategy(use_direct).value},
            )


def select_strategy(flag_state: bool) -> StrategyId:
    return StrategyId.DIRECT if flag_state else StrategyId.COMPOSITION


def map_parameters(request: ProvisioningRequest, strategy: StrategyId) -> Dict[str, Any]:
    """Map a cluster request onto the chosen strategy's parameter shape."""

    try:
        pool = catalog.describe(request.node_pool_type or "")
    except NotFound:
        raise UnknownPoolType(
            f"unknown node pool type {request.node_pool_type!r}", field="node_pool_type"
        ) from None

    parameters: Dict[str, Any] = {
        "clusterName": request.name,
        "location": request.location,
        "nodePoolType": pool.name,
        "dryRun": request.dry_run,
        "enableNAP": request.enable_node_auto_provisioning,
        "kubernetesVersion": request.advanced.kubernetes_version,
        "maxNodes": request.advanced.max_nodes,
        "enableSpot": request.advanced.enable_spot,
    }
    if strategy == StrategyId.DIRECT:
        parameters.update(
            {
                "primaryVmSize": pool.primary_vm_size,
                "secondaryVmSize": pool.secondary_vm_size,
                "skuFamily": pool.sku_family,
                "maxCpu": pool.max_cpu,
                "maxMemory": pool.max_memory,
                "systemVmSize": catalog.SYSTEM_POOL_VM_SIZE,
                "nodeClassType": pool.node_class_type,
            }
        )
    return parameters


__all__ = ["CONSUMED", "FIELD_USAGE", "StrategyToggle", "select_strategy", "map_parameters"]
