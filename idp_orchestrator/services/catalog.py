"""Static node-pool, VM size and location reference data."""
from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Tuple

from ..orchestration.errors import NotFound


@dataclass(frozen=True)
class NodePoolConfiguration:
    """Capacity class and instance hints for one pool type."""

    name: str
    display_name: str
    description: str
    primary_vm_size: str
    secondary_vm_size: str
    sku_family: str
    max_cpu: str
    max_memory: str
    node_class_type: str
    cost_tier: str
    recommended_for: Tuple[str, ...]

    @property
    def vm_sizes(self) -> Tuple[str, str]:
        return (self.primary_vm_size, self.secondary_vm_size)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["recommended_for"] = list(self.recommended_for)
        payload["vm_sizes"] = list(self.vm_sizes)
        return payload


@dataclass(frozen=True)
class Location:
    name: str
    display_name: str
    region: str
    recommended: bool
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VmSize:
    name: str
    display_name: str
    vcpus: int
    memory_gb: int
    cost_per_hour: float
    category: str
    available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PoolRecommendation:
    """Trade-offs of one pool type, for choosing between them."""

    node_pool_type: str
    display_name: str
    use_case: str
    pros: Tuple[str, ...]
    cons: Tuple[str, ...]
    recommended_for: Tuple[str, ...]
    karpenter_features: Dict[str, str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_pool_type": self.node_pool_type,
            "display_name": self.display_name,
            "use_case": self.use_case,
            "pros": list(self.pros),
            "cons": list(self.cons),
            "recommended_for": list(self.recommended_for),
            "karpenter_features": dict(self.karpenter_features),
        }


SYSTEM_POOL_VM_SIZE = "Standard_B2s"

NODE_POOL_CATALOG: Tuple[NodePoolConfiguration, ...] = (
    NodePoolConfiguration(
        name="standard",
        display_name="Standard",
        description="General purpose nodes for standard workloads",
        primary_vm_size="Standard_DS2_v2",
        secondary_vm_size="Standard_DS3_v2",
        sku_family="D",
        max_cpu="1000",
        max_memory="1000Gi",
        node_class_type="default-nodeclass",
        cost_tier="low",
        recommended_for=("web-apps", "microservices", "general-workloads"),
    ),
    NodePoolConfiguration(
        name="memory-optimized",
        display_name="Memory Optimized",
        description="High-memory nodes for memory-intensive workloads",
        primary_vm_size="Standard_E2s_v3",
        secondary_vm_size="Standard_E4s_v3",
        sku_family="E",
        max_cpu="1000",
        max_memory="2000Gi",
        node_class_type="memory-optimized-nodeclass",
        cost_tier="medium",
        recommended_for=("databases", "caches", "analytics", "in-memory-processing"),
    ),
    NodePoolConfiguration(
        name="compute-optimized",
        display_name="Compute Optimized",
        description="High-CPU nodes for compute-intensive workloads",
        primary_vm_size="Standard_F2s_v2",
        secondary_vm_size="Standard_F4s_v2",
        sku_family="F",
        max_cpu="2000",
        max_memory="1000Gi",
        node_class_type="compute-optimized-nodeclass",
        cost_tier="medium",
        recommended_for=("batch-processing", "scientific-computing", "video-encoding", "compilation"),
    ),
    NodePoolConfiguration(
        name="spot-optimized",
        display_name="Spot Optimized",
        description="Cost-optimized nodes using spot instances",
        primary_vm_size="Standard_DS2_v2",
        secondary_vm_size="Standard_DS3_v2",
        sku_family="D",
        max_cpu="500",
        max_memory="500Gi",
        node_class_type="default-nodeclass",
        cost_tier="very-low",
        recommended_for=("development", "testing", "batch-jobs", "fault-tolerant-apps"),
    ),
)

LOCATIONS: Tuple[Location, ...] = (
    Location("eastus", "East US", "us", True, "Primary US East region"),
    Location("westus2", "West US 2", "us", True, "Primary US West region"),
    Location("uksouth", "UK South", "uk", False, "Primary UK region"),
    Location("westeurope", "West Europe", "eu", False, "Primary Europe region"),
    Location("centralus", "Central US", "us", False, "Central US region"),
)

# Hourly list prices in eastus; other locations scale them.
VM_SIZES: Tuple[VmSize, ...] = (
    VmSize("Standard_DS2_v2", "DS2 v2", 2, 7, 0.10, "standard"),
    VmSize("Standard_DS3_v2", "DS3 v2", 4, 14, 0.20, "standard"),
    VmSize("Standard_E2s_v3", "E2s v3", 2, 16, 0.13, "memory-optimized"),
    VmSize("Standard_E4s_v3", "E4s v3", 4, 32, 0.25, "memory-optimized"),
    VmSize("Standard_F2s_v2", "F2s v2", 2, 4, 0.08, "compute-optimized"),
    VmSize("Standard_F4s_v2", "F4s v2", 4, 8, 0.17, "compute-optimized"),
)

LOCATION_PRICE_MULTIPLIERS: Dict[str, float] = {
    "eastus": 1.0,
    "westus2": 1.0,
    "uksouth": 1.15,
    "westeurope": 1.10,
    "centralus": 0.95,
}

_USE_CASES: Dict[str, str] = {
    "standard": "Web applications, microservices, development environments, general-purpose workloads",
    "memory-optimized": "In-memory databases, caches, big data analytics, memory-intensive applications",
    "compute-optimized": "CPU-intensive applications, batch processing, scientific computing, compilation tasks",
    "spot-optimized": "Development environments, testing, fault-tolerant batch jobs, cost-sensitive workloads",
}

_PROS: Dict[str, Tuple[str, ...]] = {
    "standard": (
        "Cost-effective for most workloads",
        "Balanced CPU and memory ratio",
        "Good performance for general use cases",
        "Karpenter auto-scaling and optimization",
    ),
    "memory-optimized": (
        "Excellent for memory-intensive workloads",
        "High memory-to-CPU ratio",
        "Karpenter intelligent node management",
        "Suitable for in-memory processing",
    ),
    "compute-optimized": (
        "High CPU performance per core",
        "Excellent for compute-bound tasks",
        "Karpenter spot instance support",
        "Fast processing capabilities",
    ),
    "spot-optimized": (
        "Significant cost savings (up to 90%)",
        "Karpenter handles spot interruptions",
        "Good for fault-tolerant workloads",
        "Automatic fallback to on-demand",
    ),
}

_CONS: Dict[str, Tuple[str, ...]] = {
    "standard": (
        "May not excel at specialized workloads",
        "Not optimized for high-memory or high-CPU tasks",
    ),
    "memory-optimized": (
        "Higher cost per hour",
        "Overkill for CPU-bound tasks",
        "Limited CPU performance per dollar",
    ),
    "compute-optimized": (
        "Limited memory per core",
        "Higher cost for memory-intensive tasks",
        "May need more nodes for balanced workloads",
    ),
    "spot-optimized": (
        "Potential for instance interruptions",
        "Not suitable for mission-critical workloads",
        "Unpredictable availability",
    ),
}

_POOLS_BY_NAME: Dict[str, NodePoolConfiguration] = {pool.name: pool for pool in NODE_POOL_CATALOG}
_LOCATIONS_BY_NAME: Dict[str, Location] = {location.name: location for location in LOCATIONS}


def list_pool_types() -> List[NodePoolConfiguration]:
    return list(NODE_POOL_CATALOG)


def describe(pool_type: str) -> NodePoolConfiguration:
    try:
        return _POOLS_BY_NAME[pool_type]
    except KeyError:
        raise NotFound(f"unknown node pool type {pool_type!r}", field="node_pool_type") from None


def get_available_locations() -> List[Location]:
    return list(LOCATIONS)


def describe_location(name: str) -> Location:
    try:
        return _LOCATIONS_BY_NAME[name]
    except KeyError:
        raise NotFound(f"unknown location {name!r}", field="location") from None


def list_vm_sizes(location: str = "eastus") -> List[VmSize]:
    """VM sizes offered in ``location`` with location-adjusted hourly prices."""

    describe_location(location)
    multiplier = LOCATION_PRICE_MULTIPLIERS.get(location, 1.0)
    return [
        replace(size, cost_per_hour=round(size.cost_per_hour * multiplier, 3))
        for size in VM_SIZES
    ]


def _karpenter_features(pool: NodePoolConfiguration) -> Dict[str, str]:
    spot = pool.name == "spot-optimized"
    return {
        "autoScaling": "Intelligent node provisioning and deprovisioning",
        "spotSupport": "Optimized for spot instances" if spot else "Spot instance capable",
        "nodeConsolidation": "Automatic node consolidation when possible",
        "multiInstanceType": f"Supports {pool.primary_vm_size} and {pool.secondary_vm_size}",
        "resourceLimits": f"Max {pool.max_cpu} CPU, {pool.max_memory} memory",
        "taints": f"Specialized taints for {pool.name} workloads",
    }


def get_recommendations() -> List[PoolRecommendation]:
    return [
        PoolRecommendation(
            node_pool_type=pool.name,
            display_name=pool.display_name,
            use_case=_USE_CASES.get(pool.name, f"Workloads optimized for {pool.name} requirements"),
            pros=_PROS.get(pool.name, ("Optimized for specific use cases", "Karpenter management")),
            cons=_CONS.get(pool.name, ("Trade-offs depend on specific requirements",)),
            recommended_for=pool.recommended_for,
            karpenter_features=_karpenter_features(pool),
        )
        for pool in NODE_POOL_CATALOG
    ]


__all__ = [
    "NodePoolConfiguration",
    "Location",
    "VmSize",
    "PoolRecommendation",
    "SYSTEM_POOL_VM_SIZE",
    "NODE_POOL_CATALOG",
    "LOCATIONS",
    "VM_SIZES",
    "LOCATION_PRICE_MULTIPLIERS",
    "list_pool_types",
    "describe",
    "get_available_locations",
    "describe_location",
    "list_vm_sizes",
    "get_recommendations",
]
