"""Request bodies accepted by the HTTP routes and the event consumer."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..orchestration.errors import NotFound
from ..orchestration.models import (
    AdvancedClusterConfig,
    ProvisioningRequest,
    ResourceLimits,
    ResourcePair,
)
from ..services import catalog


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ResourcePairSchema(_CamelModel):
    request: str
    limit: str


class ResourceLimitsSchema(_CamelModel):
    cpu: ResourcePairSchema = Field(default_factory=lambda: ResourcePairSchema(request="100m", limit="1000m"))
    memory: ResourcePairSchema = Field(default_factory=lambda: ResourcePairSchema(request="128Mi", limit="1Gi"))

    def to_limits(self) -> ResourceLimits:
        return ResourceLimits(
            cpu=ResourcePair(request=self.cpu.request, limit=self.cpu.limit),
            memory=ResourcePair(request=self.memory.request, limit=self.memory.limit),
        )


class NamespaceRequestSchema(_CamelModel):
    name: str
    description: str = ""
    resource_limits: ResourceLimitsSchema = Field(default_factory=ResourceLimitsSchema, alias="resourceLimits")
    network_isolated: bool = Field(True, alias="networkIsolated")
    dry_run: bool = Field(False, alias="dryRun")

    def to_request(self) -> ProvisioningRequest:
        return ProvisioningRequest.namespace(
            self.name,
            description=self.description,
            resource_limits=self.resource_limits.to_limits(),
            network_isolated=self.network_isolated,
            dry_run=self.dry_run,
        )


class AdvancedConfigSchema(_CamelModel):
    kubernetes_version: str = Field("1.28.3", alias="kubernetesVersion")
    max_nodes: int = Field(10, alias="maxNodes")
    enable_spot: bool = Field(False, alias="enableSpot")


class ClusterRequestSchema(_CamelModel):
    name: str
    location: str = "eastus"
    node_pool_type: str = Field("standard", alias="nodePoolType")
    dry_run: bool = Field(True, alias="dryRun")
    enable_node_auto_provisioning: bool = Field(True, alias="enableNAP")
    advanced: AdvancedConfigSchema = Field(default_factory=AdvancedConfigSchema, alias="advancedConfig")

    @field_validator("location")
    def _known_location(cls, value: str) -> str:
        try:
            catalog.describe_location(value)
        except NotFound:
            raise ValueError(f"unsupported location {value!r}") from None
        return value

    def to_request(self) -> ProvisioningRequest:
        return ProvisioningRequest.cluster(
            self.name,
            location=self.location,
            node_pool_type=self.node_pool_type,
            dry_run=self.dry_run,
            enable_node_auto_provisioning=self.enable_node_auto_provisioning,
            advanced=AdvancedClusterConfig(
                kubernetes_version=self.advanced.kubernetes_version,
                max_nodes=self.advanced.max_nodes,
                enable_spot=self.advanced.enable_spot,
            ),
        )


class AbortRequestSchema(_CamelModel):
    reason: str = ""


class RetryRequestSchema(_CamelModel):
    from_step: Optional[str] = Field(None, alias="fromStep")


class StrategySchema(_CamelModel):
    use_direct: bool = Field(..., alias="useDirect")


__all__ = [
    "ResourcePairSchema",
    "ResourceLimitsSchema",
    "NamespaceRequestSchema",
    "AdvancedConfigSchema",
    "ClusterRequestSchema",
    "AbortRequestSchema",
    "RetryRequestSchema",
    "StrategySchema",
]
