from __future__ import annotations

from pydantic import BaseModel, Field


class BindingRequest(BaseModel):
    namespace: str = Field("default", description="Binding namespace (dns-safe)")
    name: str = Field(..., description="Binding name (dns-safe)")
    clusters: list[str] = Field(default_factory=list, description="Clusters the workload is placed on")


class EvictionRequest(BaseModel):
    from_cluster: str = Field(..., description="Cluster the workload is being moved away from")
    grace_period_seconds: int | None = Field(None, description="Overrides the global graceful eviction timeout")
    reason: str = Field("", description="Why the cluster is being evacuated (diagnostic only)")
    producer: str = Field("", description="Component that requested the eviction (diagnostic only)")
    message: str = ""


class RescheduleRequest(BaseModel):
    clusters: list[str] = Field(..., description="New target clusters")
    evictions: list[EvictionRequest] = Field(default_factory=list)


class StatusItemRequest(BaseModel):
    cluster_name: str
    applied: bool = False
    health: str = Field("Unknown", description="Healthy|Unhealthy|Unknown")
    applied_message: str = ""
    status: dict = Field(default_factory=dict, description="Opaque workload status reported by the member cluster")


class StatusRequest(BaseModel):
    aggregated_status: list[StatusItemRequest] = Field(default_factory=list)
