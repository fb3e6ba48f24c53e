from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .models import ContainerSpec, PlatformConfig, ResourceLimits


class ResourcesModel(BaseModel):
    cpu: str = "500m"
    memory: str = "256Mi"


class PlatformModel(BaseModel):
    min_replicas: int = Field(1, ge=0, le=300)
    max_replicas: int = Field(10, ge=0, le=300)
    scaling_rules: dict[str, Any] = Field(default_factory=dict)
    ingress: dict[str, Any] = Field(default_factory=dict)


class WorkloadModel(BaseModel):
    image: str = Field(..., description="Container image (name:tag)")
    port: int = Field(..., ge=1, le=65535, description="Port the application listens on")
    dapr_app_id: str = Field("", description="Dapr app id; required when dapr_enabled")
    dapr_enabled: bool = True
    health_path: str = Field("/health", description="Health endpoint path")
    environment: dict[str, str] = Field(default_factory=dict)
    command: list[str] = Field(default_factory=list)
    resources: ResourcesModel = Field(default_factory=ResourcesModel)
    platform: PlatformModel = Field(default_factory=PlatformModel)

    def build_spec(self, name: str) -> ContainerSpec:
        return ContainerSpec(
            name=name,
            image=self.image,
            port=self.port,
            dapr_app_id=self.dapr_app_id,
            dapr_enabled=self.dapr_enabled,
            health_path=self.health_path,
            environment=dict(self.environment),
            command=list(self.command),
            resources=ResourceLimits(cpu=self.resources.cpu, memory=self.resources.memory),
            platform=PlatformConfig(
                min_replicas=self.platform.min_replicas,
                max_replicas=self.platform.max_replicas,
                scaling_rules=dict(self.platform.scaling_rules),
                ingress=dict(self.platform.ingress),
            ),
        )


class DeployRequest(WorkloadModel):
    name: str = Field(..., description="Application name (dns-safe)")

    def to_spec(self) -> ContainerSpec:
        return self.build_spec(self.name)


class RolloutRequest(WorkloadModel):
    canary_weight: int = Field(10, ge=0, le=100)
    step_percent: int = Field(25, ge=1, le=100)
    step_interval_s: float = Field(15, ge=0, le=3600)
    auto: bool = True


class TrafficRequest(BaseModel):
    revision: str = Field(..., description="Existing revision name")
    weight: int = Field(..., ge=0, le=100)
