from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from .errors import ValidationError

# Provisioning states reported by a platform, normalized by each provider.
PROVISIONING = "Provisioning"
SUCCEEDED = "Succeeded"
FAILED = "Failed"
UNKNOWN = "Unknown"

TERMINAL_STATES = frozenset({SUCCEEDED, FAILED})


@dataclass
class ResourceLimits:
    cpu: str = "500m"
    memory: str = "256Mi"
    cpu_request: str = "100m"
    memory_request: str = "128Mi"


@dataclass
class PlatformConfig:
    """Provider-specific extension block of a :class:`ContainerSpec`."""

    scaling_rules: dict[str, Any] = field(default_factory=dict)
    ingress: dict[str, Any] = field(default_factory=dict)
    traffic: list[dict[str, Any]] | None = None
    min_replicas: int = 1
    max_replicas: int = 10
    revision_suffix: str = ""
    network: str = ""


@dataclass
class ContainerSpec:
    name: str
    image: str
    port: int
    dapr_app_id: str = ""
    environment: dict[str, str] = field(default_factory=dict)
    resources: ResourceLimits = field(default_factory=ResourceLimits)
    health_path: str = "/health"
    dapr_enabled: bool = True
    dapr_port: int = 0
    dapr_config: dict[str, Any] = field(default_factory=dict)
    command: list[str] = field(default_factory=list)
    platform: PlatformConfig = field(default_factory=PlatformConfig)

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("container name is required")
        if not self.image:
            raise ValidationError("container image is required")
        if int(self.port) <= 0:
            raise ValidationError(f"valid port number is required for {self.name}")
        if self.dapr_enabled and not self.dapr_app_id:
            raise ValidationError(f"Dapr app ID is required when Dapr is enabled ({self.name})")
        if not self.health_path.startswith("/"):
            raise ValidationError("health_path must start with '/'.")

    def with_environment(self, env: dict[str, str]) -> ContainerSpec:
        self.environment.update(env)
        return self

    def clone(self) -> ContainerSpec:
        return copy.deepcopy(self)


@dataclass
class DaprSidecarConfig:
    app_id: str
    app_port: int
    http_port: int = 3500
    grpc_port: int = 50001
    metrics_port: int = 9090
    profile_port: int = 7777
    placement_host_address: str = "localhost:50005"
    log_level: str = "info"
    enable_profiling: bool = False
    enable_metrics: bool = True
    max_concurrency: int = 100
    resources: ResourceLimits = field(default_factory=lambda: ResourceLimits(cpu="500m", memory="256Mi"))
    extra: dict[str, Any] = field(default_factory=dict)


def _props(doc: dict[str, Any]) -> dict[str, Any]:
    # The platform nests most fields under "properties"; fakes and older CLIs don't.
    props = doc.get("properties")
    return props if isinstance(props, dict) else doc


@dataclass(frozen=True)
class Revision:
    name: str
    created_time: str = ""
    active: bool = False
    traffic_weight: int = 0

    @classmethod
    def from_json(cls, doc: dict[str, Any]) -> Revision:
        props = _props(doc)
        return cls(
            name=str(doc.get("name") or props.get("name") or ""),
            created_time=str(props.get("createdTime") or ""),
            active=bool(props.get("active", False)),
            traffic_weight=int(props.get("trafficWeight") or 0),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "createdTime": self.created_time,
            "active": self.active,
            "trafficWeight": self.traffic_weight,
        }


@dataclass(frozen=True)
class TrafficWeight:
    revision_name: str
    weight: int

    def to_json(self) -> dict[str, Any]:
        return {"revisionName": self.revision_name, "weight": self.weight}


@dataclass(frozen=True)
class HealthProbeResult:
    state: str
    endpoint: str = ""
    healthy: bool = False
    message: str = ""


@dataclass(frozen=True)
class DeploymentResult:
    name: str
    state: str
    endpoint: str = ""
    message: str = ""


def provisioning_state(doc: dict[str, Any]) -> str:
    return str(_props(doc).get("provisioningState") or UNKNOWN)


def ingress_fqdn(doc: dict[str, Any]) -> str:
    ingress = (_props(doc).get("configuration") or {}).get("ingress") or {}
    return str(ingress.get("fqdn") or "")


def dapr_enabled(doc: dict[str, Any]) -> bool:
    dapr = (_props(doc).get("configuration") or {}).get("dapr") or {}
    return bool(dapr.get("enabled", False))
