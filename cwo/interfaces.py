"""Capability interfaces a provider can satisfy.

A provider inherits only the interfaces it really supports. Every method is
safe to call concurrently for different application names; calls for the same
name must be serialized by the caller.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from .context import Context
from .models import ContainerSpec, DaprSidecarConfig, Revision, TrafficWeight


class ContainerProvider(ABC):
    @abstractmethod
    def deploy_container(self, spec: ContainerSpec, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def stop_container(self, name: str, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def wait_for_container_health(self, name: str, timeout_s: float, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def get_container_logs(self, name: str, lines: int = 100, ctx: Context | None = None) -> str: ...

    @abstractmethod
    def is_container_running(self, name: str, ctx: Context | None = None) -> bool: ...

    @abstractmethod
    def pull_image(self, image: str, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def initialize(self, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def cleanup(self, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def list_containers(self, ctx: Context | None = None) -> list[str]: ...


class DaprProvider(ABC):
    @abstractmethod
    def deploy_dapr_sidecar(self, spec: ContainerSpec, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def validate_dapr_configuration(self, app_id: str, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def get_dapr_health(self, app_id: str, ctx: Context | None = None) -> None: ...


class ContainerHealthChecker(ABC):
    @abstractmethod
    def check_container_status(self, name: str, ctx: Context | None = None) -> str:
        """Return one of the normalized provisioning states."""

    @abstractmethod
    def get_container_endpoint(self, name: str, ctx: Context | None = None) -> str:
        """Return the health URL, or "" when the application has no ingress."""


class DaprSidecarInjector(ABC):
    @abstractmethod
    def inject_sidecar(self, spec: ContainerSpec, config: DaprSidecarConfig, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def validate_sidecar_config(self, config: DaprSidecarConfig) -> None: ...

    @abstractmethod
    def get_sidecar_name(self, app_id: str) -> str: ...


class RevisionManager(ABC):
    """Revision and traffic-splitting capability (managed platforms only)."""

    @abstractmethod
    def update_container_app_revision(
        self, spec: ContainerSpec, traffic_percentage: int, ctx: Context | None = None
    ) -> str: ...

    @abstractmethod
    def configure_traffic_splitting(
        self, app: str, new_revision: str, new_weight: int, ctx: Context | None = None
    ) -> list[TrafficWeight]: ...

    @abstractmethod
    def get_active_revisions(self, app: str, ctx: Context | None = None) -> list[Revision]: ...

    @abstractmethod
    def list_revisions(self, app: str, ctx: Context | None = None) -> list[Revision]: ...

    @abstractmethod
    def wait_for_revision_ready(self, app: str, revision: str, timeout_s: float, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def deactivate_revision(self, app: str, revision: str, ctx: Context | None = None) -> None: ...


CAPABILITIES: dict[str, type] = {
    "container": ContainerProvider,
    "dapr": DaprProvider,
    "health": ContainerHealthChecker,
    "sidecar": DaprSidecarInjector,
    "revisions": RevisionManager,
}


def capabilities(provider: object) -> set[str]:
    return {name for name, iface in CAPABILITIES.items() if isinstance(provider, iface)}
