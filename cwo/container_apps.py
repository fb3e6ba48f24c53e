from __future__ import annotations

from typing import Any

from .context import Context, ensure
from .control_plane import ControlPlaneClient
from .dapr import UnifiedDaprSidecarManager, sidecar_name, validate_sidecar_config
from .errors import CwoError, NotFoundError, ValidationError
from .health import UnifiedHealthChecker
from .interfaces import (
    ContainerHealthChecker,
    ContainerProvider,
    DaprProvider,
    DaprSidecarInjector,
    RevisionManager,
)
from .models import (
    SUCCEEDED,
    UNKNOWN,
    ContainerSpec,
    DaprSidecarConfig,
    Revision,
    TrafficWeight,
    dapr_enabled,
    ingress_fqdn,
    provisioning_state,
)
from .traffic import RevisionNamer, split_traffic, validate_weight

# Logical application name -> health path served behind the ingress.
HEALTH_PATHS: dict[str, str] = {
    "dapr-control-plane": "/v1.0/healthz",
    "dapr-placement": "/v1.0/healthz",
    "dapr-sentry": "/v1.0/healthz",
    "public-gateway": "/health",
    "admin-gateway": "/health",
    "content-news": "/health",
    "content-events": "/health",
    "content-research": "/health",
    "inquiries-business": "/health",
    "inquiries-donations": "/health",
    "inquiries-media": "/health",
    "inquiries-volunteers": "/health",
    "notification-service": "/health",
}
DEFAULT_HEALTH_PATH = "/health"


class ContainerAppsProvider(ContainerProvider, DaprProvider, ContainerHealthChecker, DaprSidecarInjector, RevisionManager):
    """Managed container platform provider.

    Applications run in "Multiple" active revisions mode so traffic can be
    split across revisions. Sidecars are attached by the platform itself, so
    the sidecar operations only validate. Revision state is never cached:
    every read goes back to the control plane.
    """

    def __init__(
        self,
        control_plane: ControlPlaneClient,
        *,
        environment: str = "staging",
        health_checker: UnifiedHealthChecker | None = None,
        dapr_manager: UnifiedDaprSidecarManager | None = None,
        app_poll_interval_s: float = 15.0,
        revision_poll_interval_s: float = 30.0,
        health_paths: dict[str, str] | None = None,
        namer: RevisionNamer | None = None,
    ):
        self.control_plane = control_plane
        self.environment = environment
        self.health_checker = health_checker or UnifiedHealthChecker(interval_s=app_poll_interval_s)
        self.dapr_manager = dapr_manager or UnifiedDaprSidecarManager(environment, self.health_checker)
        self.app_poll_interval_s = app_poll_interval_s
        self.revision_poll_interval_s = revision_poll_interval_s
        self.health_paths = dict(HEALTH_PATHS if health_paths is None else health_paths)
        self.namer = namer or RevisionNamer()

    # --- descriptor -------------------------------------------------------

    def build_descriptor(self, spec: ContainerSpec) -> dict[str, Any]:
        traffic = spec.platform.traffic or [{"weight": 100, "latestRevision": True}]
        ingress: dict[str, Any] = {"external": True, "targetPort": spec.port, "traffic": traffic}
        ingress.update(spec.platform.ingress)
        configuration: dict[str, Any] = {"activeRevisionsMode": "Multiple", "ingress": ingress}
        if spec.dapr_enabled:
            configuration["dapr"] = {"enabled": True, "appId": spec.dapr_app_id, "appPort": spec.port}
        template: dict[str, Any] = {
            "containers": [
                {
                    "name": spec.name,
                    "image": spec.image,
                    "resources": {"cpu": spec.resources.cpu, "memory": spec.resources.memory},
                    "env": [{"name": k, "value": v} for k, v in sorted(spec.environment.items())],
                    "probes": [
                        {"type": "Liveness", "httpGet": {"path": spec.health_path, "port": spec.port}},
                    ],
                }
            ],
            "scale": self._scale(spec),
        }
        if spec.command:
            template["containers"][0]["command"] = list(spec.command)
        if spec.platform.revision_suffix:
            template["revisionSuffix"] = spec.platform.revision_suffix
        return {"properties": {"configuration": configuration, "template": template}}

    @staticmethod
    def _scale(spec: ContainerSpec) -> dict[str, Any]:
        scale: dict[str, Any] = {"minReplicas": spec.platform.min_replicas, "maxReplicas": spec.platform.max_replicas}
        rules: list[dict[str, Any]] = []
        http = spec.platform.scaling_rules.get("http_requests")
        if isinstance(http, dict) and "concurrent_requests" in http:
            rules.append(
                {
                    "name": "http-scale-rule",
                    "http": {"metadata": {"concurrentRequests": str(int(http["concurrent_requests"]))}},
                }
            )
        cpu = spec.platform.scaling_rules.get("cpu_utilization")
        if isinstance(cpu, dict) and "utilization" in cpu:
            rules.append(
                {
                    "name": "cpu-scale-rule",
                    "custom": {"type": "cpu", "metadata": {"type": "Utilization", "value": str(int(cpu["utilization"]))}},
                }
            )
        if rules:
            scale["rules"] = rules
        return scale

    # --- ContainerProvider ------------------------------------------------

    def deploy_container(self, spec: ContainerSpec, ctx: Context | None = None) -> None:
        spec.validate()
        self.control_plane.create_application(spec.name, self.build_descriptor(spec), ctx=ctx)

    def stop_container(self, name: str, ctx: Context | None = None) -> None:
        # Scale to zero; the application and its revisions stay.
        self.control_plane.update_replicas(name, 0, 0, ctx=ctx)

    def wait_for_container_health(self, name: str, timeout_s: float, ctx: Context | None = None) -> None:
        self.wait_for_container_app_health(name, timeout_s, ctx=ctx)

    def wait_for_container_app_health(self, name: str, timeout_s: float, ctx: Context | None = None) -> None:
        self.health_checker.wait_for_container_health(
            name, self, timeout_s, interval_s=self.app_poll_interval_s, ctx=ctx
        )

    def get_container_logs(self, name: str, lines: int = 100, ctx: Context | None = None) -> str:
        return self.control_plane.show_logs(name, lines, ctx=ctx)

    def is_container_running(self, name: str, ctx: Context | None = None) -> bool:
        return self.check_container_status(name, ctx=ctx) == SUCCEEDED

    def pull_image(self, image: str, ctx: Context | None = None) -> None:
        # The platform pulls images itself during deployment.
        ensure(ctx).check()

    def initialize(self, ctx: Context | None = None) -> None:
        self.control_plane.show_environment(ctx=ctx)

    def cleanup(self, ctx: Context | None = None) -> None:
        ctx = ensure(ctx)
        for name in self.list_containers(ctx=ctx):
            ctx.check()
            try:
                self.stop_container(name, ctx=ctx)
            except CwoError:
                # one stuck application must not block the rest
                continue

    def list_containers(self, ctx: Context | None = None) -> list[str]:
        return self.control_plane.list_applications(ctx=ctx)

    # --- ContainerHealthChecker -------------------------------------------

    def check_container_status(self, name: str, ctx: Context | None = None) -> str:
        try:
            doc = self.control_plane.show_application(name, ctx=ctx)
        except NotFoundError:
            return UNKNOWN
        return provisioning_state(doc)

    def get_container_endpoint(self, name: str, ctx: Context | None = None) -> str:
        try:
            fqdn = ingress_fqdn(self.control_plane.show_application(name, ctx=ctx))
        except NotFoundError:
            return ""
        if not fqdn:
            return ""
        return f"https://{fqdn}{self.health_paths.get(name, DEFAULT_HEALTH_PATH)}"

    # --- DaprProvider -----------------------------------------------------

    def deploy_dapr_sidecar(self, spec: ContainerSpec, ctx: Context | None = None) -> None:
        config = self.dapr_manager.enrich_container_spec(spec)
        self.inject_sidecar(spec, config, ctx=ctx)

    def validate_dapr_configuration(self, app_id: str, ctx: Context | None = None) -> None:
        if not app_id:
            raise ValidationError("Dapr app ID cannot be empty")
        try:
            doc = self.control_plane.show_application(app_id, ctx=ctx)
        except NotFoundError as e:
            raise ValidationError(f"container app {app_id} does not exist") from e
        if not dapr_enabled(doc):
            raise ValidationError(f"Dapr is not enabled for container app {app_id}")

    def get_dapr_health(self, app_id: str, ctx: Context | None = None) -> None:
        endpoint = self.get_container_endpoint(app_id, ctx=ctx)
        base = endpoint[: -len(self.health_paths.get(app_id, DEFAULT_HEALTH_PATH))] if endpoint else ""
        self.health_checker.validate_dapr_health(app_id, base, ctx=ctx)

    # --- DaprSidecarInjector ----------------------------------------------

    def inject_sidecar(self, spec: ContainerSpec, config: DaprSidecarConfig, ctx: Context | None = None) -> None:
        # The platform attaches the sidecar when dapr.enabled is set on the app.
        self.validate_sidecar_config(config)
        ensure(ctx).check()

    def validate_sidecar_config(self, config: DaprSidecarConfig) -> None:
        validate_sidecar_config(config)

    def get_sidecar_name(self, app_id: str) -> str:
        return sidecar_name(app_id, separator="--")

    # --- RevisionManager --------------------------------------------------

    def update_container_app_revision(
        self, spec: ContainerSpec, traffic_percentage: int, ctx: Context | None = None
    ) -> str:
        """Create a new revision of ``spec`` and route ``traffic_percentage`` to it.

        Returns the new revision's name.
        """
        spec.validate()
        validate_weight(traffic_percentage)
        revision, suffix = self.namer.next(spec.name)
        descriptor = self.build_descriptor(spec)
        descriptor["properties"]["template"]["revisionSuffix"] = suffix
        self.control_plane.create_revision(spec.name, descriptor, suffix, ctx=ctx)
        self.configure_traffic_splitting(spec.name, revision, traffic_percentage, ctx=ctx)
        return revision

    def configure_traffic_splitting(
        self, app: str, new_revision: str, new_weight: int, ctx: Context | None = None
    ) -> list[TrafficWeight]:
        validate_weight(new_weight)
        active = self.get_active_revisions(app, ctx=ctx)
        table = split_traffic(active, new_revision, new_weight)
        self.control_plane.set_traffic(app, table, ctx=ctx)
        return table

    def get_active_revisions(self, app: str, ctx: Context | None = None) -> list[Revision]:
        return [r for r in self.list_revisions(app, ctx=ctx) if r.active]

    def list_revisions(self, app: str, ctx: Context | None = None) -> list[Revision]:
        return self.control_plane.list_revisions(app, ctx=ctx)

    def revision_state(self, app: str, revision: str, ctx: Context | None = None) -> str:
        try:
            doc = self.control_plane.show_revision(app, revision, ctx=ctx)
        except NotFoundError:
            return UNKNOWN
        return provisioning_state(doc)

    def wait_for_revision_ready(self, app: str, revision: str, timeout_s: float, ctx: Context | None = None) -> None:
        self.health_checker.poll(
            lambda c: self.revision_state(app, revision, ctx=c),
            subject=f"revision {revision}",
            timeout_s=timeout_s,
            interval_s=self.revision_poll_interval_s,
            ctx=ctx,
        )

    def deactivate_revision(self, app: str, revision: str, ctx: Context | None = None) -> None:
        self.control_plane.deactivate_revision(app, revision, ctx=ctx)
