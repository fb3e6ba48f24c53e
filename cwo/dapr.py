from __future__ import annotations

import re

from .context import Context
from .errors import ValidationError
from .health import UnifiedHealthChecker
from .interfaces import ContainerHealthChecker, DaprSidecarInjector
from .models import ContainerSpec, DaprSidecarConfig, ResourceLimits


APP_ID_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9\-]{0,58}[A-Za-z0-9])?$")

# Per-environment sidecar defaults: log level, profiling, max concurrency, cpu, memory.
_ENV_DEFAULTS: dict[str, tuple[str, bool, int, str, str]] = {
    "development": ("debug", True, -1, "200m", "128Mi"),
    "staging": ("info", False, 100, "500m", "256Mi"),
    "production": ("warn", False, 1000, "1000m", "512Mi"),
}
_FALLBACK = ("info", False, 100, "500m", "256Mi")

_PLACEMENT = {
    "staging": "dapr-control-plane-staging.azurecontainerapp.io:50005",
    "production": "dapr-control-plane-production.azurecontainerapp.io:50005",
}

# Keys of dapr_config owned by the manager; anything else is passed through.
_MANAGED_KEYS = frozenset(
    {"app_id", "app_port", "placement_host_address", "log_level",
     "enable_profiling", "enable_metrics", "metrics_port", "max_concurrency"}
)


def validate_app_id(app_id: str) -> None:
    if not app_id:
        raise ValidationError("Dapr app ID cannot be empty")
    if len(app_id) > 60:
        raise ValidationError("Dapr app ID cannot be longer than 60 characters")
    if app_id[0] == "-" or app_id[-1] == "-":
        raise ValidationError("Dapr app ID cannot start or end with a hyphen")
    if not APP_ID_RE.match(app_id):
        raise ValidationError(f"Dapr app ID {app_id!r} may only contain letters, digits and hyphens")


def validate_sidecar_config(config: DaprSidecarConfig) -> None:
    if not config.app_id:
        raise ValidationError("Dapr app ID is required")
    if int(config.app_port) <= 0:
        raise ValidationError("valid application port is required")


def sidecar_name(app_id: str, separator: str = "-") -> str:
    return f"{app_id}{separator}dapr"


def dapr_http_port(app_port: int) -> int:
    """Host port for the sidecar's HTTP API, derived from the application port."""
    if 9000 <= app_port < 10000:  # gateways
        return 50000 + (app_port - 9000)
    if 3000 <= app_port < 3100:  # content services
        return 50010 + (app_port - 3000)
    if 3100 <= app_port < 3200:  # inquiry services
        return 50020 + (app_port - 3100)
    if 3200 <= app_port < 3300:  # notification services
        return 50030 + (app_port - 3200)
    return 50100 + app_port % 100


def dapr_grpc_port(app_port: int) -> int:
    return dapr_http_port(app_port) + 10000


class UnifiedDaprSidecarManager:
    """Validates container specs for Dapr and fills in sidecar configuration.

    Pure configuration work: nothing here talks to a platform except
    :meth:`wait_for_sidecar_ready`, which goes through the injector.
    """

    def __init__(self, environment: str = "development", health_checker: UnifiedHealthChecker | None = None):
        self.environment = environment
        self.health_checker = health_checker or UnifiedHealthChecker()

    def _defaults(self) -> tuple[str, bool, int, str, str]:
        return _ENV_DEFAULTS.get(self.environment, _FALLBACK)

    def placement_host_address(self) -> str:
        return _PLACEMENT.get(self.environment, "localhost:50005")

    def build_default_config(self, app_id: str, app_port: int) -> DaprSidecarConfig:
        log_level, profiling, concurrency, cpu, memory = self._defaults()
        return DaprSidecarConfig(
            app_id=app_id,
            app_port=app_port,
            http_port=dapr_http_port(app_port),
            grpc_port=dapr_grpc_port(app_port),
            placement_host_address=self.placement_host_address(),
            log_level=log_level,
            enable_profiling=profiling,
            enable_metrics=True,
            max_concurrency=concurrency,
            resources=ResourceLimits(cpu=cpu, memory=memory),
        )

    def validate_container_for_dapr(self, spec: ContainerSpec) -> None:
        if not spec.name:
            raise ValidationError("container name is required for Dapr sidecar injection")
        if not spec.dapr_app_id:
            raise ValidationError(f"Dapr app ID is required for sidecar injection ({spec.name})")
        if int(spec.port) <= 0:
            raise ValidationError(f"valid application port is required for Dapr sidecar injection ({spec.name})")
        validate_app_id(spec.dapr_app_id)

    def enrich_container_spec(self, spec: ContainerSpec) -> DaprSidecarConfig:
        """Populate the spec's sidecar block and Dapr environment variables.

        Runs before any sidecar deployment. Returns the effective sidecar config.
        """
        self.validate_container_for_dapr(spec)
        config = self.build_default_config(spec.dapr_app_id, spec.port)
        if spec.dapr_port:
            config.http_port = spec.dapr_port
        else:
            spec.dapr_port = config.http_port
        config.extra = {k: v for k, v in spec.dapr_config.items() if k not in _MANAGED_KEYS}

        spec.dapr_config.update(
            {
                "app_id": config.app_id,
                "app_port": config.app_port,
                "placement_host_address": config.placement_host_address,
                "log_level": config.log_level,
                "enable_profiling": config.enable_profiling,
                "enable_metrics": config.enable_metrics,
                "metrics_port": config.metrics_port,
                "max_concurrency": config.max_concurrency,
            }
        )
        spec.environment["DAPR_HTTP_PORT"] = str(config.http_port)
        spec.environment["DAPR_GRPC_PORT"] = str(config.grpc_port)
        return config

    def validate_sidecar_config(self, config: DaprSidecarConfig) -> None:
        validate_sidecar_config(config)

    def build_dapr_command(self, config: DaprSidecarConfig) -> list[str]:
        args = [
            "./daprd",
            f"--app-id={config.app_id}",
            f"--app-port={config.app_port}",
            f"--dapr-http-port={config.http_port}",
            f"--dapr-grpc-port={config.grpc_port}",
            f"--log-level={config.log_level}",
            f"--app-max-concurrency={config.max_concurrency}",
            f"--placement-host-address={config.placement_host_address}",
            "--dapr-listen-addresses=0.0.0.0",
            "--resources-path=/components",
        ]
        if config.enable_profiling:
            args += ["--enable-profiling", f"--profile-port={config.profile_port}"]
        if config.enable_metrics:
            args += ["--enable-metrics", f"--metrics-port={config.metrics_port}"]
        return args

    def get_dapr_endpoint(self, app_id: str, dapr_port: int) -> str:
        if self.environment in ("staging", "production"):
            return f"https://{app_id}-{self.environment}.azurecontainerapp.io"
        return f"http://localhost:{dapr_port}"

    def wait_for_sidecar_ready(
        self,
        app_id: str,
        injector: DaprSidecarInjector,
        timeout_s: float,
        ctx: Context | None = None,
    ) -> None:
        if not isinstance(injector, ContainerHealthChecker):
            raise ValidationError(f"{type(injector).__name__} cannot report sidecar health")
        self.health_checker.wait_for_container_health(
            injector.get_sidecar_name(app_id), injector, timeout_s, probe=False, ctx=ctx
        )

