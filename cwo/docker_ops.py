from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

import docker
from docker.errors import DockerException, NotFound

from .context import Context, ensure
from .dapr import UnifiedDaprSidecarManager, sidecar_name, validate_app_id, validate_sidecar_config
from .errors import CwoError, ExecutionError, NotFoundError, ValidationError
from .health import UnifiedHealthChecker
from .interfaces import ContainerHealthChecker, ContainerProvider, DaprProvider, DaprSidecarInjector
from .models import FAILED, PROVISIONING, SUCCEEDED, UNKNOWN, ContainerSpec, DaprSidecarConfig

LABEL_MANAGED = "cwo.managed"
LABEL_APP = "cwo.app"
LABEL_PORT = "cwo.port"
LABEL_HEALTH_PATH = "cwo.health_path"
LABEL_SIDECAR = "cwo.sidecar"
LABEL_DAPR_PORT = "cwo.dapr_http_port"

_STATUS_MAP = {
    "created": PROVISIONING,
    "restarting": PROVISIONING,
    "exited": FAILED,
    "dead": FAILED,
}


@contextmanager
def _docker_errors(what: str) -> Iterator[None]:
    try:
        yield
    except NotFound as e:
        raise NotFoundError(f"failed to {what}: {e}") from e
    except DockerException as e:
        raise ExecutionError(f"failed to {what}: {e}") from e


class DockerProvider(ContainerProvider, DaprProvider, ContainerHealthChecker, DaprSidecarInjector):
    """Self-managed platform on a local Docker daemon.

    Application containers publish their port on ``host``; the Dapr sidecar
    joins the application's network namespace, so the application container
    also publishes the sidecar's HTTP port. There is no revision support.
    """

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        *,
        network: str = "international-center-dev",
        host: str = "localhost",
        dapr_image: str = "daprio/daprd:latest",
        environment: str = "development",
        health_checker: UnifiedHealthChecker | None = None,
        dapr_manager: UnifiedDaprSidecarManager | None = None,
        poll_interval_s: float = 2.0,
    ):
        self._client = client
        self.network = network
        self.host = host
        self.dapr_image = dapr_image
        self.health_checker = health_checker or UnifiedHealthChecker(interval_s=poll_interval_s)
        self.dapr_manager = dapr_manager or UnifiedDaprSidecarManager(environment, self.health_checker)
        self.poll_interval_s = poll_interval_s

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            with _docker_errors("connect to docker"):
                self._client = docker.from_env()
        return self._client

    def docker_available(self) -> bool:
        try:
            self.client.ping()
            return True
        except (DockerException, CwoError):
            return False

    def ensure_network(self) -> None:
        try:
            with _docker_errors(f"inspect network {self.network}"):
                self.client.networks.get(self.network)
        except NotFoundError:
            with _docker_errors(f"create network {self.network}"):
                self.client.networks.create(self.network, driver="bridge")

    def _get(self, name: str) -> Any | None:
        try:
            with _docker_errors(f"inspect container {name}"):
                cont = self.client.containers.get(name)
                cont.reload()
        except NotFoundError:
            return None
        return cont

    def _remove_if_exists(self, name: str) -> None:
        cont = self._get(name)
        if cont is not None:
            with _docker_errors(f"remove container {name}"):
                cont.remove(force=True)

    def _managed(self, app: str | None = None) -> list[Any]:
        labels = [f"{LABEL_MANAGED}=true"]
        if app:
            labels.append(f"{LABEL_APP}={app}")
        with _docker_errors("list containers"):
            return self.client.containers.list(all=True, filters={"label": labels})

    # --- ContainerProvider ------------------------------------------------

    def deploy_container(self, spec: ContainerSpec, ctx: Context | None = None) -> None:
        """Create and start the application container, replacing any previous one.

        Containers are labelled so they can be re-discovered after restarts.
        """
        spec.validate()
        ensure(ctx).check()
        self.ensure_network()
        self._remove_if_exists(spec.name)

        ports: dict[str, int] = {f"{spec.port}/tcp": spec.port}
        if spec.dapr_enabled and spec.dapr_port:
            ports[f"{spec.dapr_port}/tcp"] = spec.dapr_port
        labels = {
            LABEL_MANAGED: "true",
            LABEL_APP: spec.name,
            LABEL_PORT: str(spec.port),
            LABEL_HEALTH_PATH: spec.health_path,
        }
        with _docker_errors(f"start container {spec.name}"):
            self.client.containers.run(
                spec.image,
                command=spec.command or None,
                detach=True,
                name=spec.name,
                environment=dict(spec.environment),
                network=self.network,
                ports=ports,
                labels=labels,
                restart_policy={"Name": "no"},
            )

    def stop_container(self, name: str, ctx: Context | None = None) -> None:
        ensure(ctx).check()
        cont = self._get(name)
        if cont is None:
            raise NotFoundError(f"container {name} not found")
        # sidecars share the app's network namespace; stop them first
        for other in self._managed(app=name):
            if other.name != name:
                with _docker_errors(f"stop container {other.name}"):
                    other.stop()
        with _docker_errors(f"stop container {name}"):
            cont.stop()

    def wait_for_container_health(self, name: str, timeout_s: float, ctx: Context | None = None) -> None:
        self.health_checker.wait_for_container_health(
            name, self, timeout_s, interval_s=self.poll_interval_s, ctx=ctx
        )

    def get_container_logs(self, name: str, lines: int = 100, ctx: Context | None = None) -> str:
        ensure(ctx).check()
        cont = self._get(name)
        if cont is None:
            raise NotFoundError(f"container {name} not found")
        with _docker_errors(f"get logs for {name}"):
            raw = cont.logs(tail=int(lines))
        return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)

    def is_container_running(self, name: str, ctx: Context | None = None) -> bool:
        cont = self._get(name)
        return cont is not None and cont.status == "running"

    def pull_image(self, image: str, ctx: Context | None = None) -> None:
        ensure(ctx).check()
        with _docker_errors(f"pull image {image}"):
            self.client.images.pull(image)

    def initialize(self, ctx: Context | None = None) -> None:
        ensure(ctx).check()
        if not self.docker_available():
            raise ExecutionError("Docker is not available. Start the docker daemon and try again.")
        self.ensure_network()

    def cleanup(self, ctx: Context | None = None) -> None:
        ctx = ensure(ctx)
        for cont in self._managed():
            ctx.check()
            try:
                cont.remove(force=True)
            except DockerException:
                continue
        try:
            self.client.networks.get(self.network).remove()
        except NotFound:
            return
        except DockerException as e:
            raise ExecutionError(f"failed to remove network {self.network}: {e}") from e

    def list_containers(self, ctx: Context | None = None) -> list[str]:
        return sorted(c.name for c in self._managed() if c.labels.get(LABEL_SIDECAR) != "true")

    # --- ContainerHealthChecker -------------------------------------------

    def check_container_status(self, name: str, ctx: Context | None = None) -> str:
        cont = self._get(name)
        if cont is None:
            return UNKNOWN
        if cont.status == "running":
            health = ((cont.attrs.get("State") or {}).get("Health") or {}).get("Status")
            if health == "unhealthy":
                return FAILED
            if health == "starting":
                return PROVISIONING
            return SUCCEEDED
        return _STATUS_MAP.get(cont.status, UNKNOWN)

    def get_container_endpoint(self, name: str, ctx: Context | None = None) -> str:
        cont = self._get(name)
        if cont is None:
            return ""
        port = cont.labels.get(LABEL_PORT)
        if not port:
            return ""
        return f"http://{self.host}:{int(port)}{cont.labels.get(LABEL_HEALTH_PATH) or '/health'}"

    # --- DaprProvider -----------------------------------------------------

    def deploy_dapr_sidecar(self, spec: ContainerSpec, ctx: Context | None = None) -> None:
        config = self.dapr_manager.enrich_container_spec(spec)
        self.inject_sidecar(spec, config, ctx=ctx)

    def validate_dapr_configuration(self, app_id: str, ctx: Context | None = None) -> None:
        validate_app_id(app_id)
        cont = self._get(self.get_sidecar_name(app_id))
        if cont is None:
            raise ValidationError(f"no Dapr sidecar found for {app_id}")
        if cont.status != "running":
            raise ValidationError(f"Dapr sidecar for {app_id} is {cont.status}")

    def get_dapr_health(self, app_id: str, ctx: Context | None = None) -> None:
        cont = self._get(self.get_sidecar_name(app_id))
        port = cont.labels.get(LABEL_DAPR_PORT) if cont is not None else None
        endpoint = f"http://{self.host}:{int(port)}" if port else ""
        self.health_checker.validate_dapr_health(app_id, endpoint, ctx=ctx)

    # --- DaprSidecarInjector ----------------------------------------------

    def inject_sidecar(self, spec: ContainerSpec, config: DaprSidecarConfig, ctx: Context | None = None) -> None:
        self.validate_sidecar_config(config)
        ensure(ctx).check()
        if self._get(spec.name) is None:
            raise NotFoundError(f"container {spec.name} must be running before its sidecar is attached")
        name = self.get_sidecar_name(config.app_id)
        self._remove_if_exists(name)
        labels = {
            LABEL_MANAGED: "true",
            LABEL_APP: spec.name,
            LABEL_SIDECAR: "true",
            LABEL_DAPR_PORT: str(config.http_port),
        }
        with _docker_errors(f"start Dapr sidecar {name}"):
            self.client.containers.run(
                self.dapr_image,
                command=self.dapr_manager.build_dapr_command(config),
                detach=True,
                name=name,
                network_mode=f"container:{spec.name}",
                labels=labels,
                restart_policy={"Name": "no"},
            )

    def validate_sidecar_config(self, config: DaprSidecarConfig) -> None:
        validate_sidecar_config(config)

    def get_sidecar_name(self, app_id: str) -> str:
        return sidecar_name(app_id)
