from __future__ import annotations

from typing import Any

import httpx
import pytest
from docker.errors import APIError, NotFound

from cwo.container_apps import ContainerAppsProvider
from cwo.control_plane import ControlPlaneClient
from cwo.errors import ExecutionError, NotFoundError
from cwo.health import UnifiedHealthChecker
from cwo.models import ContainerSpec, Revision, TrafficWeight
from cwo.traffic import RevisionNamer

FAST = 0.01


class FakeControlPlane(ControlPlaneClient):
    """In-memory control plane.

    ``app_states`` / ``revision_states`` hold scripted provisioning states:
    each query consumes the head of the list, the last one sticks.
    """

    def __init__(self) -> None:
        self.apps: dict[str, dict[str, Any]] = {}
        self.app_states: dict[str, list[str]] = {}
        self.revisions: dict[str, list[Revision]] = {}
        self.revision_states: dict[tuple[str, str], list[str]] = {}
        self.traffic: dict[str, list[TrafficWeight]] = {}
        self.logs: dict[str, str] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.environment_exists = True

    # helpers for tests

    def add_app(self, name: str, *, fqdn: str = "", dapr: bool = True, states: list[str] | None = None) -> None:
        self.apps[name] = {
            "name": name,
            "properties": {
                "configuration": {"ingress": {"fqdn": fqdn}, "dapr": {"enabled": dapr}},
            },
        }
        self.app_states[name] = list(states or ["Succeeded"])

    def add_revision(self, app: str, name: str, *, active: bool = True, weight: int = 0) -> None:
        self.revisions.setdefault(app, []).append(Revision(name=name, active=active, traffic_weight=weight))

    def fail(self, method: str, name: str, exc: Exception) -> None:
        self.failures[(method, name)] = exc

    def called(self, method: str) -> list[tuple[Any, ...]]:
        return [args for m, args in self.calls if m == method]

    def _record(self, method: str, name: str, *args: Any) -> None:
        self.calls.append((method, (name, *args)))
        exc = self.failures.get((method, name))
        if exc is not None:
            raise exc

    @staticmethod
    def _next(states: list[str]) -> str:
        return states.pop(0) if len(states) > 1 else states[0]

    # ControlPlaneClient

    def create_application(self, name, descriptor, ctx=None):
        self._record("create_application", name, descriptor)
        if name not in self.apps:
            self.add_app(name, fqdn=f"{name}.example.test")

    def create_revision(self, name, descriptor, suffix, ctx=None):
        self._record("create_revision", name, descriptor, suffix)
        rev = f"{name}--{suffix}"
        self.add_revision(name, rev, active=True)
        self.revision_states.setdefault((name, rev), ["Succeeded"])

    def update_replicas(self, name, min_replicas, max_replicas, ctx=None):
        self._record("update_replicas", name, min_replicas, max_replicas)
        if name not in self.apps:
            raise NotFoundError(f"container app {name} not found")

    def show_application(self, name, ctx=None):
        self._record("show_application", name)
        if name not in self.apps:
            raise NotFoundError(f"container app {name} not found")
        doc = self.apps[name]
        doc["properties"]["provisioningState"] = self._next(self.app_states[name])
        return doc

    def show_environment(self, ctx=None):
        self._record("show_environment", "")
        if not self.environment_exists:
            raise NotFoundError("environment not found")
        return {"name": "env"}

    def list_applications(self, ctx=None):
        self._record("list_applications", "")
        return sorted(self.apps)

    def list_revisions(self, app, ctx=None):
        self._record("list_revisions", app)
        return list(self.revisions.get(app, []))

    def show_revision(self, app, revision, ctx=None):
        self._record("show_revision", app, revision)
        states = self.revision_states.get((app, revision))
        if states is None:
            raise NotFoundError(f"revision {revision} not found")
        return {"name": revision, "properties": {"provisioningState": self._next(states)}}

    def set_traffic(self, app, weights, ctx=None):
        self._record("set_traffic", app, list(weights))
        self.traffic[app] = list(weights)

    def deactivate_revision(self, app, revision, ctx=None):
        self._record("deactivate_revision", app, revision)
        self.revisions[app] = [
            Revision(r.name, r.created_time, False, r.traffic_weight) if r.name == revision else r
            for r in self.revisions.get(app, [])
        ]

    def show_logs(self, app, tail, ctx=None):
        self._record("show_logs", app, tail)
        if app not in self.apps:
            raise ExecutionError(f"failed to get logs for {app}")
        return self.logs.get(app, "")


class SteppingClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def ok_transport(status: int = 200) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status, json={"status": "ok"}))


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def checker() -> UnifiedHealthChecker:
    return UnifiedHealthChecker(interval_s=FAST, transport=ok_transport())


@pytest.fixture
def provider(control_plane, checker) -> ContainerAppsProvider:
    return ContainerAppsProvider(
        control_plane,
        environment="staging",
        health_checker=checker,
        app_poll_interval_s=FAST,
        revision_poll_interval_s=FAST,
        namer=RevisionNamer(clock=SteppingClock()),
    )


@pytest.fixture
def spec() -> ContainerSpec:
    return ContainerSpec(name="content-news", image="registry.example/content-news:2", port=3001, dapr_app_id="content-news")


# --- docker ---------------------------------------------------------------


class FakeContainer:
    def __init__(self, client: "FakeDockerClient", name: str, image: str, **kwargs: Any):
        self.client = client
        self.name = name
        self.id = f"id-{name}"
        self.image = image
        self.kwargs = kwargs
        self.labels: dict[str, str] = dict(kwargs.get("labels") or {})
        self.status = "running"
        self.health: str | None = None
        self.log_output = b""
        self.stopped = False

    @property
    def attrs(self) -> dict[str, Any]:
        state: dict[str, Any] = {"Status": self.status}
        if self.health:
            state["Health"] = {"Status": self.health}
        return {"State": state}

    def reload(self) -> None:
        if self.name not in self.client.containers.items:
            raise NotFound(f"No such container: {self.name}")

    def stop(self) -> None:
        self.stopped = True
        self.status = "exited"

    def remove(self, force: bool = False) -> None:
        if self.name in self.client.containers.broken:
            raise APIError(f"cannot remove {self.name}")
        self.client.containers.items.pop(self.name, None)

    def logs(self, tail: int = 100) -> bytes:
        return self.log_output


class FakeContainers:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client
        self.items: dict[str, FakeContainer] = {}
        self.broken: set[str] = set()
        self.runs: list[FakeContainer] = []
        # raised, in order, by the next get() calls
        self.get_errors: list[Exception] = []

    def run(self, image: str, **kwargs: Any) -> FakeContainer:
        name = kwargs.pop("name")
        cont = FakeContainer(self.client, name, image, **kwargs)
        self.items[cont.name] = cont
        self.runs.append(cont)
        return cont

    def get(self, name: str) -> FakeContainer:
        if self.get_errors:
            raise self.get_errors.pop(0)
        try:
            return self.items[name]
        except KeyError:
            raise NotFound(f"No such container: {name}")

    def list(self, filters: dict[str, Any] | None = None, **kwargs: Any) -> list[FakeContainer]:
        wanted = [tuple(f.split("=", 1)) for f in (filters or {}).get("label", [])]
        return [c for c in self.items.values() if all(c.labels.get(k) == v for k, v in wanted)]


class FakeNetwork:
    def __init__(self, networks: "FakeNetworks", name: str):
        self.networks = networks
        self.name = name

    def remove(self) -> None:
        self.networks.items.pop(self.name, None)


class FakeNetworks:
    def __init__(self) -> None:
        self.items: dict[str, FakeNetwork] = {}

    def get(self, name: str) -> FakeNetwork:
        try:
            return self.items[name]
        except KeyError:
            raise NotFound(f"network {name} not found")

    def create(self, name: str, driver: str = "bridge") -> FakeNetwork:
        self.items[name] = FakeNetwork(self, name)
        return self.items[name]


class FakeImages:
    def __init__(self) -> None:
        self.pulled: list[str] = []

    def pull(self, image: str) -> None:
        self.pulled.append(image)


class FakeDockerClient:
    def __init__(self) -> None:
        self.containers = FakeContainers(self)
        self.networks = FakeNetworks()
        self.images = FakeImages()

    def ping(self) -> bool:
        return True


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()
