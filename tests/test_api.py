import time

import pytest
from fastapi.testclient import TestClient

from cwo.api import create_app, status_for
from cwo.db import EventLog
from cwo.docker_ops import DockerProvider
from cwo.errors import (
    ExecutionError,
    HealthTimeoutError,
    NotFoundError,
    RolloutError,
    RolloutInProgressError,
    ValidationError,
)
from cwo.rollouts import DeploymentOrchestrator


@pytest.fixture
def events(tmp_path):
    return EventLog(str(tmp_path / "api.db"))


@pytest.fixture
def orch(provider, events):
    return DeploymentOrchestrator(provider, events=events, health_timeout_s=5, revision_timeout_s=5)


@pytest.fixture
def client(orch, events):
    return TestClient(create_app(orchestrator=orch, events=events))


def test_health_lists_capabilities(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["provider"] == "ContainerAppsProvider"
    assert "revisions" in body["capabilities"]


def test_deploy_runs_in_background(client, control_plane):
    payload = {"name": "content-events", "image": "ev:1", "port": 3002, "dapr_app_id": "content-events"}
    r = client.post("/apps", json=payload)
    assert r.status_code == 202
    assert control_plane.called("create_application")[0][0] == "content-events"
    assert client.get("/apps").json() == ["content-events"]

    events = client.get("/events", params={"app_name": "content-events"}).json()
    assert events[0]["message"] == "deployed"


def test_invalid_deploy_is_400(client, control_plane):
    r = client.post("/apps", json={"name": "x", "image": "x:1", "port": 80, "dapr_enabled": True})
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"
    assert control_plane.calls == []


def test_schema_errors_are_422(client):
    assert client.post("/apps", json={"name": "x", "image": "x:1", "port": 0}).status_code == 422


def test_rollout_lifecycle(client, control_plane):
    control_plane.add_app("content-news", fqdn="content-news.example.test")
    control_plane.add_revision("content-news", "content-news--old", weight=100)

    r = client.post(
        "/apps/content-news/rollout",
        json={"image": "news:2", "port": 3001, "dapr_app_id": "content-news", "canary_weight": 50, "auto": False},
    )
    assert r.status_code == 202
    rollout_id = r.json()["rollout_id"]
    assert r.json()["steps"] == [50, 75, 100]

    again = client.post("/apps/content-news/rollout", json={"image": "news:3", "port": 3001, "dapr_app_id": "content-news"})
    assert again.status_code == 409

    deadline = time.monotonic() + 5
    while client.get(f"/rollouts/{rollout_id}").json()["state"] != "paused":
        assert time.monotonic() < deadline
        time.sleep(0.01)

    assert client.post(f"/rollouts/{rollout_id}/continue").json()["weight"] == 75
    assert client.post(f"/rollouts/{rollout_id}/cancel").json()["state"] == "cancelled"
    assert [st["id"] for st in client.get("/rollouts").json()] == [rollout_id]

    revisions = client.get("/apps/content-news/revisions").json()
    assert {r["name"] for r in revisions} == {"content-news--old", "content-news--1700000000"}


def test_rollout_revision_keeps_scale_and_resources(client, control_plane):
    control_plane.add_app("content-news", fqdn="content-news.example.test")
    control_plane.add_revision("content-news", "content-news--old", weight=100)

    r = client.post(
        "/apps/content-news/rollout",
        json={
            "image": "news:2",
            "port": 3001,
            "dapr_app_id": "content-news",
            "command": ["./news", "--serve"],
            "resources": {"cpu": "2", "memory": "4Gi"},
            "platform": {"min_replicas": 3, "max_replicas": 50},
            "auto": False,
        },
    )
    assert r.status_code == 202
    rollout_id = r.json()["rollout_id"]

    deadline = time.monotonic() + 5
    while client.get(f"/rollouts/{rollout_id}").json()["state"] != "paused":
        assert time.monotonic() < deadline
        time.sleep(0.01)
    client.post(f"/rollouts/{rollout_id}/cancel")

    template = control_plane.called("create_revision")[0][1]["properties"]["template"]
    assert template["scale"]["minReplicas"] == 3
    assert template["scale"]["maxReplicas"] == 50
    assert template["containers"][0]["resources"] == {"cpu": "2", "memory": "4Gi"}
    assert template["containers"][0]["command"] == ["./news", "--serve"]


def test_unknown_rollout_is_404(client):
    assert client.get("/rollouts/nope").status_code == 404
    assert client.post("/rollouts/nope/continue").status_code == 404
    assert client.post("/rollouts/nope/cancel").status_code == 404


def test_traffic_endpoint(client, control_plane):
    control_plane.add_revision("content-news", "content-news--a", weight=100)
    control_plane.add_revision("content-news", "content-news--b", weight=0)
    r = client.post("/apps/content-news/traffic", json={"revision": "content-news--b", "weight": 0})
    assert r.status_code == 200
    assert r.json()["traffic"] == [
        {"revisionName": "content-news--b", "weight": 0},
        {"revisionName": "content-news--a", "weight": 100},
    ]


def test_traffic_without_revision_support_is_400(docker_client, events):
    client = TestClient(create_app(orchestrator=DeploymentOrchestrator(DockerProvider(docker_client)), events=events))
    r = client.post("/apps/a/traffic", json={"revision": "a--1", "weight": 10})
    assert r.status_code == 400


def test_stop_and_logs_errors(client, control_plane):
    assert client.post("/apps/ghost/stop").status_code == 404
    assert client.get("/apps/ghost/logs").status_code == 502

    control_plane.add_app("a")
    control_plane.logs["a"] = "ready\n"
    assert client.post("/apps/a/stop").json() == {"ok": True}
    assert client.get("/apps/a/logs", params={"lines": 5}).json()["logs"] == "ready\n"


@pytest.mark.parametrize(
    "exc,code",
    [
        (ValidationError("bad"), 400),
        (NotFoundError("gone"), 404),
        (RolloutInProgressError("a", "1"), 409),
        (HealthTimeoutError("x", 1), 504),
        (ExecutionError("az failed"), 502),
        (RolloutError("a", "deploy", ValidationError("bad")), 400),
        (RolloutError("a", "health-wait", HealthTimeoutError("x", 1)), 504),
    ],
)
def test_status_mapping(exc, code):
    assert status_for(exc) == code
