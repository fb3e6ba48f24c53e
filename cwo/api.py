from __future__ import annotations

from typing import Any

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api_models import DeployRequest, RolloutRequest, TrafficRequest
from .container_apps import ContainerAppsProvider
from .control_plane import AzureCliControlPlane
from .db import EventLog, NullEventLog
from .docker_ops import DockerProvider
from .errors import (
    CwoError,
    DeadlineExceededError,
    NotFoundError,
    RolloutError,
    RolloutInProgressError,
    ValidationError,
)
from .health import UnifiedHealthChecker
from .interfaces import ContainerProvider, capabilities
from .models import ContainerSpec
from .rollouts import DeploymentOrchestrator, RolloutPlan
from .settings import Settings, settings


def build_provider(cfg: Settings = settings) -> ContainerProvider:
    if cfg.platform == "docker":
        return DockerProvider(
            network=cfg.docker_network,
            host=cfg.docker_host,
            dapr_image=cfg.dapr_image,
            environment=cfg.environment,
            health_checker=UnifiedHealthChecker(probe_timeout_s=cfg.probe_timeout_s),
        )
    if cfg.platform == "container-apps":
        control_plane = AzureCliControlPlane(
            cfg.resource_group, cfg.container_environment, base_command=cfg.az_command.split()
        )
        return ContainerAppsProvider(
            control_plane,
            environment=cfg.environment,
            health_checker=UnifiedHealthChecker(interval_s=cfg.app_poll_interval_s, probe_timeout_s=cfg.probe_timeout_s),
            app_poll_interval_s=cfg.app_poll_interval_s,
            revision_poll_interval_s=cfg.revision_poll_interval_s,
        )
    raise ValidationError(f"unknown platform {cfg.platform!r}")


def build_orchestrator(cfg: Settings = settings, events: EventLog | None = None) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        build_provider(cfg),
        events=events,
        health_timeout_s=cfg.health_timeout_s,
        revision_timeout_s=cfg.revision_timeout_s,
        max_workers=cfg.max_parallel_deploys,
    )


def status_for(exc: BaseException) -> int:
    if isinstance(exc, RolloutError):
        return status_for(exc.cause)
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, RolloutInProgressError):
        return 409
    if isinstance(exc, DeadlineExceededError):
        return 504
    return 502


def create_app(orchestrator: DeploymentOrchestrator | None = None, events: EventLog | None = None) -> FastAPI:
    if events is None:
        events = EventLog(settings.db_path) if settings.enable_journal else NullEventLog()
    events.init()
    if orchestrator is None:
        orchestrator = build_orchestrator(settings, events)

    app = FastAPI(title="Container Workload Orchestrator", version=__version__)
    app.state.orchestrator = orchestrator
    app.state.events = events

    @app.exception_handler(CwoError)
    async def cwo_error_handler(request: Request, exc: CwoError) -> JSONResponse:
        return JSONResponse(status_code=status_for(exc), content={"detail": str(exc), "error": type(exc).__name__})

    def _deploy_in_background(spec: ContainerSpec) -> None:
        try:
            orchestrator.deploy(spec)
        except CwoError:
            # journaled by the orchestrator
            return

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "provider": type(orchestrator.provider).__name__,
            "capabilities": sorted(capabilities(orchestrator.provider)),
        }

    @app.get("/apps")
    def list_apps() -> list[str]:
        return orchestrator.list_apps()

    @app.post("/apps", status_code=202)
    def deploy_app(req: DeployRequest, background: BackgroundTasks) -> dict[str, Any]:
        spec = req.to_spec()
        # reject bad specs before anything runs
        spec.validate()
        background.add_task(_deploy_in_background, spec)
        return {"ok": True, "name": spec.name, "message": "deployment started"}

    @app.get("/apps/{name}/revisions")
    def list_revisions(name: str) -> list[dict[str, Any]]:
        return [r.to_json() for r in orchestrator.revisions(name)]

    @app.post("/apps/{name}/rollout", status_code=202)
    def start_rollout(name: str, req: RolloutRequest) -> dict[str, Any]:
        spec = req.build_spec(name)
        spec.validate()
        plan = RolloutPlan(
            app=name,
            canary_weight=req.canary_weight,
            step_percent=req.step_percent,
            step_interval_s=req.step_interval_s,
            auto=req.auto,
        )
        rollout_id = orchestrator.start_rollout(spec, plan)
        return {"ok": True, "rollout_id": rollout_id, "steps": plan.steps}

    @app.post("/apps/{name}/traffic")
    def set_traffic(name: str, req: TrafficRequest) -> dict[str, Any]:
        table = orchestrator.set_traffic(name, req.revision, req.weight)
        return {"ok": True, "traffic": [w.to_json() for w in table]}

    @app.post("/apps/{name}/stop")
    def stop_app(name: str) -> dict[str, Any]:
        orchestrator.stop(name)
        return {"ok": True}

    @app.get("/apps/{name}/logs")
    def app_logs(name: str, lines: int = 100) -> dict[str, Any]:
        return {"name": name, "logs": orchestrator.logs(name, max(1, min(lines, 5000)))}

    @app.get("/rollouts")
    def list_rollouts() -> list[dict[str, Any]]:
        return [st.to_dict() for st in orchestrator.list_rollouts()]

    @app.get("/rollouts/{rollout_id}")
    def get_rollout(rollout_id: str) -> dict[str, Any]:
        try:
            return orchestrator.get_rollout(rollout_id).to_dict()
        except KeyError:
            raise HTTPException(status_code=404, detail="rollout not found")

    @app.post("/rollouts/{rollout_id}/continue")
    def continue_rollout(rollout_id: str) -> dict[str, Any]:
        try:
            return orchestrator.continue_rollout(rollout_id).to_dict()
        except KeyError:
            raise HTTPException(status_code=404, detail="rollout not found")

    @app.post("/rollouts/{rollout_id}/cancel")
    def cancel_rollout(rollout_id: str) -> dict[str, Any]:
        try:
            return orchestrator.cancel_rollout(rollout_id).to_dict()
        except KeyError:
            raise HTTPException(status_code=404, detail="rollout not found")

    @app.get("/events")
    def latest_events(limit: int = 100, app_name: str | None = None) -> list[dict[str, Any]]:
        return events.latest(max(1, min(limit, 1000)), app=app_name)

    return app
