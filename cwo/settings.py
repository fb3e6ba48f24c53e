from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Platform selection: "container-apps" (managed) or "docker" (self-managed)
    platform: str = os.getenv("CWO_PLATFORM", "container-apps")
    environment: str = os.getenv("CWO_ENVIRONMENT", "staging")

    # Managed platform control plane
    resource_group: str = os.getenv("CWO_RESOURCE_GROUP", "international-center-rg")
    container_environment: str = os.getenv("CWO_CONTAINER_ENVIRONMENT", "international-center-env")
    az_command: str = os.getenv("CWO_AZ_COMMAND", "az")

    # Health gating
    app_poll_interval_s: float = _env_float("CWO_APP_POLL_INTERVAL_S", 15.0)
    revision_poll_interval_s: float = _env_float("CWO_REVISION_POLL_INTERVAL_S", 30.0)
    health_timeout_s: float = _env_float("CWO_HEALTH_TIMEOUT_S", 300.0)
    revision_timeout_s: float = _env_float("CWO_REVISION_TIMEOUT_S", 600.0)
    probe_timeout_s: float = _env_float("CWO_PROBE_TIMEOUT_S", 10.0)

    # Self-managed platform
    docker_network: str = os.getenv("CWO_DOCKER_NETWORK", "international-center-dev")
    docker_host: str = os.getenv("CWO_DOCKER_HOST", "localhost")
    dapr_image: str = os.getenv("CWO_DAPR_IMAGE", "daprio/daprd:latest")

    # Orchestrator
    max_parallel_deploys: int = _env_int("CWO_MAX_PARALLEL_DEPLOYS", 4)
    db_path: str = os.getenv("CWO_DB_PATH", "cwo.db")
    enable_journal: bool = _env_bool("CWO_ENABLE_JOURNAL", True)

    # CLI
    api_url: str = os.getenv("CWO_API_URL", "http://localhost:8000")


settings = Settings()
