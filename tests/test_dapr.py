import pytest

from cwo.dapr import (
    UnifiedDaprSidecarManager,
    dapr_grpc_port,
    dapr_http_port,
    sidecar_name,
    validate_app_id,
    validate_sidecar_config,
)
from cwo.errors import ValidationError
from cwo.models import ContainerSpec, DaprSidecarConfig


@pytest.mark.parametrize(
    "app_port,http_port",
    [(9001, 50001), (3001, 50011), (3102, 50022), (3200, 50030), (8080, 50180)],
)
def test_sidecar_ports_follow_app_port(app_port, http_port):
    assert dapr_http_port(app_port) == http_port
    assert dapr_grpc_port(app_port) == http_port + 10000


def test_sidecar_name_is_deterministic():
    assert sidecar_name("content-news") == sidecar_name("content-news") == "content-news-dapr"
    assert sidecar_name("content-news", separator="--") == "content-news--dapr"


@pytest.mark.parametrize("bad", ["", "-leading", "trailing-", "under_score", "x" * 61])
def test_invalid_app_ids(bad):
    with pytest.raises(ValidationError):
        validate_app_id(bad)


def test_sidecar_config_validation():
    validate_sidecar_config(DaprSidecarConfig(app_id="a", app_port=80))
    with pytest.raises(ValidationError):
        validate_sidecar_config(DaprSidecarConfig(app_id="", app_port=80))
    with pytest.raises(ValidationError):
        validate_sidecar_config(DaprSidecarConfig(app_id="a", app_port=0))


def test_enrich_fills_ports_and_environment():
    spec = ContainerSpec(name="public-gateway", image="gw:1", port=9001, dapr_app_id="public-gateway")
    spec.dapr_config["components_path"] = "/custom"
    config = UnifiedDaprSidecarManager("production").enrich_container_spec(spec)

    assert spec.dapr_port == 50001
    assert spec.environment["DAPR_HTTP_PORT"] == "50001"
    assert spec.environment["DAPR_GRPC_PORT"] == "60001"
    assert spec.dapr_config["log_level"] == "warn"
    assert spec.dapr_config["max_concurrency"] == 1000
    assert config.extra == {"components_path": "/custom"}
    assert config.placement_host_address.endswith(":50005")


def test_enrich_keeps_explicit_dapr_port():
    spec = ContainerSpec(name="a", image="a:1", port=3001, dapr_app_id="a", dapr_port=3500)
    config = UnifiedDaprSidecarManager().enrich_container_spec(spec)
    assert config.http_port == 3500
    assert spec.environment["DAPR_HTTP_PORT"] == "3500"


def test_enrich_rejects_missing_app_id_before_touching_spec():
    spec = ContainerSpec(name="a", image="a:1", port=3001)
    with pytest.raises(ValidationError):
        UnifiedDaprSidecarManager().enrich_container_spec(spec)
    assert spec.environment == {}
    assert spec.dapr_port == 0


def test_development_defaults_enable_profiling():
    mgr = UnifiedDaprSidecarManager("development")
    config = mgr.build_default_config("a", 3001)
    assert config.log_level == "debug"
    assert config.enable_profiling
    assert config.placement_host_address == "localhost:50005"
    cmd = mgr.build_dapr_command(config)
    assert cmd[0] == "./daprd"
    assert "--app-id=a" in cmd
    assert "--enable-profiling" in cmd
    assert "--resources-path=/components" in cmd


def test_unknown_environment_uses_fallback_defaults():
    config = UnifiedDaprSidecarManager("qa").build_default_config("a", 3001)
    assert config.log_level == "info"
    assert config.max_concurrency == 100


def test_wait_for_sidecar_ready_needs_a_health_checker():
    class InjectorOnly:
        def get_sidecar_name(self, app_id):
            return app_id

    with pytest.raises(ValidationError):
        UnifiedDaprSidecarManager().wait_for_sidecar_ready("a", InjectorOnly(), timeout_s=1)


def test_dapr_endpoint_per_environment():
    assert UnifiedDaprSidecarManager("development").get_dapr_endpoint("a", 50011) == "http://localhost:50011"
    assert UnifiedDaprSidecarManager("staging").get_dapr_endpoint("a", 50011).startswith("https://a-staging.")
