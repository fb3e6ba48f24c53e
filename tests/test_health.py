import threading
import time

import httpx
import pytest

from cwo.context import Context
from cwo.errors import (
    ContextCancelledError,
    DeadlineExceededError,
    ExecutionError,
    HealthCheckError,
    HealthTimeoutError,
)
from cwo.health import UnifiedHealthChecker, probe_http
from cwo.interfaces import ContainerHealthChecker
from cwo.models import HealthProbeResult

from conftest import FAST, ok_transport


class ScriptedChecker(ContainerHealthChecker):
    def __init__(self, states, endpoint=""):
        self.states = list(states)
        self.endpoint = endpoint
        self.status_calls = 0

    def check_container_status(self, name, ctx=None):
        self.status_calls += 1
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        if isinstance(state, Exception):
            raise state
        return state

    def get_container_endpoint(self, name, ctx=None):
        return self.endpoint


def test_poll_stops_on_third_query_when_succeeded():
    hc = UnifiedHealthChecker(interval_s=FAST)
    scripted = ScriptedChecker(["Provisioning", "Provisioning", "Succeeded"])
    hc.wait_for_container_health("content-news", scripted, timeout_s=5, probe=False)
    assert scripted.status_calls == 3


def test_poll_fails_on_second_query():
    hc = UnifiedHealthChecker(interval_s=FAST)
    scripted = ScriptedChecker(["Provisioning", "Failed"])
    with pytest.raises(HealthCheckError):
        hc.wait_for_container_health("content-news", scripted, timeout_s=5, probe=False)
    assert scripted.status_calls == 2


def test_poll_waits_an_interval_before_first_query():
    hc = UnifiedHealthChecker(interval_s=0.05)
    calls = []
    t0 = time.monotonic()
    hc.poll(lambda ctx: calls.append(time.monotonic()) or "Succeeded", subject="x", timeout_s=5)
    assert calls[0] - t0 >= 0.05


def test_timeout_is_not_reported_early():
    hc = UnifiedHealthChecker(interval_s=0.02)
    t0 = time.monotonic()
    with pytest.raises(HealthTimeoutError) as exc:
        hc.poll(lambda ctx: "Provisioning", subject="revision r1", timeout_s=0.1)
    assert time.monotonic() - t0 >= 0.1
    assert exc.value.last_state == "Provisioning"
    assert "revision r1" in str(exc.value)


def test_query_errors_are_transient():
    hc = UnifiedHealthChecker(interval_s=FAST)
    scripted = ScriptedChecker([ExecutionError("az exploded"), "Succeeded"])
    hc.wait_for_container_health("x", scripted, timeout_s=5, probe=False)
    assert scripted.status_calls == 2


def test_cancel_interrupts_polling():
    hc = UnifiedHealthChecker(interval_s=10)
    ctx = Context.background()
    threading.Timer(0.05, ctx.cancel).start()
    t0 = time.monotonic()
    with pytest.raises(ContextCancelledError):
        hc.poll(lambda c: "Provisioning", subject="x", timeout_s=60, ctx=ctx)
    assert time.monotonic() - t0 < 5


def test_probe_after_success_uses_endpoint():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200)

    hc = UnifiedHealthChecker(interval_s=FAST, transport=httpx.MockTransport(handler))
    scripted = ScriptedChecker(["Succeeded"], endpoint="https://app.example.test/health")
    hc.wait_for_container_health("app", scripted, timeout_s=5)
    assert seen == ["https://app.example.test/health"]


def test_probe_failure_after_success_is_a_health_error():
    hc = UnifiedHealthChecker(interval_s=FAST, transport=ok_transport(503))
    scripted = ScriptedChecker(["Succeeded"], endpoint="https://app.example.test/health")
    with pytest.raises(HealthCheckError, match="HTTP 503"):
        hc.wait_for_container_health("app", scripted, timeout_s=5)
    assert scripted.status_calls == 1


def test_no_endpoint_counts_as_healthy():
    def handler(request):
        raise AssertionError("no probe expected")

    hc = UnifiedHealthChecker(interval_s=FAST, transport=httpx.MockTransport(handler))
    hc.wait_for_container_health("worker", ScriptedChecker(["Succeeded"]), timeout_s=5)


def test_probe_http_connect_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        ok, msg, latency = probe_http("http://nowhere/health", client=client)
    assert not ok
    assert msg == "No response"
    assert latency is not None


def test_validate_dapr_health_hits_healthz():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(204)

    hc = UnifiedHealthChecker(transport=httpx.MockTransport(handler))
    hc.validate_dapr_health("content-news", "http://localhost:50011/")
    assert seen == ["/v1.0/healthz"]


def test_validate_dapr_health_requires_endpoint():
    with pytest.raises(HealthCheckError):
        UnifiedHealthChecker().validate_dapr_health("content-news", "")


def test_check_multiple_and_summary():
    hc = UnifiedHealthChecker(transport=ok_transport())

    class Mixed(ContainerHealthChecker):
        def check_container_status(self, name, ctx=None):
            if name == "broken":
                raise ExecutionError("boom")
            return "Failed" if name == "failed" else "Succeeded"

        def get_container_endpoint(self, name, ctx=None):
            return "" if name == "worker" else f"https://{name}.example.test/health"

    results = hc.check_multiple_containers(["api", "worker", "failed", "broken"], Mixed())
    assert results["api"].healthy and results["worker"].healthy
    assert results["failed"] == HealthProbeResult(state="Failed", message="state Failed")
    assert results["broken"].state == "Unknown"

    healthy, unhealthy, issues = hc.health_summary(results)
    assert (healthy, unhealthy) == (2, 2)
    assert issues[0].startswith("broken:")


def test_three_polls_then_passing_http_check():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200)

    hc = UnifiedHealthChecker(interval_s=FAST, transport=httpx.MockTransport(handler))
    scripted = ScriptedChecker(
        ["Provisioning", "Provisioning", "Succeeded"], endpoint="https://content-news.example.test/health"
    )
    hc.wait_for_container_health("content-news", scripted, timeout_s=5)
    assert scripted.status_calls == 3
    assert hc.last_poll_count == 3
    assert seen == ["/health"]


def test_http_check_is_capped_by_context_deadline():
    timeouts = []

    def handler(request):
        timeouts.append(request.extensions["timeout"]["read"])
        return httpx.Response(200)

    hc = UnifiedHealthChecker(probe_timeout_s=10, transport=httpx.MockTransport(handler))
    ok, _, _ = hc.probe("http://app/health", Context.background().with_timeout(1))
    assert ok
    assert 0 < timeouts[0] <= 1


def test_http_check_respects_cancel_and_deadline():
    def handler(request):
        raise AssertionError("no request expected")

    hc = UnifiedHealthChecker(transport=httpx.MockTransport(handler))
    cancelled = Context.background()
    cancelled.cancel()
    with pytest.raises(ContextCancelledError):
        hc.probe("http://app/health", cancelled)
    with pytest.raises(DeadlineExceededError):
        hc.probe("http://app/health", Context.background().with_timeout(0))
