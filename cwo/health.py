from __future__ import annotations

import time
from typing import TYPE_CHECKING, Callable, Iterable

import httpx

from .context import Context, ensure
from .errors import CwoError, DeadlineExceededError, HealthCheckError, HealthTimeoutError
from .models import FAILED, SUCCEEDED, UNKNOWN, HealthProbeResult

if TYPE_CHECKING:
    from .interfaces import ContainerHealthChecker


def probe_http(url: str, timeout_s: float = 10.0, client: httpx.Client | None = None) -> tuple[bool, str, float | None]:
    """Call a health endpoint.

    Any 2xx status counts as reachable.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        if client is None:
            with httpx.Client(timeout=timeout_s, follow_redirects=False) as c:
                resp = c.get(url)
        else:
            resp = client.get(url, timeout=timeout_s)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class UnifiedHealthChecker:
    """Polling engine shared by every provider.

    ``poll`` waits one interval, asks the provider for the provisioning state
    and stops on Succeeded, Failed, the deadline or cancellation. Query errors
    are treated as transient and polling goes on.
    """

    def __init__(
        self,
        interval_s: float = 15.0,
        probe_timeout_s: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.interval_s = interval_s
        self.probe_timeout_s = probe_timeout_s
        self._transport = transport
        self.last_poll_count = 0

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.probe_timeout_s, follow_redirects=False, transport=self._transport)

    def probe(self, url: str, ctx: Context | None = None) -> tuple[bool, str, float | None]:
        ctx = ensure(ctx)
        ctx.check()
        timeout = self.probe_timeout_s
        remaining = ctx.remaining()
        if remaining is not None:
            if remaining <= 0:
                raise DeadlineExceededError(f"deadline exceeded before probing {url}")
            timeout = min(timeout, remaining)
        with self._client() as client:
            return probe_http(url, timeout, client=client)

    def poll(
        self,
        query: Callable[[Context], str],
        *,
        subject: str,
        timeout_s: float,
        interval_s: float | None = None,
        ctx: Context | None = None,
    ) -> str:
        interval = self.interval_s if interval_s is None else interval_s
        wait_ctx = ensure(ctx).with_timeout(timeout_s)
        last_state: str | None = None
        polls = 0
        while True:
            wait_ctx.wait(interval)
            wait_ctx.check()
            if wait_ctx.expired:
                raise HealthTimeoutError(subject, timeout_s, last_state)
            polls += 1
            self.last_poll_count = polls
            try:
                state = query(wait_ctx)
            except CwoError as e:
                wait_ctx.check()
                last_state = f"query error: {e}"
                continue
            last_state = state
            if state == SUCCEEDED:
                return state
            if state == FAILED:
                raise HealthCheckError(f"{subject} failed to deploy")

    def wait_for_container_health(
        self,
        name: str,
        checker: ContainerHealthChecker,
        timeout_s: float,
        *,
        interval_s: float | None = None,
        probe: bool = True,
        ctx: Context | None = None,
    ) -> None:
        self.poll(
            lambda c: checker.check_container_status(name, ctx=c),
            subject=f"container {name}",
            timeout_s=timeout_s,
            interval_s=interval_s,
            ctx=ctx,
        )
        if not probe:
            return
        endpoint = checker.get_container_endpoint(name, ctx=ctx)
        if not endpoint:
            # no ingress: provisioned is as healthy as it gets
            return
        ok, msg, _ = self.probe(endpoint, ctx)
        if not ok:
            raise HealthCheckError(f"health check failed for {name} at {endpoint}: {msg}")

    def validate_dapr_health(self, app_id: str, dapr_endpoint: str, ctx: Context | None = None) -> None:
        ensure(ctx).check()
        if not dapr_endpoint:
            raise HealthCheckError(f"no Dapr endpoint available for {app_id}")
        url = dapr_endpoint.rstrip("/") + "/v1.0/healthz"
        ok, msg, _ = self.probe(url, ctx)
        if not ok:
            raise HealthCheckError(f"Dapr sidecar for {app_id} is unhealthy at {url}: {msg}")

    def check_multiple_containers(
        self, names: Iterable[str], checker: ContainerHealthChecker, ctx: Context | None = None
    ) -> dict[str, HealthProbeResult]:
        results: dict[str, HealthProbeResult] = {}
        for name in names:
            try:
                state = checker.check_container_status(name, ctx=ctx)
            except CwoError as e:
                results[name] = HealthProbeResult(state=UNKNOWN, message=str(e))
                continue
            if state != SUCCEEDED:
                results[name] = HealthProbeResult(state=state, message=f"state {state}")
                continue
            endpoint = checker.get_container_endpoint(name, ctx=ctx)
            if not endpoint:
                results[name] = HealthProbeResult(state=state, healthy=True, message="no ingress")
                continue
            ok, msg, _ = self.probe(endpoint, ctx)
            results[name] = HealthProbeResult(state=state, endpoint=endpoint, healthy=ok, message=msg)
        return results

    @staticmethod
    def health_summary(results: dict[str, HealthProbeResult]) -> tuple[int, int, list[str]]:
        healthy = 0
        issues: list[str] = []
        for name, r in sorted(results.items()):
            if r.healthy:
                healthy += 1
            else:
                issues.append(f"{name}: {r.message or r.state}")
        return healthy, len(issues), issues
