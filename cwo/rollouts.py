from __future__ import annotations

import secrets
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock, Thread
from typing import Iterable, Iterator, Mapping

from .context import Context, ensure
from .dapr import UnifiedDaprSidecarManager
from .db import EventLog, NullEventLog
from .errors import (
    ContextCancelledError,
    CwoError,
    HealthCheckError,
    RolloutError,
    RolloutInProgressError,
    ValidationError,
)
from .health import UnifiedHealthChecker
from .interfaces import ContainerHealthChecker, ContainerProvider, DaprProvider, RevisionManager
from .models import SUCCEEDED, ContainerSpec, DeploymentResult, HealthProbeResult, Revision, TrafficWeight
from .runtime import CANCELLED, DONE, FAILED, PAUSED, RUNNING, RolloutStatus, RuntimeState
from .traffic import validate_weight


@dataclass
class RolloutPlan:
    app: str
    canary_weight: int = 10
    step_percent: int = 25
    step_interval_s: float = 15.0
    auto: bool = True
    steps: list[int] = field(default_factory=list)
    step_index: int = 0

    def __post_init__(self) -> None:
        validate_weight(self.canary_weight)
        if not 1 <= int(self.step_percent) <= 100:
            raise ValidationError(f"step_percent must be between 1 and 100, got {self.step_percent}")
        if self.step_interval_s < 0:
            raise ValidationError("step_interval_s cannot be negative")
        if not self.steps:
            steps = list(range(self.canary_weight, 101, int(self.step_percent)))
            if steps[-1] != 100:
                steps.append(100)
            self.steps = steps

    @property
    def weight(self) -> int:
        return self.steps[self.step_index]

    @property
    def at_last_step(self) -> bool:
        return self.step_index >= len(self.steps) - 1


def execution_waves(names: Iterable[str], dependencies: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Group applications into waves; every application follows its dependencies.

    Applications inside a wave do not depend on each other.
    """
    pending = {n: set(dependencies.get(n, ())) for n in names}
    for name, deps in pending.items():
        unknown = deps - pending.keys()
        if unknown:
            raise ValidationError(f"{name} depends on unknown application(s): {', '.join(sorted(unknown))}")
    waves: list[list[str]] = []
    done: set[str] = set()
    while pending:
        ready = sorted(n for n, deps in pending.items() if deps <= done)
        if not ready:
            raise ValidationError(f"dependency cycle between: {', '.join(sorted(pending))}")
        waves.append(ready)
        done.update(ready)
        for n in ready:
            del pending[n]
    return waves


class DeploymentOrchestrator:
    """Runs deployments and revision rollouts against one provider.

    Capabilities are discovered from the provider: sidecars are handled only
    when it is a :class:`DaprProvider`, rollouts need a :class:`RevisionManager`.
    """

    def __init__(
        self,
        provider: ContainerProvider,
        *,
        dapr_manager: UnifiedDaprSidecarManager | None = None,
        health_checker: UnifiedHealthChecker | None = None,
        events: EventLog | None = None,
        runtime: RuntimeState | None = None,
        health_timeout_s: float = 300.0,
        revision_timeout_s: float = 600.0,
        max_workers: int = 4,
    ):
        self.provider = provider
        self.health_checker = health_checker or getattr(provider, "health_checker", None) or UnifiedHealthChecker()
        self.dapr_manager = (
            dapr_manager
            or getattr(provider, "dapr_manager", None)
            or UnifiedDaprSidecarManager(health_checker=self.health_checker)
        )
        self.events = events or NullEventLog()
        self.runtime = runtime or RuntimeState()
        self.health_timeout_s = health_timeout_s
        self.revision_timeout_s = revision_timeout_s
        self.max_workers = max_workers
        self._lock = Lock()
        self._plans: dict[str, RolloutPlan] = {}
        self._contexts: dict[str, Context] = {}
        self._step_locks: dict[str, Lock] = {}

    # --- helpers ----------------------------------------------------------

    @contextmanager
    def _phase(self, app: str, phase: str, revision: str | None = None) -> Iterator[None]:
        self.events.log("INFO", f"{phase} started", app=app, revision=revision)
        try:
            yield
        except ContextCancelledError:
            self.events.log("WARN", f"{phase} cancelled", app=app, revision=revision)
            raise
        except CwoError as e:
            err = e if isinstance(e, RolloutError) else RolloutError(app, phase, e, revision=revision)
            self.events.log("ERROR", str(err), app=app, revision=revision)
            raise err from e

    def _revisions(self) -> RevisionManager:
        if not isinstance(self.provider, RevisionManager):
            raise ValidationError(f"{type(self.provider).__name__} does not support revisions")
        return self.provider

    def _checker(self) -> ContainerHealthChecker:
        if not isinstance(self.provider, ContainerHealthChecker):
            raise ValidationError(f"{type(self.provider).__name__} cannot report container health")
        return self.provider

    # --- single deployment ------------------------------------------------

    def deploy(self, spec: ContainerSpec, ctx: Context | None = None) -> DeploymentResult:
        """Validate, deploy, attach the sidecar and wait until the application is healthy."""
        ctx = ensure(ctx)
        app = spec.name or "<unnamed>"
        with self._phase(app, "validate"):
            spec.validate()
            if spec.dapr_enabled:
                self.dapr_manager.enrich_container_spec(spec)
        with self._phase(app, "deploy"):
            self.provider.pull_image(spec.image, ctx=ctx)
            self.provider.deploy_container(spec, ctx=ctx)
        if spec.dapr_enabled and isinstance(self.provider, DaprProvider):
            with self._phase(app, "sidecar"):
                self.provider.deploy_dapr_sidecar(spec, ctx=ctx)
        with self._phase(app, "health-wait"):
            self.provider.wait_for_container_health(spec.name, self.health_timeout_s, ctx=ctx)
        endpoint = ""
        if isinstance(self.provider, ContainerHealthChecker):
            endpoint = self.provider.get_container_endpoint(spec.name, ctx=ctx)
        self.events.log("INFO", "deployed", app=spec.name)
        return DeploymentResult(name=spec.name, state=SUCCEEDED, endpoint=endpoint, message="deployed")

    def deploy_all(
        self,
        specs: Iterable[ContainerSpec],
        dependencies: Mapping[str, Iterable[str]] | None = None,
        max_workers: int | None = None,
        ctx: Context | None = None,
    ) -> dict[str, DeploymentResult]:
        """Deploy applications wave by wave; a failing wave stops the ones after it."""
        ctx = ensure(ctx)
        by_name = {s.name: s for s in specs}
        waves = execution_waves(by_name, dependencies or {})
        results: dict[str, DeploymentResult] = {}
        workers = max_workers if max_workers is not None else self.max_workers
        with ThreadPoolExecutor(max_workers=max(1, int(workers))) as pool:
            for wave in waves:
                ctx.check()
                futures = {name: pool.submit(self.deploy, by_name[name], ctx) for name in wave}
                errors: list[BaseException] = []
                for name, fut in futures.items():
                    try:
                        results[name] = fut.result()
                    except CwoError as e:
                        errors.append(e)
                if errors:
                    raise errors[0]
        return results

    def validate_runtime_health(self, names: Iterable[str], ctx: Context | None = None) -> dict[str, HealthProbeResult]:
        results = self.health_checker.check_multiple_containers(list(names), self._checker(), ctx=ctx)
        healthy, unhealthy, issues = self.health_checker.health_summary(results)
        if unhealthy:
            raise HealthCheckError(f"{unhealthy} unhealthy application(s): " + "; ".join(issues))
        self.events.log("INFO", f"{healthy} application(s) healthy")
        return results

    # --- direct operations ------------------------------------------------

    def stop(self, name: str, ctx: Context | None = None) -> None:
        self.provider.stop_container(name, ctx=ctx)
        self.events.log("INFO", "stopped", app=name)

    def logs(self, name: str, lines: int = 100, ctx: Context | None = None) -> str:
        return self.provider.get_container_logs(name, lines, ctx=ctx)

    def list_apps(self, ctx: Context | None = None) -> list[str]:
        return self.provider.list_containers(ctx=ctx)

    def revisions(self, app: str, ctx: Context | None = None) -> list[Revision]:
        return self._revisions().list_revisions(app, ctx=ctx)

    def set_traffic(self, app: str, revision: str, weight: int, ctx: Context | None = None) -> list[TrafficWeight]:
        """Route ``weight`` percent to an existing revision, e.g. 0 to back out a canary."""
        revisions = self._revisions()
        with self._phase(app, "traffic-split", revision):
            table = revisions.configure_traffic_splitting(app, revision, weight, ctx=ctx)
        self.events.log("INFO", f"traffic set to {weight}%", app=app, revision=revision)
        return table

    # --- rollouts ---------------------------------------------------------

    def _begin(self, spec: ContainerSpec, plan: RolloutPlan, ctx: Context | None = None) -> RolloutStatus:
        self._revisions()
        if plan.app != spec.name:
            raise ValidationError(f"rollout plan is for {plan.app}, spec is for {spec.name}")
        with self._lock:
            current = self.runtime.active_rollout_for(spec.name)
            if current is not None:
                raise RolloutInProgressError(spec.name, current.id)
            st = RolloutStatus(
                id=secrets.token_hex(6),
                app=spec.name,
                state=RUNNING,
                message=f"Starting rollout at {plan.canary_weight}%",
                auto=plan.auto,
            )
            self.runtime.upsert_rollout(st)
            self._plans[st.id] = plan
            self._contexts[st.id] = ensure(ctx)
            self._step_locks[st.id] = Lock()
        self.events.log("INFO", st.message, app=spec.name)
        return st

    def _update(self, st: RolloutStatus, message: str, *, state: str | None = None, phase: str | None = None) -> None:
        if state is not None:
            st.state = state
        if phase is not None:
            st.phase = phase
        st.message = message
        self.runtime.upsert_rollout(st)
        level = "ERROR" if st.state == FAILED else "INFO"
        self.events.log(level, message, app=st.app, revision=st.revision or None)
        if st.finished:
            self._release(st.id)

    def _release(self, rollout_id: str) -> None:
        with self._lock:
            self._plans.pop(rollout_id, None)
            self._contexts.pop(rollout_id, None)
            self._step_locks.pop(rollout_id, None)

    def _create_revision(self, spec: ContainerSpec, plan: RolloutPlan, st: RolloutStatus, ctx: Context) -> None:
        revisions = self._revisions()
        with self._phase(spec.name, "validate"):
            spec.validate()
            if spec.dapr_enabled:
                self.dapr_manager.enrich_container_spec(spec)
        st.phase = "revision"
        with self._phase(spec.name, "revision"):
            st.revision = revisions.update_container_app_revision(spec, plan.canary_weight, ctx=ctx)
        plan.step_index = 0
        st.weight = plan.canary_weight
        self._update(st, f"Created revision {st.revision} with weight {plan.canary_weight}%", phase="revision-wait")
        with self._phase(spec.name, "revision-wait", st.revision):
            revisions.wait_for_revision_ready(spec.name, st.revision, self.revision_timeout_s, ctx=ctx)

    def _step(self, plan: RolloutPlan, st: RolloutStatus, ctx: Context) -> None:
        plan.step_index = min(plan.step_index + 1, len(plan.steps) - 1)
        weight = plan.weight
        with self._phase(st.app, "traffic-split", st.revision):
            self._revisions().configure_traffic_splitting(st.app, st.revision, weight, ctx=ctx)
        st.weight = weight
        self._update(st, f"Applied weight {weight}%", phase="traffic-split")

    def _finalize(self, plan: RolloutPlan, st: RolloutStatus, ctx: Context) -> None:
        revisions = self._revisions()
        st.phase = "health-wait"
        with self._phase(st.app, "health-wait", st.revision):
            self.provider.wait_for_container_health(st.app, self.health_timeout_s, ctx=ctx)
        st.phase = "deactivate"
        # only once the new revision holds all traffic
        with self._phase(st.app, "deactivate", st.revision):
            for r in revisions.get_active_revisions(st.app, ctx=ctx):
                if r.name != st.revision:
                    revisions.deactivate_revision(st.app, r.name, ctx=ctx)
        self._update(st, "Rollout completed.", state=DONE, phase="done")

    def _run(self, rollout_id: str, spec: ContainerSpec) -> None:
        st = self.runtime.get_rollout(rollout_id)
        with self._lock:
            plan = self._plans.get(rollout_id)
            ctx = self._contexts.get(rollout_id)
        if st is None or plan is None or ctx is None:
            return
        try:
            self._create_revision(spec, plan, st, ctx)
            if not plan.auto:
                self._update(st, f"Waiting at {plan.weight}%; continue to step on.", state=PAUSED)
                return
            while not plan.at_last_step:
                ctx.wait(plan.step_interval_s)
                ctx.check()
                self._step(plan, st, ctx)
            self._finalize(plan, st, ctx)
        except ContextCancelledError:
            self._update(st, "Rollout cancelled.", state=CANCELLED)
            raise
        except RolloutError as e:
            self._update(st, str(e), state=FAILED)
            raise
        except Exception as e:
            self._update(st, f"{st.phase or 'rollout'} crashed: {type(e).__name__}: {e}", state=FAILED)
            raise

    def rollout(self, spec: ContainerSpec, plan: RolloutPlan, ctx: Context | None = None) -> RolloutStatus:
        """Run a complete rollout in the calling thread.

        Raises :class:`RolloutError` for the failing phase; traffic is left as
        it was at that point.
        """
        plan.auto = True
        st = self._begin(spec, plan, ctx)
        self._run(st.id, spec)
        return st

    def start_rollout(self, spec: ContainerSpec, plan: RolloutPlan) -> str:
        """Start a rollout in the background and return its id.

        With ``plan.auto`` off the rollout pauses at the canary weight and
        advances one step per :meth:`continue_rollout`.
        """
        st = self._begin(spec, plan)
        Thread(target=self._run_quietly, args=(st.id, spec), daemon=True).start()
        return st.id

    def _run_quietly(self, rollout_id: str, spec: ContainerSpec) -> None:
        try:
            self._run(rollout_id, spec)
        except (RolloutError, ContextCancelledError):
            # already recorded on the rollout status
            return

    def continue_rollout(self, rollout_id: str) -> RolloutStatus:
        st = self.runtime.get_rollout(rollout_id)
        if st is None:
            raise KeyError("unknown rollout")
        if st.finished:
            return st
        with self._lock:
            plan = self._plans.get(rollout_id)
            ctx = self._contexts.get(rollout_id)
            step_lock = self._step_locks.get(rollout_id)
        if plan is None or ctx is None or step_lock is None:
            # finished in the meantime
            return st
        if st.state != PAUSED or not step_lock.acquire(blocking=False):
            raise RolloutInProgressError(st.app, st.id)
        try:
            self._update(st, f"Stepping from {plan.weight}%", state=RUNNING)
            self._step(plan, st, ctx)
            if plan.at_last_step:
                self._finalize(plan, st, ctx)
            else:
                self._update(st, f"Applied weight {plan.weight}%.", state=PAUSED)
        except ContextCancelledError:
            self._update(st, "Rollout cancelled.", state=CANCELLED)
        except RolloutError as e:
            self._update(st, str(e), state=FAILED)
        finally:
            step_lock.release()
        return st

    def cancel_rollout(self, rollout_id: str) -> RolloutStatus:
        st = self.runtime.get_rollout(rollout_id)
        if st is None:
            raise KeyError("unknown rollout")
        with self._lock:
            ctx = self._contexts.get(rollout_id)
        if st.finished or ctx is None:
            return st
        ctx.cancel("rollout cancelled")
        if st.state == PAUSED:
            # no thread owns a paused rollout
            self._update(st, "Rollout cancelled.", state=CANCELLED)
        return st

    def get_rollout(self, rollout_id: str) -> RolloutStatus:
        st = self.runtime.get_rollout(rollout_id)
        if st is None:
            raise KeyError("unknown rollout")
        return st

    def list_rollouts(self) -> list[RolloutStatus]:
        return self.runtime.list_rollouts()
