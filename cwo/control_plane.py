from __future__ import annotations

import json
import os
import re
import subprocess
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Sequence

from .context import Context, ensure
from .errors import DeadlineExceededError, ExecutionError, NotFoundError
from .models import Revision, TrafficWeight


class ControlPlaneClient(ABC):
    """Boundary to the platform. Providers never reach the platform any other way."""

    @abstractmethod
    def create_application(self, name: str, descriptor: dict[str, Any], ctx: Context | None = None) -> None: ...

    @abstractmethod
    def create_revision(self, name: str, descriptor: dict[str, Any], suffix: str, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def update_replicas(self, name: str, min_replicas: int, max_replicas: int, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def show_application(self, name: str, ctx: Context | None = None) -> dict[str, Any]: ...

    @abstractmethod
    def show_environment(self, ctx: Context | None = None) -> dict[str, Any]: ...

    @abstractmethod
    def list_applications(self, ctx: Context | None = None) -> list[str]: ...

    @abstractmethod
    def list_revisions(self, app: str, ctx: Context | None = None) -> list[Revision]: ...

    @abstractmethod
    def show_revision(self, app: str, revision: str, ctx: Context | None = None) -> dict[str, Any]: ...

    @abstractmethod
    def set_traffic(self, app: str, weights: Sequence[TrafficWeight], ctx: Context | None = None) -> None: ...

    @abstractmethod
    def deactivate_revision(self, app: str, revision: str, ctx: Context | None = None) -> None: ...

    @abstractmethod
    def show_logs(self, app: str, tail: int, ctx: Context | None = None) -> str: ...


_NOT_FOUND_RE = re.compile(r"ResourceNotFound|could not be found|was not found|not found", re.IGNORECASE)


class AzureCliControlPlane(ControlPlaneClient):
    """Runs ``az containerapp`` commands and parses their JSON output.

    Commands are started with Popen and watched, so cancelling the context (or
    running past its deadline) kills the command in flight.
    """

    def __init__(
        self,
        resource_group: str,
        environment: str,
        base_command: Sequence[str] = ("az",),
        watch_interval_s: float = 0.2,
    ):
        self.resource_group = resource_group
        self.environment = environment
        self.base_command = list(base_command)
        self.watch_interval_s = watch_interval_s

    # --- plumbing ---------------------------------------------------------

    def _run(self, args: Sequence[str], what: str, ctx: Context | None = None) -> str:
        ctx = ensure(ctx)
        ctx.check()
        cmd = [*self.base_command, *args]
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except OSError as e:
            raise ExecutionError(f"failed to {what}: {e}", command=cmd) from e

        while True:
            try:
                out, err = proc.communicate(timeout=self.watch_interval_s)
                break
            except subprocess.TimeoutExpired:
                if ctx.cancelled or ctx.expired:
                    proc.kill()
                    proc.communicate()
                    ctx.check()
                    raise DeadlineExceededError(f"deadline exceeded while trying to {what}")

        if proc.returncode != 0:
            combined = "\n".join(part for part in (out.strip(), err.strip()) if part)
            cls = NotFoundError if _NOT_FOUND_RE.search(combined) else ExecutionError
            raise cls(f"failed to {what}", command=cmd, returncode=proc.returncode, output=combined)
        return out

    def _run_json(self, args: Sequence[str], what: str, ctx: Context | None = None) -> Any:
        out = self._run([*args, "--output", "json"], what, ctx)
        if not out.strip():
            return None
        try:
            return json.loads(out)
        except ValueError as e:
            raise ExecutionError(f"failed to {what}: unparseable output", output=out) from e

    def _run_with_descriptor(self, args: Sequence[str], descriptor: dict[str, Any], what: str, ctx: Context | None) -> None:
        fd, path = tempfile.mkstemp(prefix="cwo-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(descriptor, f)
            self._run_json([*args, "--yaml", path], what, ctx)
        finally:
            os.unlink(path)

    def _app_args(self, name: str) -> list[str]:
        return ["--name", name, "--resource-group", self.resource_group]

    # --- commands ---------------------------------------------------------

    def create_application(self, name: str, descriptor: dict[str, Any], ctx: Context | None = None) -> None:
        self._run_with_descriptor(
            ["containerapp", "create", *self._app_args(name), "--environment", self.environment],
            descriptor,
            f"deploy container app {name}",
            ctx,
        )

    def create_revision(self, name: str, descriptor: dict[str, Any], suffix: str, ctx: Context | None = None) -> None:
        self._run_with_descriptor(
            ["containerapp", "revision", "copy", *self._app_args(name), "--from-revision", "latest", "--revision-suffix", suffix],
            descriptor,
            f"create revision for {name}",
            ctx,
        )

    def update_replicas(self, name: str, min_replicas: int, max_replicas: int, ctx: Context | None = None) -> None:
        self._run_json(
            ["containerapp", "update", *self._app_args(name), "--min-replicas", str(min_replicas), "--max-replicas", str(max_replicas)],
            f"scale container app {name}",
            ctx,
        )

    def show_application(self, name: str, ctx: Context | None = None) -> dict[str, Any]:
        doc = self._run_json(["containerapp", "show", *self._app_args(name)], f"show container app {name}", ctx)
        if not isinstance(doc, dict):
            raise NotFoundError(f"container app {name} not found")
        return doc

    def show_environment(self, ctx: Context | None = None) -> dict[str, Any]:
        doc = self._run_json(
            ["containerapp", "env", "show", *self._app_args(self.environment)],
            f"show container apps environment {self.environment}",
            ctx,
        )
        if not isinstance(doc, dict):
            raise NotFoundError(f"container apps environment {self.environment} not found")
        return doc

    def list_applications(self, ctx: Context | None = None) -> list[str]:
        doc = self._run_json(
            ["containerapp", "list", "--resource-group", self.resource_group, "--query", "[].name"],
            "list container apps",
            ctx,
        )
        return [str(n).strip() for n in (doc or []) if str(n).strip()]

    def list_revisions(self, app: str, ctx: Context | None = None) -> list[Revision]:
        doc = self._run_json(["containerapp", "revision", "list", *self._app_args(app), "--all"], f"list revisions of {app}", ctx)
        return [Revision.from_json(r) for r in (doc or [])]

    def show_revision(self, app: str, revision: str, ctx: Context | None = None) -> dict[str, Any]:
        doc = self._run_json(
            ["containerapp", "revision", "show", *self._app_args(app), "--revision", revision],
            f"show revision {revision}",
            ctx,
        )
        if not isinstance(doc, dict):
            raise NotFoundError(f"revision {revision} not found")
        return doc

    def set_traffic(self, app: str, weights: Sequence[TrafficWeight], ctx: Context | None = None) -> None:
        pairs = [f"{w.revision_name}={w.weight}" for w in weights]
        self._run_json(
            ["containerapp", "ingress", "traffic", "set", *self._app_args(app), "--revision-weight", *pairs],
            f"configure traffic splitting for {app}",
            ctx,
        )

    def deactivate_revision(self, app: str, revision: str, ctx: Context | None = None) -> None:
        self._run(
            ["containerapp", "revision", "deactivate", *self._app_args(app), "--revision", revision],
            f"deactivate revision {revision}",
            ctx,
        )

    def show_logs(self, app: str, tail: int, ctx: Context | None = None) -> str:
        return self._run(
            ["containerapp", "logs", "show", *self._app_args(app), "--tail", str(int(tail)), "--format", "text"],
            f"get logs for {app}",
            ctx,
        )
