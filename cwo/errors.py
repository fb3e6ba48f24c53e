from __future__ import annotations

from typing import Sequence


class CwoError(Exception):
    """Base class for every error raised by the orchestrator."""


class ValidationError(CwoError, ValueError):
    """Malformed container spec or sidecar configuration. Never retried."""


class ExecutionError(CwoError):
    """A control-plane command failed.

    ``output`` keeps the combined stdout/stderr of the command so operators can
    diagnose the failure without re-running it.
    """

    def __init__(
        self,
        message: str,
        command: Sequence[str] | None = None,
        returncode: int | None = None,
        output: str = "",
    ):
        self.command = list(command or [])
        self.returncode = returncode
        self.output = output
        if output:
            message = f"{message}, output: {output.strip()}"
        super().__init__(message)


class NotFoundError(ExecutionError):
    pass


class DeadlineExceededError(CwoError, TimeoutError):
    pass


class HealthTimeoutError(DeadlineExceededError):
    def __init__(self, subject: str, timeout_s: float, last_state: str | None = None):
        self.subject = subject
        self.timeout_s = timeout_s
        self.last_state = last_state
        msg = f"timeout waiting for {subject} after {timeout_s:g}s"
        if last_state:
            msg += f" (last state: {last_state})"
        super().__init__(msg)


class HealthCheckError(CwoError):
    pass


class ContextCancelledError(CwoError):
    pass


class RolloutError(CwoError):
    """A rollout step failed.

    Identifies the application, the failing phase and (when known) the revision,
    so the message can be shown to an operator as is.
    """

    def __init__(self, app: str, phase: str, cause: BaseException, revision: str | None = None):
        self.app = app
        self.phase = phase
        self.revision = revision
        self.cause = cause
        where = f"{app} [{phase}]"
        if revision:
            where += f" revision {revision}"
        super().__init__(f"{where}: {cause}")


class RolloutInProgressError(CwoError):
    """Another rollout for the same application has not finished yet."""

    def __init__(self, app: str, rollout_id: str):
        self.app = app
        self.rollout_id = rollout_id
        super().__init__(f"rollout {rollout_id} for {app} is still in progress")
