from __future__ import annotations

from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any

from .db import utc_now

# Rollout states
RUNNING = "running"
PAUSED = "paused"
DONE = "done"
FAILED = "failed"
CANCELLED = "cancelled"

FINISHED = frozenset({DONE, FAILED, CANCELLED})


@dataclass
class RolloutStatus:
    id: str
    app: str
    state: str  # running|paused|done|failed|cancelled
    message: str
    revision: str = ""
    phase: str = ""
    weight: int = 0
    auto: bool = True
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def finished(self) -> bool:
        return self.state in FINISHED

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RuntimeState:
    """In-memory rollout bookkeeping.

    Revisions and traffic weights are never kept here; the platform is always
    asked for them.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.rollouts: dict[str, RolloutStatus] = {}

    def upsert_rollout(self, st: RolloutStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.rollouts[st.id] = st

    def get_rollout(self, rollout_id: str) -> RolloutStatus | None:
        with self.lock:
            return self.rollouts.get(rollout_id)

    def list_rollouts(self) -> list[RolloutStatus]:
        with self.lock:
            return list(self.rollouts.values())

    def active_rollout_for(self, app: str) -> RolloutStatus | None:
        with self.lock:
            for st in self.rollouts.values():
                if st.app == app and not st.finished:
                    return st
        return None
