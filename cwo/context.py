from __future__ import annotations

import time
from threading import Event, Lock
from weakref import WeakSet

from .errors import ContextCancelledError


class Context:
    """Cancellation token with an optional deadline.

    Every blocking call in the orchestrator accepts one. Children created with
    :meth:`with_timeout` are cancelled together with their parent and never
    outlive the parent's deadline.
    """

    def __init__(self, deadline: float | None = None, parent: Context | None = None):
        self._event = Event()
        self._lock = Lock()
        self._children: WeakSet[Context] = WeakSet()
        self._reason = "context cancelled"
        self.parent = parent
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline
        if parent is not None:
            parent._adopt(self)

    @classmethod
    def background(cls) -> Context:
        return cls()

    def with_timeout(self, seconds: float) -> Context:
        return Context(deadline=time.monotonic() + max(0.0, float(seconds)), parent=self)

    def _adopt(self, child: Context) -> None:
        with self._lock:
            self._children.add(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel(self._reason)

    def cancel(self, reason: str = "context cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled or past the deadline.

        Returns True when the full interval elapsed.
        """
        timeout = max(0.0, float(seconds))
        rem = self.remaining()
        if rem is not None and rem < timeout:
            self._event.wait(rem)
            return False
        return not self._event.wait(timeout)

    def check(self) -> None:
        if self.cancelled:
            raise ContextCancelledError(self._reason)


def ensure(ctx: Context | None) -> Context:
    return ctx if ctx is not None else Context.background()
