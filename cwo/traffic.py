from __future__ import annotations

import time
from threading import Lock
from typing import Callable, Iterable

from .errors import ValidationError
from .models import Revision, TrafficWeight


class RevisionNamer:
    """Derives revision names from the application name and the current time.

    Suffixes are unix seconds, bumped when two revisions are requested within
    the same second, so names stay unique and increasing within the process.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = Lock()
        self._last = 0

    def next(self, app: str) -> tuple[str, str]:
        with self._lock:
            suffix = max(int(self._clock()), self._last + 1)
            self._last = suffix
        return revision_name(app, str(suffix)), str(suffix)


def revision_name(app: str, suffix: str) -> str:
    return f"{app}--{suffix}"


def validate_weight(weight: int) -> int:
    if isinstance(weight, bool) or not isinstance(weight, int):
        raise ValidationError(f"traffic weight must be an integer, got {weight!r}")
    if not 0 <= weight <= 100:
        raise ValidationError(f"traffic weight must be between 0 and 100, got {weight}")
    return weight


def split_traffic(active: Iterable[Revision], new_revision: str, new_weight: int) -> list[TrafficWeight]:
    """Build the full weight table for a new revision.

    The new revision gets ``new_weight``; the remaining traffic is divided
    evenly (integer division) across the other active revisions. The
    truncation remainder is not redistributed, and when there are no other
    revisions the table holds only the new revision at ``new_weight``. Either
    way the table may sum to less than 100.
    """
    validate_weight(new_weight)
    table = [TrafficWeight(new_revision, new_weight)]
    others = [r for r in active if r.name != new_revision]
    if others:
        share = (100 - new_weight) // len(others)
        table.extend(TrafficWeight(r.name, share) for r in others)
    return table


def total_weight(weights: Iterable[TrafficWeight]) -> int:
    return sum(w.weight for w in weights)


def as_mapping(weights: Iterable[TrafficWeight]) -> dict[str, int]:
    return {w.revision_name: w.weight for w in weights}
