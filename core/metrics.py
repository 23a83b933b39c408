from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from core.states import QUEUED, SEEDING, STALLED
from core.utils import SECONDS_PER_HOUR


# Identical progress across a gap longer than this counts as stuck
STUCK_PROGRESS_GAP = 2 * 3600.0


@dataclass(frozen=True)
class DerivedMetrics:
    stalled_hours: float = 0.0
    seeding_hours: float = 0.0
    stuck_progress: bool = False
    queued_sample_count: int = 0


class _Interval:
    """Running total for one tracked state, with an optional open start.

    A closed interval spans from the first to the last sample observed in
    the state; the gap before the sample that left it is not counted.
    """

    def __init__(self, state: str) -> None:
        self.state = state
        self.open_at: Optional[float] = None
        self.last_at: Optional[float] = None
        self.total = 0.0

    def observe(self, state: str, at: float) -> None:
        if state == self.state:
            if self.open_at is None:
                self.open_at = at
            self.last_at = at
        elif self.open_at is not None:
            self.total += max(0.0, (self.last_at or self.open_at) - self.open_at)
            self.open_at = None
            self.last_at = None

    def close(self, now: float) -> float:
        if self.open_at is not None:
            return self.total + max(0.0, now - self.open_at)
        return self.total


def reconstruct(history: Iterable[Any], now: Optional[float] = None) -> DerivedMetrics:
    """Replay an ascending snapshot history into continuous-time metrics.

    An interval still open at the last sample is carried forward to ``now``,
    so durations reflect the item's state as of evaluation time.
    """
    now = time.time() if now is None else now
    stalled = _Interval(STALLED)
    seeding = _Interval(SEEDING)
    queued_count = 0
    stuck = False
    prev_at: Optional[float] = None
    prev_progress: Optional[float] = None
    seen = False

    for snap in history:
        seen = True
        at = float(snap.captured_at)
        stalled.observe(snap.state, at)
        seeding.observe(snap.state, at)
        if snap.state == QUEUED:
            queued_count += 1

        progress = snap.progress
        if progress is not None:
            if prev_progress is not None and prev_progress == progress and prev_at is not None:
                if (at - prev_at) > STUCK_PROGRESS_GAP:
                    stuck = True
            prev_progress = progress
        prev_at = at

    if not seen:
        return DerivedMetrics()

    return DerivedMetrics(
        stalled_hours=stalled.close(now) / SECONDS_PER_HOUR,
        seeding_hours=seeding.close(now) / SECONDS_PER_HOUR,
        stuck_progress=stuck,
        queued_sample_count=queued_count,
    )
