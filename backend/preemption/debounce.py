"""
Debounce Gate - minimum interval between preemption runs.

Pure function, no I/O. The control loop owns last_run_at and records it
when a run is attempted (before the stages execute), so a failing run still
consumes the window.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

DEFAULT_MIN_INTERVAL = timedelta(minutes=1)


def should_run(
    now: datetime,
    last_run_at: Optional[datetime],
    min_interval: timedelta = DEFAULT_MIN_INTERVAL,
) -> bool:
    """False iff now - last_run_at < min_interval. None = never ran."""
    if last_run_at is None:
        return True
    return now - last_run_at >= min_interval


def remaining(
    now: datetime,
    last_run_at: Optional[datetime],
    min_interval: timedelta = DEFAULT_MIN_INTERVAL,
) -> timedelta:
    """Time left until the gate opens again (zero when open)."""
    if last_run_at is None:
        return timedelta(0)
    left = min_interval - (now - last_run_at)
    return max(left, timedelta(0))
