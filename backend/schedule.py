"""
Randomized multi-day session schedule.

Each day gets a random number of sessions. The first one lands a random
offset into the day and every following one a random gap after the previous.
Nothing here touches the clock or global random state: callers pass the start
timestamp and a `random.Random`, so a seeded generator reproduces a schedule.
"""

from __future__ import annotations

import random
from typing import List, Optional

from models import DAY_MS

HOUR_MS = 60 * 60 * 1000


def _hours_to_ms(hours: float) -> int:
    return int(round(float(hours) * HOUR_MS))


def _validate_policy(
    days: int,
    min_sessions_per_day: int,
    max_sessions_per_day: int,
    min_gap_hours: float,
    max_gap_hours: float,
    day_offset_hours: float,
) -> None:
    if days < 0:
        raise ValueError("days must be >= 0.")
    if min_sessions_per_day < 0 or max_sessions_per_day < min_sessions_per_day:
        raise ValueError("sessions per day must satisfy 0 <= min <= max.")
    if min_gap_hours < 0 or max_gap_hours < min_gap_hours:
        raise ValueError("gap hours must satisfy 0 <= min <= max.")
    if day_offset_hours < 0:
        raise ValueError("day_offset_hours must be >= 0.")


def generate_daily_schedule(
    start_ts: int,
    days: int,
    min_sessions_per_day: int,
    max_sessions_per_day: int,
    min_gap_hours: float,
    max_gap_hours: float,
    *,
    rng: Optional[random.Random] = None,
    day_offset_hours: float = 6.0,
) -> List[List[int]]:
    """Return session timestamps (epoch ms) grouped by day index."""
    _validate_policy(
        days,
        min_sessions_per_day,
        max_sessions_per_day,
        min_gap_hours,
        max_gap_hours,
        day_offset_hours,
    )
    source = rng if rng is not None else random.Random()
    offset_max_ms = _hours_to_ms(day_offset_hours)
    gap_min_ms = _hours_to_ms(min_gap_hours)
    gap_max_ms = _hours_to_ms(max_gap_hours)

    per_day: List[List[int]] = []
    for day in range(days):
        session_count = source.randint(min_sessions_per_day, max_sessions_per_day)
        cursor = int(start_ts) + day * DAY_MS + source.randint(0, offset_max_ms)
        day_sessions: List[int] = []
        for _ in range(session_count):
            day_sessions.append(cursor)
            cursor += source.randint(gap_min_ms, gap_max_ms)
        per_day.append(day_sessions)
    return per_day


def generate_schedule(
    start_ts: int,
    days: int,
    min_sessions_per_day: int,
    max_sessions_per_day: int,
    min_gap_hours: float,
    max_gap_hours: float,
    *,
    rng: Optional[random.Random] = None,
    day_offset_hours: float = 6.0,
) -> List[int]:
    """
    Flatten the daily schedule into one non-decreasing timeline.

    A busy day can spill past the next day's first session (five 6h gaps
    span 24h), so the flattened list is ordered by time rather than by day.
    """
    daily = generate_daily_schedule(
        start_ts,
        days,
        min_sessions_per_day,
        max_sessions_per_day,
        min_gap_hours,
        max_gap_hours,
        rng=rng,
        day_offset_hours=day_offset_hours,
    )
    return sorted(ts for day in daily for ts in day)
