"""
Environment-driven settings for the session orchestrator.

All knobs are read once through `OrchestratorSettings.from_env()`; components
take the settings object by injection so tests can build their own.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

DEFAULT_KEYWORDS: Tuple[str, ...] = (
    "popular tech news",
    "trending music",
    "funny cat videos",
)
DEFAULT_KEYWORD_API_BASE = (
    "https://generativelanguage.googleapis.com/v1beta2/models/"
    "text-bison-001:generateText"
)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip()


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    items = tuple(item.strip() for item in raw.split(",") if item.strip())
    return items or default


@dataclass(frozen=True)
class OrchestratorSettings:
    days: int = 7
    min_sessions_per_day: int = 3
    max_sessions_per_day: int = 5
    min_gap_hours: float = 2.0
    max_gap_hours: float = 6.0
    day_offset_hours: float = 6.0
    end_buffer_seconds: int = 60
    missed_grace_seconds: int = 3600

    max_watch_seconds: int = 15 * 60
    worker_command: str = ""
    worker_timeout_seconds: float = 15 * 60 + 300
    default_keywords: Tuple[str, ...] = DEFAULT_KEYWORDS
    max_keywords: int = 20

    immediate_min_delay_seconds: float = 30.0
    immediate_max_delay_seconds: float = 120.0
    immediate_failure_delay_seconds: float = 30.0

    max_log_entries: int = 50
    notification_limit: int = 50
    stale_event_limit: int = 50

    keyword_api_base: str = DEFAULT_KEYWORD_API_BASE
    keyword_api_key: str = ""
    keyword_api_timeout_seconds: float = 20.0
    keyword_suggestion_limit: int = 12

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        min_sessions = _env_int("SCHEDULE_MIN_SESSIONS_PER_DAY", 3, minimum=1)
        max_sessions = max(
            min_sessions, _env_int("SCHEDULE_MAX_SESSIONS_PER_DAY", 5, minimum=1)
        )
        min_gap = _env_float("SCHEDULE_MIN_GAP_HOURS", 2.0)
        max_gap = max(min_gap, _env_float("SCHEDULE_MAX_GAP_HOURS", 6.0))
        min_delay = _env_float("IMMEDIATE_MIN_DELAY_SECONDS", 30.0)
        max_delay = max(min_delay, _env_float("IMMEDIATE_MAX_DELAY_SECONDS", 120.0))
        max_watch = _env_int("SESSION_MAX_WATCH_SECONDS", 15 * 60, minimum=1)
        return cls(
            days=_env_int("SCHEDULE_DAYS", 7, minimum=1),
            min_sessions_per_day=min_sessions,
            max_sessions_per_day=max_sessions,
            min_gap_hours=min_gap,
            max_gap_hours=max_gap,
            day_offset_hours=_env_float("SCHEDULE_DAY_OFFSET_HOURS", 6.0),
            end_buffer_seconds=_env_int("SCHEDULE_END_BUFFER_SECONDS", 60),
            missed_grace_seconds=_env_int("SCHEDULE_MISSED_GRACE_SECONDS", 3600),
            max_watch_seconds=max_watch,
            worker_command=_env_str("SESSION_WORKER_COMMAND"),
            worker_timeout_seconds=_env_float(
                "SESSION_WORKER_TIMEOUT_SECONDS", float(max_watch + 300), minimum=1.0
            ),
            default_keywords=_env_list("SESSION_DEFAULT_KEYWORDS", DEFAULT_KEYWORDS),
            max_keywords=_env_int("SESSION_MAX_KEYWORDS", 20, minimum=1),
            immediate_min_delay_seconds=min_delay,
            immediate_max_delay_seconds=max_delay,
            immediate_failure_delay_seconds=_env_float(
                "IMMEDIATE_FAILURE_DELAY_SECONDS", 30.0
            ),
            max_log_entries=_env_int("LOG_MAX_ENTRIES", 50, minimum=1),
            keyword_api_base=_env_str("KEYWORD_API_BASE", DEFAULT_KEYWORD_API_BASE),
            keyword_api_key=_env_str("KEYWORD_API_KEY"),
            keyword_api_timeout_seconds=_env_float(
                "KEYWORD_API_TIMEOUT_SECONDS", 20.0, minimum=1.0
            ),
            keyword_suggestion_limit=_env_int("KEYWORD_SUGGESTION_LIMIT", 12, minimum=1),
        )
