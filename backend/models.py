"""
Domain types shared by the orchestrator components.

Persisted shapes use the camelCase keys of the flat state namespace
(`isRunning`, `runId`, `startTs`, ...); Python attributes stay snake_case.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

DAY_MS = 24 * 60 * 60 * 1000

TIMER_KIND_SESSION = "session"
TIMER_KIND_END = "end"

TIMER_STATUS_PENDING = "pending"
TIMER_STATUS_FIRED = "fired"
TIMER_STATUS_CANCELLED = "cancelled"
TIMER_STATUS_MISSED = "missed"

LOG_KIND_SUCCESS = "success"
LOG_KIND_ERROR = "error"

NO_RESPONSE_MESSAGE = "no response from worker"


def now_ms() -> int:
    return int(time.time() * 1000)


class RunMode(str, Enum):
    SCHEDULED = "scheduled"
    IMMEDIATE = "immediate"


def new_run_id(mode: RunMode, started_at_ms: int) -> str:
    prefix = "run" if mode is RunMode.SCHEDULED else "immediate"
    return f"{prefix}-{started_at_ms}-{uuid.uuid4().hex[:6]}"


def session_timer_name(run_id: str, slot: int, fires_at_ms: int) -> str:
    return f"session:{run_id}:{slot:03d}:{fires_at_ms}"


def end_timer_name(run_id: str) -> str:
    return f"end:{run_id}"


@dataclass
class Run:
    id: str
    mode: RunMode
    start_ts: int
    keywords: List[str]
    days: int = 0
    days_completed: int = 0
    is_running: bool = True

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> Optional["Run"]:
        run_id = state.get("runId")
        if not state.get("isRunning") or not run_id:
            return None
        try:
            mode = RunMode(state.get("mode") or RunMode.SCHEDULED.value)
        except ValueError:
            mode = RunMode.SCHEDULED
        return cls(
            id=str(run_id),
            mode=mode,
            start_ts=int(state.get("startTs") or 0),
            keywords=[str(item) for item in (state.get("keywords") or [])],
            days=int(state.get("days") or 0),
            days_completed=int(state.get("daysCompleted") or 0),
            is_running=True,
        )

    def to_state(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "runId": self.id,
            "mode": self.mode.value,
            "keywords": list(self.keywords),
            "startTs": self.start_ts,
            "days": self.days,
            "daysCompleted": self.days_completed,
        }


@dataclass
class ScheduleEntry:
    timer_name: str
    run_id: str
    fires_at_ms: int
    kind: str = TIMER_KIND_SESSION
    slot: int = 0
    status: str = TIMER_STATUS_PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timer_name": self.timer_name,
            "run_id": self.run_id,
            "fires_at_ms": self.fires_at_ms,
            "kind": self.kind,
            "slot": self.slot,
            "status": self.status,
        }


@dataclass
class LogEntry:
    kind: str
    keyword: str
    watch_seconds: float = 0.0
    timestamp: int = field(default_factory=now_ms)
    videos_watched: Optional[int] = None
    error: Optional[str] = None
    message: str = ""
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "keyword": self.keyword,
            "watchSeconds": self.watch_seconds,
            "timestamp": self.timestamp,
            "message": self.message,
        }
        if self.videos_watched is not None:
            payload["videosWatched"] = self.videos_watched
        if self.error is not None:
            payload["error"] = self.error
        if self.run_id is not None:
            payload["runId"] = self.run_id
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "LogEntry":
        videos = payload.get("videosWatched")
        return cls(
            kind=str(payload.get("kind") or LOG_KIND_ERROR),
            keyword=str(payload.get("keyword") or ""),
            watch_seconds=max(0.0, float(payload.get("watchSeconds") or 0.0)),
            timestamp=int(payload.get("timestamp") or 0),
            videos_watched=int(videos) if videos is not None else None,
            error=payload.get("error"),
            message=str(payload.get("message") or ""),
            run_id=payload.get("runId"),
        )


class SessionResult(BaseModel):
    """Result message a worker reports back for one session."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool
    keyword: str = ""
    watch_seconds: float = Field(default=0.0, ge=0.0, alias="watchSeconds")
    videos_watched: Optional[int] = Field(default=None, ge=0, alias="videosWatched")
    error: Optional[str] = None

    @classmethod
    def no_response(cls, keyword: str) -> "SessionResult":
        return cls(success=False, keyword=keyword, error=NO_RESPONSE_MESSAGE)

    def to_log_entry(self, *, run_id: Optional[str], timestamp: int) -> LogEntry:
        if self.success:
            videos = self.videos_watched or 1
            return LogEntry(
                kind=LOG_KIND_SUCCESS,
                keyword=self.keyword,
                watch_seconds=self.watch_seconds,
                videos_watched=self.videos_watched,
                timestamp=timestamp,
                message=f"Session completed: {videos} videos watched",
                run_id=run_id,
            )
        return LogEntry(
            kind=LOG_KIND_ERROR,
            keyword=self.keyword,
            watch_seconds=self.watch_seconds,
            videos_watched=self.videos_watched,
            error=self.error or "Unknown error",
            timestamp=timestamp,
            message="Session failed",
            run_id=run_id,
        )


@dataclass
class SessionRequest:
    keyword: str
    run_id: str
    max_watch_seconds: int

    def to_message(self) -> Dict[str, Any]:
        return {
            "action": "startSession",
            "params": {
                "keyword": self.keyword,
                "runId": self.run_id,
                "config": {"maxWatchSeconds": self.max_watch_seconds},
            },
        }
