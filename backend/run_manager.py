"""
Run lifecycle: start, start-immediate, stop and the terminal "end" timer.

The persisted state is the only authority on whether a run is active. Every
check-and-set goes through `StateStore.update`, so two concurrent starts
cannot both win and a restart sees exactly what was committed.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Callable, Dict, Iterable, List, Optional

from config import OrchestratorSettings
from errors import AlreadyRunningError
from models import (
    DAY_MS,
    TIMER_KIND_END,
    TIMER_KIND_SESSION,
    Run,
    RunMode,
    ScheduleEntry,
    end_timer_name,
    new_run_id,
    now_ms,
    session_timer_name,
)
from schedule import generate_schedule

logger = logging.getLogger(__name__)

RUN_KEYS = ["isRunning", "runId", "mode", "keywords", "startTs", "days", "daysCompleted"]

_CLEARED_RUN_STATE: Dict[str, Any] = {
    "isRunning": False,
    "runId": None,
    "mode": None,
    "startTs": None,
    "days": None,
    "daysCompleted": 0,
}


def normalize_keywords(
    keywords: Optional[Iterable[str]], settings: OrchestratorSettings
) -> List[str]:
    cleaned = [str(item).strip() for item in (keywords or [])]
    cleaned = [item for item in cleaned if item][: settings.max_keywords]
    return cleaned or list(settings.default_keywords)


def days_completed(start_ts: int, days: int, now: int) -> int:
    return max(0, min(days, (now - start_ts) // DAY_MS + 1))


class RunManager:
    def __init__(
        self,
        store: Any,
        timers: Any,
        settings: OrchestratorSettings,
        *,
        notifications: Any,
        diagnostics: Any,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._timers = timers
        self._settings = settings
        self._notifications = notifications
        self._diagnostics = diagnostics
        self._clock = clock
        self._rng = rng if rng is not None else random.Random()
        self._dispatcher: Any = None

    def attach_dispatcher(self, dispatcher: Any) -> None:
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def active_run(self) -> Optional[Run]:
        return Run.from_state(await self._store.get(RUN_KEYS))

    async def current_run(self, run_id: Optional[str]) -> Optional[Run]:
        """The active run if `run_id` is still the authoritative one."""
        run = await self.active_run()
        if run is None or not run_id or run.id != run_id:
            return None
        return run

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_schedule(self, run_id: str, started_at: int) -> List[ScheduleEntry]:
        settings = self._settings
        timestamps = generate_schedule(
            started_at,
            settings.days,
            settings.min_sessions_per_day,
            settings.max_sessions_per_day,
            settings.min_gap_hours,
            settings.max_gap_hours,
            rng=self._rng,
            day_offset_hours=settings.day_offset_hours,
        )
        entries = [
            ScheduleEntry(
                timer_name=session_timer_name(run_id, slot, fires_at),
                run_id=run_id,
                fires_at_ms=fires_at,
                kind=TIMER_KIND_SESSION,
                slot=slot,
            )
            for slot, fires_at in enumerate(timestamps)
        ]
        entries.append(
            ScheduleEntry(
                timer_name=end_timer_name(run_id),
                run_id=run_id,
                fires_at_ms=started_at
                + settings.days * DAY_MS
                + settings.end_buffer_seconds * 1000,
                kind=TIMER_KIND_END,
                slot=len(timestamps),
            )
        )
        return entries

    async def _claim_run(
        self, run: Run, entries: List[ScheduleEntry]
    ) -> None:
        def _mutate(state: Dict[str, Any]) -> Dict[str, Any]:
            if state.get("isRunning"):
                raise AlreadyRunningError(state.get("runId"))
            return run.to_state()

        try:
            await self._store.update(_mutate, keys=RUN_KEYS, schedule_entries=entries)
        except AlreadyRunningError as exc:
            logger.info("Start rejected: run %s is already active", exc.run_id)
            await self._notifications.publish(
                "already_running",
                "A run is already active. Stop it first to start a new one.",
                run_id=exc.run_id,
            )
            raise

    async def start(self, keywords: Optional[Iterable[str]] = None) -> str:
        """Start a scheduled multi-day run. Raises AlreadyRunningError."""
        started_at = self._clock()
        run_id = new_run_id(RunMode.SCHEDULED, started_at)
        run = Run(
            id=run_id,
            mode=RunMode.SCHEDULED,
            start_ts=started_at,
            keywords=normalize_keywords(keywords, self._settings),
            days=self._settings.days,
        )
        entries = self.build_schedule(run_id, started_at)
        await self._claim_run(run, entries)
        armed = self._timers.arm(entries)
        logger.info(
            "Started run %s: %d session timer(s) over %d day(s)",
            run_id,
            len(entries) - 1,
            run.days,
        )
        await self._notifications.publish(
            "run_started",
            f"Running a {run.days}-day schedule using {len(run.keywords)} keywords.",
            run_id=run_id,
            timers=armed,
        )
        return run_id

    async def start_immediate(self, keywords: Optional[Iterable[str]] = None) -> str:
        """Start back-to-back sessions with no timers. Raises AlreadyRunningError."""
        started_at = self._clock()
        run_id = new_run_id(RunMode.IMMEDIATE, started_at)
        run = Run(
            id=run_id,
            mode=RunMode.IMMEDIATE,
            start_ts=started_at,
            keywords=normalize_keywords(keywords, self._settings),
        )
        await self._claim_run(run, [])
        logger.info("Started immediate run %s", run_id)
        await self._notifications.publish(
            "immediate_started",
            f"Starting immediate sessions with {len(run.keywords)} keywords.",
            run_id=run_id,
        )
        if self._dispatcher is not None:
            self._dispatcher.start_immediate_loop(run_id)
        return run_id

    async def _clear_run(self, expected_run_id: Optional[str] = None) -> Optional[str]:
        """Clear run fields; returns the run id that was active, if any."""
        previous: Dict[str, Any] = {}

        def _mutate(state: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            previous.update(state)
            if expected_run_id is not None and (
                not state.get("isRunning") or state.get("runId") != expected_run_id
            ):
                return None
            return dict(_CLEARED_RUN_STATE)

        await self._store.update(_mutate, keys=RUN_KEYS)
        if expected_run_id is not None and previous.get("runId") != expected_run_id:
            return None
        return previous.get("runId")

    async def stop(self) -> Dict[str, Any]:
        """Stop whatever is running. Safe to call when nothing is."""
        run_id = await self._clear_run()
        cancelled: List[str] = []
        if run_id:
            cancelled = await self._timers.cancel_run(run_id)
        if self._dispatcher is not None:
            self._dispatcher.stop_immediate_loop()
        if run_id:
            logger.info("Stopped run %s", run_id)
            await self._notifications.publish(
                "run_stopped", "Sessions stopped by user.", run_id=run_id
            )
        return {
            "status": "stopped",
            "run_id": run_id,
            "was_running": bool(run_id),
            "cancelled_timers": len(cancelled),
        }

    async def finish(self, run_id: str) -> bool:
        """Terminal timer: end `run_id` regardless of progress."""
        cleared = await self._clear_run(expected_run_id=run_id)
        if cleared is None:
            current = await self.active_run()
            self._diagnostics.record_stale(
                "end_timer", run_id, current.id if current else None
            )
            return False
        await self._timers.cancel_run(run_id)
        logger.info("Run %s finished", run_id)
        await self._notifications.publish(
            "run_finished",
            f"{self._settings.days}-day schedule finished.",
            run_id=run_id,
        )
        return True

    async def record_progress(self, run_id: str) -> Optional[int]:
        """Recompute daysCompleted for a scheduled run after a session."""
        now = self._clock()
        updated: Dict[str, int] = {}

        def _mutate(state: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if (
                not state.get("isRunning")
                or state.get("runId") != run_id
                or state.get("mode") != RunMode.SCHEDULED.value
            ):
                return None
            days = int(state.get("days") or self._settings.days)
            value = days_completed(int(state.get("startTs") or now), days, now)
            updated["daysCompleted"] = value
            return {"daysCompleted": value}

        await self._store.update(
            _mutate, keys=["isRunning", "runId", "mode", "startTs", "days"]
        )
        return updated.get("daysCompleted")
