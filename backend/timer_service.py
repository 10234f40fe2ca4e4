"""
One-shot named timers backed by persisted schedule entries.

Every timer is first written to `schedule_entries`, then armed on the running
event loop. Because the rows are the source of truth, `rehydrate()` can rebuild
the in-memory timer set after a restart, and re-registering a name only
replaces its handle. A fire first claims the row (`pending -> fired`), so a
slot runs at most once even if it was armed twice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from models import (
    TIMER_KIND_SESSION,
    TIMER_STATUS_CANCELLED,
    TIMER_STATUS_MISSED,
    TIMER_STATUS_PENDING,
    ScheduleEntry,
    now_ms,
)

logger = logging.getLogger(__name__)

TimerHandler = Callable[[ScheduleEntry], Awaitable[None]]


class TimerService:
    def __init__(
        self,
        store: Any,
        *,
        clock: Callable[[], int] = now_ms,
        missed_grace_ms: int = 60 * 60 * 1000,
    ) -> None:
        self._store = store
        self._clock = clock
        self._missed_grace_ms = max(0, int(missed_grace_ms))
        self._handler: Optional[TimerHandler] = None
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._handle_runs: Dict[str, str] = {}
        self._fire_tasks: Set[asyncio.Task] = set()

        self._armed_total = 0
        self._fired_total = 0
        self._duplicate_total = 0
        self._cancelled_total = 0
        self._missed_total = 0
        self._last_fired_name: Optional[str] = None

    def set_handler(self, handler: TimerHandler) -> None:
        self._handler = handler

    async def register(self, entries: Sequence[ScheduleEntry]) -> int:
        """Persist (idempotently) and arm the given entries."""
        await self._store.upsert_schedule_entries(entries)
        return self.arm(entries)

    def arm(self, entries: Sequence[ScheduleEntry]) -> int:
        """Arm entries that are already persisted. Returns how many were armed."""
        now = self._clock()
        armed = 0
        for entry in entries:
            if entry.status != TIMER_STATUS_PENDING:
                continue
            self._arm_one(entry, delay_ms=max(0, entry.fires_at_ms - now))
            armed += 1
        return armed

    def _arm_one(self, entry: ScheduleEntry, *, delay_ms: int) -> None:
        existing = self._handles.pop(entry.timer_name, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._handles[entry.timer_name] = loop.call_later(
            delay_ms / 1000.0, self._spawn_fire, entry.timer_name
        )
        self._handle_runs[entry.timer_name] = entry.run_id
        self._armed_total += 1
        logger.debug("Armed timer %s in %.1fs", entry.timer_name, delay_ms / 1000.0)

    def _spawn_fire(self, timer_name: str) -> None:
        self._handles.pop(timer_name, None)
        self._handle_runs.pop(timer_name, None)
        task = asyncio.create_task(self.fire(timer_name), name=f"timer-{timer_name}")
        self._fire_tasks.add(task)
        task.add_done_callback(self._fire_tasks.discard)

    async def fire(self, timer_name: str) -> bool:
        """Claim and dispatch one timer. Returns False if it was not pending."""
        entry = await self._store.claim_schedule_entry(timer_name)
        if entry is None:
            self._duplicate_total += 1
            logger.debug("Timer %s is no longer pending; skipping", timer_name)
            return False
        self._fired_total += 1
        self._last_fired_name = timer_name
        if self._handler is None:
            logger.warning("Timer %s fired with no handler attached", timer_name)
            return True
        try:
            await self._handler(entry)
        except Exception:
            logger.exception("Timer handler failed for %s", timer_name)
        return True

    async def cancel_run(self, run_id: str) -> List[str]:
        """Cancel every pending timer of `run_id`; other runs are untouched."""
        names = set(await self._store.timer_names_for_run(run_id))
        names.update(
            name for name, owner in self._handle_runs.items() if owner == run_id
        )
        for name in names:
            handle = self._handles.pop(name, None)
            self._handle_runs.pop(name, None)
            if handle is not None:
                handle.cancel()
        cancelled = sorted(names)
        marked = await self._store.mark_schedule_entries(cancelled, TIMER_STATUS_CANCELLED)
        self._cancelled_total += marked
        if cancelled:
            logger.info("Cancelled %d timer(s) for run %s", len(cancelled), run_id)
        return cancelled

    async def rehydrate(self, active_run_id: Optional[str]) -> Dict[str, Any]:
        """Re-arm every pending entry of `active_run_id` found in the store.

        Pending entries of any other run were left behind by a stop that did
        not get to cancel them; they are marked cancelled instead of armed.
        """
        entries = await self._store.list_schedule_entries(statuses=[TIMER_STATUS_PENDING])
        now = self._clock()
        orphaned: List[str] = []
        missed: List[str] = []
        armable: List[ScheduleEntry] = []
        for entry in entries:
            if entry.run_id != active_run_id:
                orphaned.append(entry.timer_name)
                continue
            overdue_ms = now - entry.fires_at_ms
            if entry.kind == TIMER_KIND_SESSION and overdue_ms > self._missed_grace_ms:
                missed.append(entry.timer_name)
                continue
            armable.append(entry)
        if orphaned:
            self._cancelled_total += await self._store.mark_schedule_entries(
                orphaned, TIMER_STATUS_CANCELLED
            )
            logger.warning("Cancelled %d timer(s) left over from inactive runs", len(orphaned))
        if missed:
            self._missed_total += await self._store.mark_schedule_entries(
                missed, TIMER_STATUS_MISSED
            )
            logger.warning("Skipped %d session timer(s) missed while offline", len(missed))
        armed = self.arm(armable)
        logger.info("Rehydrated %d timer(s) from the state store", armed)
        return {"armed": armed, "missed": len(missed), "cancelled": len(orphaned)}

    def armed_names(self, run_id: Optional[str] = None) -> List[str]:
        if run_id is None:
            return sorted(self._handles)
        return sorted(
            name for name, owner in self._handle_runs.items() if owner == run_id
        )

    async def status(self) -> Dict[str, Any]:
        return {
            "armed": len(self._handles),
            "in_flight": len(self._fire_tasks),
            "missed_grace_ms": self._missed_grace_ms,
            "last_fired": self._last_fired_name,
            "stats": {
                "armed": self._armed_total,
                "fired": self._fired_total,
                "duplicate": self._duplicate_total,
                "cancelled": self._cancelled_total,
                "missed": self._missed_total,
            },
        }

    async def shutdown(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        self._handle_runs.clear()
        tasks = list(self._fire_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
