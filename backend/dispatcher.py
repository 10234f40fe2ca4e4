"""
Session dispatch for both run modes.

Scheduled mode is driven by the timer service: each fired session timer
launches one worker. Immediate mode is driven by `ImmediateSessionLoop`, a
single task that keeps exactly one worker in flight and moves through
Idle -> Dispatching -> AwaitingResult -> Backoff until the run stops.

Results of either mode go through `handle_result`, which only writes while the
result's run is still the active one.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence

from config import OrchestratorSettings
from errors import WorkerDispatchError
from models import (
    LOG_KIND_ERROR,
    TIMER_KIND_END,
    LogEntry,
    ScheduleEntry,
    SessionRequest,
    SessionResult,
    now_ms,
)

logger = logging.getLogger(__name__)

SCHEDULED_DISPATCH_FAILURE = "Injection failure"
IMMEDIATE_DISPATCH_FAILURE = "Session failure"


class LoopState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_RESULT = "awaiting_result"
    BACKOFF = "backoff"


class SessionDispatcher:
    def __init__(
        self,
        run_manager: Any,
        log_recorder: Any,
        worker: Any,
        settings: OrchestratorSettings,
        *,
        notifications: Any,
        diagnostics: Any,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._run_manager = run_manager
        self._log_recorder = log_recorder
        self._worker = worker
        self._settings = settings
        self._notifications = notifications
        self._diagnostics = diagnostics
        self._clock = clock
        self._rng = rng if rng is not None else random.Random()
        self.immediate_loop = ImmediateSessionLoop(self, settings, rng=self._rng)

    def choose_keyword(self, keywords: Sequence[str]) -> str:
        pool = [item for item in keywords if item] or list(self._settings.default_keywords)
        return self._rng.choice(pool)

    def build_request(self, run_id: str, keyword: str) -> SessionRequest:
        return SessionRequest(
            keyword=keyword,
            run_id=run_id,
            max_watch_seconds=self._settings.max_watch_seconds,
        )

    async def launch(self, request: SessionRequest) -> Any:
        return await self._worker.launch(request)

    # ------------------------------------------------------------------
    # Scheduled mode
    # ------------------------------------------------------------------

    async def on_timer(self, entry: ScheduleEntry) -> None:
        """Timer service handler for both session and end timers."""
        if entry.kind == TIMER_KIND_END:
            await self._run_manager.finish(entry.run_id)
            return
        await self.dispatch_scheduled(entry)

    async def dispatch_scheduled(self, entry: ScheduleEntry) -> bool:
        run = await self._run_manager.current_run(entry.run_id)
        if run is None:
            active = await self._run_manager.active_run()
            self._diagnostics.record_stale(
                "timer", entry.run_id, active.id if active else None, detail=entry.timer_name
            )
            return False

        keyword = self.choose_keyword(run.keywords)
        request = self.build_request(run.id, keyword)
        try:
            handle = await self.launch(request)
            logger.info("Dispatched scheduled session %s with %r", entry.timer_name, keyword)
            result = await self.await_result(handle, keyword)
            return await self.handle_result(run.id, result)
        except asyncio.CancelledError:
            raise
        except WorkerDispatchError as exc:
            logger.warning("Scheduled dispatch for %s failed: %s", entry.timer_name, exc)
            await self.record_unexpected_failure(
                run.id, keyword, exc, message=SCHEDULED_DISPATCH_FAILURE
            )
        except Exception as exc:
            logger.exception("Scheduled session %s failed", entry.timer_name)
            await self.record_unexpected_failure(
                run.id, keyword, exc, message=SCHEDULED_DISPATCH_FAILURE
            )
        return False

    # ------------------------------------------------------------------
    # Result handling (both modes)
    # ------------------------------------------------------------------

    async def await_result(self, handle: Any, keyword: str) -> SessionResult:
        try:
            return await handle.result()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Session worker failed while awaiting a result")
            return SessionResult(success=False, keyword=keyword, error=str(exc) or "worker error")

    async def handle_result(self, run_id: str, result: SessionResult) -> bool:
        """Log one worker result for `run_id`. Returns False if the run is stale."""
        entry = result.to_log_entry(run_id=run_id, timestamp=self._clock())
        recorded = await self._log_recorder.append(entry, expected_run_id=run_id)
        if not recorded:
            active = await self._run_manager.active_run()
            self._diagnostics.record_stale(
                "result", run_id, active.id if active else None, detail=result.keyword
            )
            return False

        await self._run_manager.record_progress(run_id)
        if result.success:
            await self._notifications.publish(
                "session_complete", f"Watched: {result.keyword}", run_id=run_id
            )
        else:
            logger.info("Session for %r failed: %s", result.keyword, entry.error)
            await self._notifications.publish(
                "session_failed",
                f"Session failed for {result.keyword}: {entry.error}",
                run_id=run_id,
            )
        return True

    async def record_dispatch_failure(
        self, run_id: str, keyword: str, error: str, *, message: str
    ) -> bool:
        entry = LogEntry(
            kind=LOG_KIND_ERROR,
            keyword=keyword,
            error=error,
            timestamp=self._clock(),
            message=message,
            run_id=run_id,
        )
        return await self._log_recorder.append(entry, expected_run_id=run_id)

    async def record_unexpected_failure(
        self, run_id: str, keyword: str, exc: BaseException, *, message: str
    ) -> bool:
        """Error entry for an exception that escaped a session; never raises."""
        try:
            return await self.record_dispatch_failure(
                run_id, keyword, str(exc) or type(exc).__name__, message=message
            )
        except Exception:
            logger.exception("Could not record session failure for run %s", run_id)
            return False

    # ------------------------------------------------------------------
    # Immediate mode
    # ------------------------------------------------------------------

    def start_immediate_loop(self, run_id: str) -> None:
        self.immediate_loop.start(run_id)

    def stop_immediate_loop(self) -> None:
        self.immediate_loop.stop()

    async def is_active(self, run_id: str) -> bool:
        return await self._run_manager.current_run(run_id) is not None

    async def current_run(self, run_id: str) -> Any:
        return await self._run_manager.current_run(run_id)

    def record_stale(self, source: str, run_id: str, detail: str = "") -> None:
        self._diagnostics.record_stale(source, run_id, None, detail=detail)

    async def status(self) -> Dict[str, Any]:
        return {
            "worker_configured": bool(getattr(self._worker, "configured", True)),
            "immediate_loop": self.immediate_loop.status(),
        }

    async def shutdown(self) -> None:
        await self.immediate_loop.shutdown()


class ImmediateSessionLoop:
    """Back-to-back sessions for one immediate run, one worker at a time."""

    def __init__(
        self,
        dispatcher: SessionDispatcher,
        settings: OrchestratorSettings,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._settings = settings
        self._rng = rng if rng is not None else random.Random()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._run_id: Optional[str] = None
        self._state = LoopState.IDLE
        self._iterations = 0
        self._dispatch_failures = 0
        self._last_delay_seconds: Optional[float] = None

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, run_id: str) -> None:
        if self.running():
            if self._run_id == run_id:
                return
            self.stop()
        self._run_id = run_id
        self._iterations = 0
        self._dispatch_failures = 0
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(run_id, self._stop_event), name=f"immediate-loop-{run_id}"
        )

    def stop(self) -> None:
        """Ask the loop to exit at its next boundary. In-flight work is not aborted."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def join(self, timeout: Optional[float] = None) -> None:
        task = self._task
        if task is None:
            return
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    async def shutdown(self) -> None:
        self.stop()
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def next_delay(self, *, dispatch_failed: bool) -> float:
        if dispatch_failed:
            return self._settings.immediate_failure_delay_seconds
        return self._rng.uniform(
            self._settings.immediate_min_delay_seconds,
            self._settings.immediate_max_delay_seconds,
        )

    async def _should_continue(self, run_id: str, stop_event: asyncio.Event) -> bool:
        if stop_event.is_set():
            return False
        return await self._dispatcher.is_active(run_id)

    async def _run_once(self, run_id: str, stop_event: asyncio.Event) -> Optional[bool]:
        """One Dispatching -> AwaitingResult pass.

        Returns whether the pass failed (which selects the backoff delay), or
        None once the run is no longer active.
        """
        dispatcher = self._dispatcher
        if not await self._should_continue(run_id, stop_event):
            return None
        run = await dispatcher.current_run(run_id)
        if run is None:
            return None
        self._state = LoopState.DISPATCHING
        self._iterations += 1
        keyword = dispatcher.choose_keyword(run.keywords)
        failed = False
        try:
            handle = await dispatcher.launch(dispatcher.build_request(run_id, keyword))
            self._state = LoopState.AWAITING_RESULT
            result = await dispatcher.await_result(handle, keyword)
            await dispatcher.handle_result(run_id, result)
        except asyncio.CancelledError:
            raise
        except WorkerDispatchError as exc:
            failed = True
            self._dispatch_failures += 1
            logger.warning("Immediate dispatch failed: %s", exc)
            await dispatcher.record_unexpected_failure(
                run_id, keyword, exc, message=IMMEDIATE_DISPATCH_FAILURE
            )
        except Exception as exc:
            failed = True
            self._dispatch_failures += 1
            logger.exception("Immediate session for %s failed", run_id)
            await dispatcher.record_unexpected_failure(
                run_id, keyword, exc, message=IMMEDIATE_DISPATCH_FAILURE
            )

        if not await self._should_continue(run_id, stop_event):
            return None
        return failed

    async def _run(self, run_id: str, stop_event: asyncio.Event) -> None:
        try:
            while not stop_event.is_set():
                try:
                    failed = await self._run_once(run_id, stop_event)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Immediate loop for %s could not read run state", run_id)
                    failed = True
                if failed is None:
                    break
                self._state = LoopState.BACKOFF
                delay = self.next_delay(dispatch_failed=failed)
                self._last_delay_seconds = delay
                logger.debug("Next immediate session in %.1fs", delay)
                if delay <= 0:
                    await asyncio.sleep(0)
                    continue
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._task is None or self._task is asyncio.current_task():
                self._state = LoopState.IDLE
        if stop_event.is_set():
            logger.info("Immediate loop for %s stopped", run_id)
        else:
            self._dispatcher.record_stale("immediate_loop", run_id)
            logger.info("Immediate loop for %s exited; run is no longer active", run_id)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "running": self.running(),
            "run_id": self._run_id,
            "iterations": self._iterations,
            "dispatch_failures": self._dispatch_failures,
            "last_delay_seconds": self._last_delay_seconds,
        }
