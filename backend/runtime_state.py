"""
Runtime state for the session orchestrator.

This module provides:
1) Notification feed for user-facing run/session signals (process-local).
2) Diagnostics for stale timer/result events that were dropped.
3) Wiring of store, timers, worker, run manager and dispatcher behind a
   process-wide `runtime_state` singleton used by the HTTP and MCP surfaces.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from config import OrchestratorSettings
from dispatcher import SessionDispatcher
from errors import SuggestionApiError
from keyword_suggester import KeywordSuggestionClient
from log_recorder import LogRecorder
from models import TIMER_STATUS_PENDING, RunMode, now_ms
from run_manager import RUN_KEYS, RunManager
from timer_service import TimerService
from worker import SubprocessSessionWorker

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "credential"
LAST_TOPIC_KEY = "lastTopic"


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class NotificationEvent:
    kind: str
    message: str
    timestamp: str
    run_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class NotificationFeed:
    """Newest-first feed of run/session signals for the UI collaborator."""

    def __init__(self, limit: int = 50) -> None:
        self._limit = max(1, int(limit))
        self._events: Deque[NotificationEvent] = deque(maxlen=self._limit)
        self._guard = asyncio.Lock()
        self._listener: Optional[Callable[[NotificationEvent], Any]] = None

    def set_listener(self, listener: Optional[Callable[[NotificationEvent], Any]]) -> None:
        self._listener = listener

    async def publish(
        self, kind: str, message: str, *, run_id: Optional[str] = None, **details: Any
    ) -> NotificationEvent:
        event = NotificationEvent(
            kind=kind,
            message=message,
            timestamp=_utc_iso_now(),
            run_id=run_id,
            details=details,
        )
        async with self._guard:
            self._events.appendleft(event)
        listener = self._listener
        if listener is not None:
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Notification listener failed for %s", kind)
        return event

    async def recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        async with self._guard:
            snapshot = list(self._events)
        if limit is not None:
            snapshot = snapshot[: max(0, int(limit))]
        return [asdict(item) for item in snapshot]


@dataclass
class StaleEvent:
    timestamp: str
    source: str
    run_id: Optional[str]
    active_run_id: Optional[str]
    detail: str = ""


class DiagnosticsTracker:
    """In-process observability for events dropped because their run is stale."""

    SOURCES = ("timer", "end_timer", "result", "immediate_loop")

    def __init__(self, limit: int = 50) -> None:
        self._limit = max(1, int(limit))
        self._events: Deque[StaleEvent] = deque(maxlen=self._limit)
        self._counts: Counter = Counter()

    def record_stale(
        self,
        source: str,
        run_id: Optional[str],
        active_run_id: Optional[str] = None,
        *,
        detail: str = "",
    ) -> None:
        self._counts[source] += 1
        self._events.append(
            StaleEvent(
                timestamp=_utc_iso_now(),
                source=source,
                run_id=run_id,
                active_run_id=active_run_id,
                detail=detail,
            )
        )
        logger.info(
            "Ignored stale %s event for run %s (active: %s)", source, run_id, active_run_id
        )

    def stale_count(self, source: Optional[str] = None) -> int:
        if source is None:
            return sum(self._counts.values())
        return self._counts.get(source, 0)

    def summary(self) -> Dict[str, Any]:
        return {
            "window_size": self._limit,
            "stale_total": self.stale_count(),
            "stale_by_source": {name: self._counts.get(name, 0) for name in self.SOURCES},
            "recent_stale": [asdict(item) for item in reversed(self._events)],
        }


class RuntimeState:
    def __init__(self, settings: Optional[OrchestratorSettings] = None) -> None:
        self.settings = settings or OrchestratorSettings.from_env()
        self.notifications = NotificationFeed(self.settings.notification_limit)
        self.diagnostics = DiagnosticsTracker(self.settings.stale_event_limit)
        self.worker: Any = SubprocessSessionWorker(
            self.settings.worker_command,
            timeout_seconds=self.settings.worker_timeout_seconds,
        )
        self.keyword_client: Any = KeywordSuggestionClient(
            api_base=self.settings.keyword_api_base,
            timeout_seconds=self.settings.keyword_api_timeout_seconds,
            limit=self.settings.keyword_suggestion_limit,
        )
        self.store: Any = None
        self.timers: Optional[TimerService] = None
        self.log_recorder: Optional[LogRecorder] = None
        self.run_manager: Optional[RunManager] = None
        self.dispatcher: Optional[SessionDispatcher] = None
        self._guard = asyncio.Lock()
        self._started_at: Optional[str] = None

    @property
    def started(self) -> bool:
        return self._started_at is not None

    async def ensure_started(
        self,
        store_factory: Callable[[], Any],
        *,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
    ) -> Dict[str, Any]:
        """Wire components over the store and re-arm persisted timers."""
        async with self._guard:
            if self.started:
                return {"already_started": True}
            rng = rng if rng is not None else random.Random()
            settings = self.settings
            store = store_factory()
            timers = TimerService(
                store, clock=clock, missed_grace_ms=settings.missed_grace_seconds * 1000
            )
            log_recorder = LogRecorder(store, max_entries=settings.max_log_entries)
            run_manager = RunManager(
                store,
                timers,
                settings,
                notifications=self.notifications,
                diagnostics=self.diagnostics,
                clock=clock,
                rng=rng,
            )
            dispatcher = SessionDispatcher(
                run_manager,
                log_recorder,
                self.worker,
                settings,
                notifications=self.notifications,
                diagnostics=self.diagnostics,
                clock=clock,
                rng=rng,
            )
            run_manager.attach_dispatcher(dispatcher)
            timers.set_handler(dispatcher.on_timer)

            self.store = store
            self.timers = timers
            self.log_recorder = log_recorder
            self.run_manager = run_manager
            self.dispatcher = dispatcher

            run = await run_manager.active_run()
            rehydrated = await timers.rehydrate(run.id if run is not None else None)
            if run is not None and run.mode is RunMode.IMMEDIATE:
                logger.info("Resuming immediate loop for run %s", run.id)
                dispatcher.start_immediate_loop(run.id)
            if not getattr(self.worker, "configured", True):
                logger.warning(
                    "SESSION_WORKER_COMMAND is not set; every session dispatch will fail"
                )
            self._started_at = _utc_iso_now()
            return {"already_started": False, "timers": rehydrated}

    async def shutdown(self) -> None:
        async with self._guard:
            if self.dispatcher is not None:
                await self.dispatcher.shutdown()
            if self.timers is not None:
                await self.timers.shutdown()
            self._started_at = None

    def _require_started(self) -> None:
        if not self.started or self.run_manager is None:
            raise RuntimeError("Orchestrator runtime is not started")

    # ------------------------------------------------------------------
    # Control surface operations
    # ------------------------------------------------------------------

    async def start(self, keywords: Optional[List[str]] = None) -> str:
        self._require_started()
        return await self.run_manager.start(keywords)

    async def start_immediate(self, keywords: Optional[List[str]] = None) -> str:
        self._require_started()
        return await self.run_manager.start_immediate(keywords)

    async def stop(self) -> Dict[str, Any]:
        self._require_started()
        return await self.run_manager.stop()

    async def set_credential(self, credential: Optional[str]) -> bool:
        self._require_started()
        value = (credential or "").strip() or None
        await self.store.set({CREDENTIAL_KEY: value})
        return value is not None

    async def suggest_keywords(self, topic: str) -> List[str]:
        """Raises SuggestionApiError; run state is never touched."""
        self._require_started()
        topic_value = (topic or "").strip()
        if not topic_value:
            raise SuggestionApiError("No topic provided")
        await self.store.set({LAST_TOPIC_KEY: topic_value})
        stored = await self.store.get([CREDENTIAL_KEY])
        credential = stored.get(CREDENTIAL_KEY) or self.settings.keyword_api_key
        return await self.keyword_client.suggest(topic_value, credential)

    async def logs(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self._require_started()
        return await self.log_recorder.entries(limit)

    async def clear_logs(self) -> None:
        self._require_started()
        await self.log_recorder.clear()

    async def status(self) -> Dict[str, Any]:
        self._require_started()
        state = await self.store.get(RUN_KEYS + ["logs", CREDENTIAL_KEY, LAST_TOPIC_KEY])
        run_id = state.get("runId")
        pending = 0
        if state.get("isRunning") and run_id:
            pending = len(
                await self.store.timer_names_for_run(run_id, statuses=[TIMER_STATUS_PENDING])
            )
        return {
            "isRunning": bool(state.get("isRunning")),
            "runId": run_id,
            "mode": state.get("mode"),
            "keywords": list(state.get("keywords") or []),
            "startTs": state.get("startTs"),
            "days": state.get("days"),
            "daysCompleted": int(state.get("daysCompleted") or 0),
            "lastTopic": state.get(LAST_TOPIC_KEY),
            "hasCredential": bool(state.get(CREDENTIAL_KEY) or self.settings.keyword_api_key),
            "pendingTimers": pending,
            "immediateLoop": self.dispatcher.immediate_loop.status(),
            "logCount": len(state.get("logs") or []),
        }

    async def health(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "started": self.started,
            "started_at": self._started_at,
            "diagnostics": self.diagnostics.summary(),
        }
        if not self.started:
            return payload
        payload["store"] = await self.store.snapshot()
        payload["timers"] = await self.timers.status()
        payload["dispatcher"] = await self.dispatcher.status()
        return payload


runtime_state = RuntimeState()
