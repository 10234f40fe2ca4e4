"""Bounded, newest-first session log kept in the state store under `logs`."""

import logging
from typing import Any, Dict, List, Optional

from models import LogEntry

logger = logging.getLogger(__name__)

LOGS_KEY = "logs"


class LogRecorder:
    def __init__(self, store: Any, *, max_entries: int = 50) -> None:
        self._store = store
        self._max_entries = max(1, int(max_entries))

    @property
    def max_entries(self) -> int:
        return self._max_entries

    async def append(
        self, entry: LogEntry, *, expected_run_id: Optional[str] = None
    ) -> bool:
        """
        Prepend `entry` and evict the oldest entries beyond the cap.

        With `expected_run_id`, the write only happens while that run is the
        active one; the check and the write share one transaction. Returns
        whether the entry was recorded.
        """
        payload = entry.to_dict()
        keys = [LOGS_KEY]
        if expected_run_id is not None:
            keys += ["isRunning", "runId"]
        recorded = False

        def _mutate(state: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            nonlocal recorded
            if expected_run_id is not None and (
                not state.get("isRunning") or state.get("runId") != expected_run_id
            ):
                return None
            logs = list(state.get(LOGS_KEY) or [])
            logs.insert(0, payload)
            recorded = True
            return {LOGS_KEY: logs[: self._max_entries]}

        await self._store.update(_mutate, keys=keys)
        if recorded:
            logger.debug("Recorded %s log entry for %r", entry.kind, entry.keyword)
        return recorded

    async def clear(self) -> None:
        await self._store.update(lambda _state: {LOGS_KEY: []}, keys=[LOGS_KEY])
        logger.info("Session log cleared")

    async def entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        state = await self._store.get([LOGS_KEY])
        logs = list(state.get(LOGS_KEY) or [])
        if limit is not None:
            logs = logs[: max(0, int(limit))]
        return logs
