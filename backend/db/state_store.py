"""
Durable state store for the session orchestrator.

Two tables back the whole service:
- `state_entries`: the flat key/value namespace (`isRunning`, `runId`, `logs`, ...)
  with a per-key version counter.
- `schedule_entries`: one row per registered timer, indexed by run id. This is
  the run -> timer index used for cancellation and for re-arming timers after a
  restart; timer names are never parsed.

All writes go through a single asyncio lock and run inside one transaction, so
a read-modify-write (`update`) never interleaves with another writer.
"""

import asyncio
import inspect
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Union

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text, func, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from errors import StoreUnavailableError
from models import TIMER_STATUS_FIRED, TIMER_STATUS_PENDING, ScheduleEntry
from .migration_runner import apply_pending_migrations

logger = logging.getLogger(__name__)

Base = declarative_base()

StateMutator = Callable[
    [Dict[str, Any]], Union[Optional[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]
]


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ORM Models
# =============================================================================


class StateEntry(Base):
    """One key of the flat state namespace, stored as JSON."""

    __tablename__ = "state_entries"

    key = Column(String(128), primary_key=True)
    value_json = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1, server_default=text("1"))
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class ScheduleEntryRow(Base):
    """A persisted one-shot timer owned by a run."""

    __tablename__ = "schedule_entries"

    timer_name = Column(String(256), primary_key=True)
    run_id = Column(String(128), nullable=False)
    kind = Column(String(16), nullable=False, default="session")
    fires_at_ms = Column(BigInteger, nullable=False)
    slot = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default=TIMER_STATUS_PENDING)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)

    def to_entry(self) -> ScheduleEntry:
        return ScheduleEntry(
            timer_name=self.timer_name,
            run_id=self.run_id,
            fires_at_ms=int(self.fires_at_ms),
            kind=self.kind,
            slot=int(self.slot or 0),
            status=self.status,
        )


# =============================================================================
# Store
# =============================================================================


class StateStore:
    """Async SQLite-backed key/value + schedule store."""

    def __init__(self, database_url: str):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                          "sqlite+aiosqlite:///orchestrator.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._write_lock = asyncio.Lock()

    async def init_db(self) -> None:
        """Create tables and apply pending SQL migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        applied = await apply_pending_migrations(self.database_url)
        if applied:
            logger.info("Applied state store migrations: %s", ", ".join(applied))
        await self.ping()

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> None:
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            raise StoreUnavailableError(f"state store unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Key/value namespace
    # ------------------------------------------------------------------

    @staticmethod
    async def _load(
        session: AsyncSession, keys: Optional[Iterable[str]]
    ) -> Dict[str, Any]:
        stmt = select(StateEntry)
        if keys is not None:
            key_list = list(keys)
            if not key_list:
                return {}
            stmt = stmt.where(StateEntry.key.in_(key_list))
        result = await session.execute(stmt)
        return {row.key: json.loads(row.value_json) for row in result.scalars().all()}

    @staticmethod
    async def _write(session: AsyncSession, changes: Dict[str, Any]) -> None:
        for key, value in changes.items():
            payload = json.dumps(value, ensure_ascii=False)
            row = await session.get(StateEntry, key)
            if row is None:
                session.add(StateEntry(key=key, value_json=payload, version=1))
            else:
                row.value_json = payload
                row.version = int(row.version or 0) + 1

    async def get(self, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Read the given keys (or the whole namespace). Missing keys are absent."""
        async with self.session() as session:
            return await self._load(session, keys)

    async def set(self, values: Dict[str, Any]) -> None:
        await self.update(lambda _state: values, keys=[])

    async def update(
        self,
        mutator: StateMutator,
        *,
        keys: Optional[Iterable[str]] = None,
        schedule_entries: Sequence[ScheduleEntry] = (),
    ) -> Dict[str, Any]:
        """
        Atomic read-modify-write.

        `mutator` receives the current values of `keys` and returns the keys to
        change (or None). Raising inside the mutator aborts without writing.
        Schedule entries passed here are upserted in the same transaction.
        Returns the state after the write.
        """
        async with self._write_lock:
            async with self.session() as session:
                current = await self._load(session, keys)
                changes = mutator(dict(current))
                if inspect.isawaitable(changes):
                    changes = await changes
                if changes:
                    await self._write(session, changes)
                if schedule_entries:
                    await self._upsert_entries(session, schedule_entries)
        merged = dict(current)
        merged.update(changes or {})
        return merged

    async def snapshot(self) -> Dict[str, Any]:
        async with self.session() as session:
            result = await session.execute(
                select(func.count(StateEntry.key), func.max(StateEntry.version))
            )
            key_count, max_version = result.one()
        return {"keys": int(key_count or 0), "version": int(max_version or 0)}

    # ------------------------------------------------------------------
    # Schedule entries (run -> timer index)
    # ------------------------------------------------------------------

    @staticmethod
    async def _upsert_entries(
        session: AsyncSession, entries: Sequence[ScheduleEntry]
    ) -> None:
        now = _utc_now_naive()
        for entry in entries:
            stmt = sqlite_insert(ScheduleEntryRow).values(
                timer_name=entry.timer_name,
                run_id=entry.run_id,
                kind=entry.kind,
                fires_at_ms=int(entry.fires_at_ms),
                slot=int(entry.slot),
                status=entry.status,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[ScheduleEntryRow.timer_name],
                set_={
                    "run_id": stmt.excluded.run_id,
                    "kind": stmt.excluded.kind,
                    "fires_at_ms": stmt.excluded.fires_at_ms,
                    "slot": stmt.excluded.slot,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)

    async def upsert_schedule_entries(self, entries: Sequence[ScheduleEntry]) -> int:
        """Insert or refresh entries by timer name; existing status is preserved."""
        if not entries:
            return 0
        async with self._write_lock:
            async with self.session() as session:
                await self._upsert_entries(session, entries)
        return len(entries)

    async def list_schedule_entries(
        self,
        *,
        run_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[ScheduleEntry]:
        stmt = select(ScheduleEntryRow)
        if run_id is not None:
            stmt = stmt.where(ScheduleEntryRow.run_id == run_id)
        if statuses is not None:
            stmt = stmt.where(ScheduleEntryRow.status.in_(list(statuses)))
        stmt = stmt.order_by(ScheduleEntryRow.fires_at_ms, ScheduleEntryRow.timer_name)
        async with self.session() as session:
            result = await session.execute(stmt)
            return [row.to_entry() for row in result.scalars().all()]

    async def get_schedule_entry(self, timer_name: str) -> Optional[ScheduleEntry]:
        async with self.session() as session:
            row = await session.get(ScheduleEntryRow, timer_name)
            return row.to_entry() if row is not None else None

    async def claim_schedule_entry(self, timer_name: str) -> Optional[ScheduleEntry]:
        """Move a pending entry to `fired`. Returns None if it was not pending."""
        async with self._write_lock:
            async with self.session() as session:
                result = await session.execute(
                    update(ScheduleEntryRow)
                    .where(ScheduleEntryRow.timer_name == timer_name)
                    .where(ScheduleEntryRow.status == TIMER_STATUS_PENDING)
                    .values(status=TIMER_STATUS_FIRED, updated_at=_utc_now_naive())
                )
                if result.rowcount != 1:
                    return None
                row = await session.get(ScheduleEntryRow, timer_name)
                return row.to_entry() if row is not None else None

    async def mark_schedule_entries(
        self,
        timer_names: Sequence[str],
        status: str,
        *,
        only_pending: bool = True,
    ) -> int:
        if not timer_names:
            return 0
        stmt = (
            update(ScheduleEntryRow)
            .where(ScheduleEntryRow.timer_name.in_(list(timer_names)))
            .values(status=status, updated_at=_utc_now_naive())
        )
        if only_pending:
            stmt = stmt.where(ScheduleEntryRow.status == TIMER_STATUS_PENDING)
        async with self._write_lock:
            async with self.session() as session:
                result = await session.execute(stmt)
                return int(result.rowcount or 0)

    async def timer_names_for_run(
        self, run_id: str, *, statuses: Optional[Iterable[str]] = (TIMER_STATUS_PENDING,)
    ) -> List[str]:
        entries = await self.list_schedule_entries(run_id=run_id, statuses=statuses)
        return [entry.timer_name for entry in entries]


# =============================================================================
# Global Singleton
# =============================================================================

_state_store: Optional[StateStore] = None


def get_state_store() -> StateStore:
    """Get the global StateStore instance."""
    global _state_store
    if _state_store is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        _state_store = StateStore(database_url)
    return _state_store


async def close_state_store() -> None:
    """Close the global StateStore connection."""
    global _state_store
    if _state_store:
        await _state_store.close()
        _state_store = None
