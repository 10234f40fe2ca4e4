"""
SQL migrations for the orchestrator state database.

Files live in backend/db/migrations as `NNNN_description.sql`. Applied
versions and their checksums are recorded in `schema_migrations`; a file whose
checksum changed after it was applied stops startup. A file lock next to the
database keeps two processes from migrating at once.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote

from filelock import FileLock, Timeout

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_.*\.sql$")


@dataclass(frozen=True)
class MigrationFile:
    version: str
    path: Path
    checksum: str


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """Return the database file of a sqlite URL, or None for in-memory DBs."""
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = unquote(database_url[len(prefix) :].split("?", 1)[0])
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported DATABASE_URL. Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def _checksum(content: bytes) -> str:
    # CRLF checkouts must not look like edited migrations.
    try:
        content = content.decode("utf-8").replace("\r\n", "\n").encode("utf-8")
    except UnicodeDecodeError:
        pass
    return hashlib.sha256(content).hexdigest()


class MigrationRunner:
    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = (
            Path(migrations_dir)
            if migrations_dir is not None
            else Path(__file__).resolve().parent / "migrations"
        )
        configured_lock = os.getenv("STATE_MIGRATION_LOCK_FILE", "").strip()
        if configured_lock:
            self.lock_file_path: Optional[Path] = Path(configured_lock).expanduser()
        elif self.database_file is not None:
            self.lock_file_path = Path(f"{self.database_file}.migrate.lock")
        else:
            self.lock_file_path = None
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    async def apply_pending(self) -> List[str]:
        return await asyncio.to_thread(self._apply_pending_sync)

    def discover(self) -> List[MigrationFile]:
        if not self.migrations_dir.exists():
            return []
        found: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            found.append(
                MigrationFile(
                    version=match.group("version"),
                    path=path,
                    checksum=_checksum(path.read_bytes()),
                )
            )
        return found

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        database_file = self.database_file
        if not migrations or database_file is None:
            return []
        if self.lock_file_path is None:
            return self._apply(database_file, migrations)
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds):
                return self._apply(database_file, migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out waiting for migration lock: {self.lock_file_path}"
            ) from exc

    def _apply(self, database_file: Path, migrations: List[MigrationFile]) -> List[str]:
        database_file.parent.mkdir(parents=True, exist_ok=True)
        applied: List[str] = []
        with sqlite3.connect(database_file) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
            )
            recorded: Dict[str, str] = {
                str(version): str(checksum)
                for version, checksum in conn.execute(
                    "SELECT version, checksum FROM schema_migrations"
                )
            }
            for migration in migrations:
                known = recorded.get(migration.version)
                if known is not None:
                    if known != migration.checksum:
                        raise RuntimeError(
                            f"Checksum mismatch for migration {migration.version}: "
                            f"recorded={known} current={migration.checksum}"
                        )
                    continue
                conn.executescript(migration.path.read_text(encoding="utf-8"))
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied.append(migration.version)
        return applied


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
