"""
Session worker adapter.

A session runs in its own worker process: one fresh execution context per
session, never reused. `launch` creates the context and the returned handle
delivers the result. The start message goes to the worker's stdin as one JSON
document; the result is the last JSON object line the worker prints.
A worker that cannot be started raises `WorkerDispatchError`; one that exits
or times out without a result yields a "no response" failure result.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from pydantic import ValidationError

from errors import WorkerDispatchError
from models import SessionRequest, SessionResult

logger = logging.getLogger(__name__)


class SessionHandle(Protocol):
    async def result(self) -> SessionResult:
        ...


class SessionWorker(Protocol):
    async def launch(self, request: SessionRequest) -> SessionHandle:
        ...


def _split_command(command: Union[str, Sequence[str], None]) -> List[str]:
    if not command:
        return []
    if isinstance(command, str):
        return shlex.split(command)
    return [str(part) for part in command]


def parse_worker_output(stdout: bytes, keyword: str) -> Optional[SessionResult]:
    """Return the result carried by the last JSON object line, if any."""
    lines = stdout.decode("utf-8", errors="replace").splitlines()
    for line in reversed(lines):
        candidate = line.strip()
        if not candidate.startswith("{"):
            continue
        try:
            payload: Dict[str, Any] = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        if isinstance(payload.get("result"), dict):
            payload = payload["result"]
        payload.setdefault("keyword", keyword)
        try:
            return SessionResult.model_validate(payload)
        except ValidationError as exc:
            return SessionResult(
                success=False,
                keyword=keyword,
                error=f"invalid worker result: {exc.errors()[0].get('msg', 'validation error')}",
            )
    return None


class SubprocessSessionHandle:
    """A launched worker process awaiting its single result."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        request: SessionRequest,
        *,
        timeout_seconds: float,
    ) -> None:
        self._process = process
        self._request = request
        self._timeout_seconds = timeout_seconds

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    async def result(self) -> SessionResult:
        process = self._process
        keyword = self._request.keyword
        message = (json.dumps(self._request.to_message()) + "\n").encode("utf-8")
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(message), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError:
            await self._terminate()
            logger.warning(
                "Session worker for %r produced no result within %.0fs",
                keyword,
                self._timeout_seconds,
            )
            return SessionResult.no_response(keyword)
        except asyncio.CancelledError:
            await self._terminate()
            raise

        result = parse_worker_output(stdout, keyword)
        if result is None:
            tail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            logger.warning(
                "Session worker exited with code %s and no result: %s",
                process.returncode,
                tail or "<no stderr>",
            )
            return SessionResult.no_response(keyword)
        return result

    async def _terminate(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            return
        await self._process.wait()


class SubprocessSessionWorker:
    def __init__(
        self,
        command: Union[str, Sequence[str], None],
        *,
        timeout_seconds: float = 1200.0,
    ) -> None:
        self._argv = _split_command(command)
        self._timeout_seconds = max(0.1, float(timeout_seconds))

    @property
    def configured(self) -> bool:
        return bool(self._argv)

    async def launch(self, request: SessionRequest) -> SubprocessSessionHandle:
        if not self._argv:
            raise WorkerDispatchError("No session worker command configured.")
        try:
            process = await asyncio.create_subprocess_exec(
                *self._argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise WorkerDispatchError(f"Failed to start session worker: {exc}") from exc
        logger.debug("Launched session worker pid=%s for %r", process.pid, request.keyword)
        return SubprocessSessionHandle(
            process, request, timeout_seconds=self._timeout_seconds
        )
