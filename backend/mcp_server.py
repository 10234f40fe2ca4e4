"""
MCP Server for the Session Orchestrator

This module exposes the orchestrator control surface as MCP tools so an agent
can start, stop and inspect runs:
- start_run / start_immediate_run / stop_run      - run lifecycle
- suggest_keywords                                - keyword ideas for a topic
- orchestrator_status / read_session_logs         - read models
- clear_session_logs                              - reset the session log

Every tool returns a JSON string carrying an `ok` flag.
"""

import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from db import close_state_store, get_state_store
from errors import AlreadyRunningError, SuggestionApiError
from runtime_state import runtime_state

# Initialize FastMCP server
mcp = FastMCP("Session Orchestrator")

_READ_LOGS_HARD_MAX = 500


def _utc_iso_now() -> str:
    """Return current UTC timestamp in ISO-8601 format with trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _normalize_keywords_arg(keywords: Any) -> Optional[List[str]]:
    if keywords is None:
        return None
    if isinstance(keywords, str):
        return [item.strip() for item in keywords.split(",") if item.strip()]
    if isinstance(keywords, (list, tuple)):
        return [str(item) for item in keywords]
    raise ValueError("keywords must be a list of strings or a comma-separated string.")


async def _ensure_runtime() -> None:
    await runtime_state.ensure_started(get_state_store)


# =============================================================================
# MCP Tools
# =============================================================================


@mcp.tool()
async def start_run(keywords: Optional[List[str]] = None) -> str:
    """
    Start a scheduled multi-day run.

    Sessions are spread over the configured number of days at randomized
    times. Fails with `already_running` while another run is active.

    Args:
        keywords: Search keywords; empty or missing uses the default list.
    """
    try:
        normalized = _normalize_keywords_arg(keywords)
        await _ensure_runtime()
        run_id = await runtime_state.start(normalized)
    except AlreadyRunningError as e:
        return _tool_response(
            ok=False, message=str(e), error="already_running", run_id=e.run_id
        )
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})
    return _tool_response(ok=True, message="Run started.", status="started", run_id=run_id)


@mcp.tool()
async def start_immediate_run(keywords: Optional[List[str]] = None) -> str:
    """
    Start sessions back-to-back right away, one at a time, until stopped.

    Args:
        keywords: Search keywords; empty or missing uses the default list.
    """
    try:
        normalized = _normalize_keywords_arg(keywords)
        await _ensure_runtime()
        run_id = await runtime_state.start_immediate(normalized)
    except AlreadyRunningError as e:
        return _tool_response(
            ok=False, message=str(e), error="already_running", run_id=e.run_id
        )
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})
    return _tool_response(
        ok=True, message="Immediate sessions started.", status="started", run_id=run_id
    )


@mcp.tool()
async def stop_run() -> str:
    """Stop the active run. Calling it with nothing running is not an error."""
    try:
        await _ensure_runtime()
        result = await runtime_state.stop()
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})
    message = "Run stopped." if result.get("was_running") else "No run was active."
    return _tool_response(ok=True, message=message, **result)


@mcp.tool()
async def suggest_keywords(topic: str) -> str:
    """
    Ask the keyword suggestion API for search keywords about a topic.

    Args:
        topic: Free-form topic, e.g. "home espresso".
    """
    if not isinstance(topic, str):
        return _to_json({"ok": False, "error": "topic must be a string."})
    try:
        await _ensure_runtime()
        keywords = await runtime_state.suggest_keywords(topic)
    except SuggestionApiError as e:
        return _to_json({"ok": False, "error": str(e), "status_code": e.status_code})
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})
    return _to_json({"ok": True, "keywords": keywords})


@mcp.tool()
async def orchestrator_status() -> str:
    """Current run state, timer/loop status and stale-event diagnostics."""
    try:
        await _ensure_runtime()
        payload = {
            "ok": True,
            "timestamp": _utc_iso_now(),
            "state": await runtime_state.status(),
            "runtime": await runtime_state.health(),
        }
        return _to_json(payload)
    except Exception as e:
        return _to_json(
            {
                "ok": False,
                "degraded": True,
                "reason": str(e),
                "timestamp": _utc_iso_now(),
            }
        )


@mcp.tool()
async def read_session_logs(limit: int = 20) -> str:
    """
    Read the newest session log entries.

    Args:
        limit: How many entries to return (newest first).
    """
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        return _to_json({"ok": False, "error": "limit must be a positive integer."})
    try:
        await _ensure_runtime()
        logs = await runtime_state.logs(min(limit, _READ_LOGS_HARD_MAX))
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})
    return _to_json({"ok": True, "count": len(logs), "logs": logs})


@mcp.tool()
async def clear_session_logs() -> str:
    """Remove every session log entry. Run state is left alone."""
    try:
        await _ensure_runtime()
        await runtime_state.clear_logs()
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})
    return _tool_response(ok=True, message="Session log cleared.")


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Initialize the database and start the runtime, re-arming persisted timers."""
    store = get_state_store()
    await store.init_db()
    await runtime_state.ensure_started(get_state_store)


async def shutdown():
    await runtime_state.shutdown()
    await close_state_store()


@asynccontextmanager
async def runtime_lifespan(_app: Any = None) -> AsyncIterator[None]:
    """
    Run startup/shutdown inside the serving event loop.

    Timers are bound to the loop that armed them, so the runtime must start in
    the loop that serves tool calls rather than in a separate bootstrap loop.
    """
    await startup()
    try:
        yield
    finally:
        await shutdown()


async def serve_stdio() -> None:
    async with runtime_lifespan():
        await mcp.run_stdio_async()


if __name__ == "__main__":
    import asyncio

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    asyncio.run(serve_stdio())
