"""
Control surface for the UI collaborator.

Message-style endpoints: start / start-immediate / stop / suggest-keywords,
plus read models for status, session logs and notifications.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from db import get_state_store
from errors import AlreadyRunningError, SuggestionApiError
from runtime_state import runtime_state

from .auth import require_orchestrator_api_key

router = APIRouter(
    prefix="/runs",
    tags=["runs"],
    dependencies=[Depends(require_orchestrator_api_key)],
)


class StartRequest(BaseModel):
    keywords: Optional[List[str]] = None


class SuggestKeywordsRequest(BaseModel):
    topic: str = ""


class CredentialRequest(BaseModel):
    credential: Optional[str] = Field(default=None, max_length=512)


def _already_running_response(exc: AlreadyRunningError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "error": "already_running",
            "message": str(exc),
            "run_id": exc.run_id,
        },
    )


@router.post("/start")
async def start_run(body: Optional[StartRequest] = None):
    """Start a scheduled multi-day run."""
    await runtime_state.ensure_started(get_state_store)
    try:
        run_id = await runtime_state.start(body.keywords if body else None)
    except AlreadyRunningError as exc:
        return _already_running_response(exc)
    return {"status": "started", "run_id": run_id}


@router.post("/start-immediate")
async def start_immediate_run(body: Optional[StartRequest] = None):
    """Start back-to-back sessions right away."""
    await runtime_state.ensure_started(get_state_store)
    try:
        run_id = await runtime_state.start_immediate(body.keywords if body else None)
    except AlreadyRunningError as exc:
        return _already_running_response(exc)
    return {"status": "started", "run_id": run_id}


@router.post("/stop")
async def stop_run():
    await runtime_state.ensure_started(get_state_store)
    return await runtime_state.stop()


@router.post("/suggest-keywords")
async def suggest_keywords(body: SuggestKeywordsRequest):
    """Failures come back as `{"error": ...}`; they never touch run state."""
    await runtime_state.ensure_started(get_state_store)
    try:
        keywords = await runtime_state.suggest_keywords(body.topic)
    except SuggestionApiError as exc:
        return {"error": str(exc)}
    return {"keywords": keywords}


@router.put("/credential")
async def set_credential(body: CredentialRequest):
    await runtime_state.ensure_started(get_state_store)
    configured = await runtime_state.set_credential(body.credential)
    return {"ok": True, "hasCredential": configured}


@router.get("/status")
async def get_status():
    await runtime_state.ensure_started(get_state_store)
    return await runtime_state.status()


@router.get("/logs")
async def get_logs(limit: Optional[int] = Query(default=None, ge=1, le=500)):
    await runtime_state.ensure_started(get_state_store)
    return {"logs": await runtime_state.logs(limit)}


@router.delete("/logs")
async def clear_logs():
    await runtime_state.ensure_started(get_state_store)
    await runtime_state.clear_logs()
    return {"ok": True}


@router.get("/notifications")
async def get_notifications(limit: Optional[int] = Query(default=None, ge=1, le=200)):
    return {"notifications": await runtime_state.notifications.recent(limit)}
