import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import control_router
from db import close_state_store, get_state_store
from runtime_state import runtime_state

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the state store and re-arm persisted timers."""
    logger.info("Session orchestrator starting...")

    try:
        store = get_state_store()
        await store.init_db()
        started = await runtime_state.ensure_started(get_state_store)
        logger.info("State store initialized: %s", started)
    except Exception as e:
        logger.error("Failed to initialize state store: %s", e)
        raise RuntimeError("Failed to initialize state store during startup") from e

    yield

    logger.info("Shutting down orchestrator runtime...")
    await runtime_state.shutdown()
    await close_state_store()


app = FastAPI(
    title="Session Orchestrator API",
    description="Scheduled and immediate keyword session runs",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(control_router)


@app.get("/")
async def root():
    return {
        "message": "Session Orchestrator API",
        "version": APP_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }

    try:
        await get_state_store().ping()
        payload["runtime"] = await runtime_state.health()
        if not payload["runtime"].get("started"):
            payload["status"] = "degraded"
    except Exception as e:
        payload["status"] = "degraded"
        payload["runtime"] = {
            "degraded": True,
            "reason": str(e),
            "diagnostics": runtime_state.diagnostics.summary(),
        }

    return payload


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", 8000)))
