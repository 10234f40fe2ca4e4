import logging
import os
import sys
from typing import Awaitable, Callable

import uvicorn
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

# Ensure we can import from backend dir
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from api.auth import check_api_key, ORCHESTRATOR_API_KEY_HEADER
from mcp_server import mcp, runtime_lifespan

logger = logging.getLogger(__name__)


def apply_orchestrator_api_key_middleware(app: ASGIApp) -> ASGIApp:
    async def _auth_middleware(request: Request, call_next: Callable[[Request], Awaitable]):
        client = getattr(request, "client", None)
        reason = check_api_key(
            client_host=getattr(client, "host", None),
            header_key=request.headers.get(ORCHESTRATOR_API_KEY_HEADER),
            authorization=request.headers.get("Authorization"),
        )
        if reason is not None:
            return JSONResponse(
                status_code=401,
                content={
                    "error": "orchestrator_sse_auth_failed",
                    "reason": reason,
                },
                headers={"WWW-Authenticate": "Bearer"},
            )
        return await call_next(request)

    app.middleware("http")(_auth_middleware)
    return app


def create_sse_app() -> ASGIApp:
    app = mcp.sse_app("/sse")
    # Starts the runtime (and its timers) once per server, inside uvicorn's loop.
    app.router.lifespan_context = runtime_lifespan
    return apply_orchestrator_api_key_middleware(app)


def main():
    """
    Run the Session Orchestrator MCP server over SSE (Server-Sent Events),
    for clients that don't support stdio.
    """
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    logger.info("Initializing Session Orchestrator SSE server...")

    app = create_sse_app()

    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info("Starting SSE server on http://%s:%s (endpoint /sse)", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
