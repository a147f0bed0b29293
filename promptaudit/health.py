"""Health endpoint for PromptAudit.

Implements:
  GET /health — 503 before ready, then a database ping

/health is polled by container/cloud health probes and by the browser
extension before it starts posting captures.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from promptaudit.store.protocol import PromptStore

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Primary health check endpoint.

    Response body (200):
        {"status": "healthy", "database": "connected"}

    Response body (503, store unreachable):
        {"status": "unhealthy", "database": "disconnected"}

    Response body (503, lifespan startup still in progress):
        {"error": {"status": "starting", "message": "..."}}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "status": "starting",
                "message": "PromptAudit is starting up...",
            },
        )

    store: Optional[PromptStore] = getattr(request.app.state, "store", None)
    healthy = store is not None and await store.health_check()
    if not healthy:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected"},
        )
    return JSONResponse(content={"status": "healthy", "database": "connected"})
