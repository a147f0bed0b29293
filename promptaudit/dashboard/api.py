"""Dashboard API endpoints for PromptAudit.

All endpoints read through app.state.dashboard_service and are scoped to the
organization resolved by require_org_id().

Routes (prefixed with /api):
    GET /dashboard/summary   — totals, severity breakdown, per-tool counts
    GET /dashboard/trend     — per-day prompts and high-risk prompts
    GET /dashboard/risks     — paginated flagged findings, optional level filter
    GET /dashboard/users     — per-subject activity
    GET /prompts/{prompt_id} — one prompt with its findings

Errors: 400 for out-of-range parameters, 401 without organization context,
404 for an unknown prompt, 500 {"error": "Failed to fetch <resource>"} when
the store fails, 503 before startup completes.
"""

from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from promptaudit.constants import DEFAULT_PAGE_LIMIT
from promptaudit.dashboard.context import require_org_id
from promptaudit.dashboard.service import DashboardService
from promptaudit.store.protocol import StoreError
from promptaudit.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["dashboard"])

_T = TypeVar("_T")


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _service(request: Request) -> DashboardService:
    """Return the dashboard service, or HTTP 503 while starting up."""
    service = getattr(request.app.state, "dashboard_service", None)
    if service is None or not getattr(request.app.state, "ready", False):
        raise HTTPException(status_code=503, detail="Service not ready")
    return service


async def _fetch(resource: str, awaitable: Awaitable[_T]) -> _T:
    """Await a service call, mapping failures onto HTTP errors."""
    try:
        return await awaitable
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        logger.error(
            "dashboard_query_failed",
            resource=resource,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise HTTPException(status_code=500, detail=f"Failed to fetch {resource}") from exc


def _jsonable(record: Any) -> dict:
    """Dataclass → dict with datetimes as ISO 8601 and enums as their value."""
    out: dict = {}
    for key, value in asdict(record).items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        out[key] = value
    return out


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/dashboard/summary")
async def get_summary(
    request: Request,
    days: Optional[int] = Query(None),
    org_id: str = Depends(require_org_id),
) -> dict:
    """Usage summary for the lookback window.

    Response:
        total_prompts:  int
        risk_breakdown: {critical, high, medium, low, none} → distinct prompts
        by_tool:        {ai_tool: prompts}
        active_users:   int
        period_days:    int
    """
    service = _service(request)
    summary = await _fetch("summary", service.summary(org_id, days=days))
    return asdict(summary)


@router.get("/dashboard/trend")
async def get_trend(
    request: Request,
    days: Optional[int] = Query(None),
    org_id: str = Depends(require_org_id),
) -> dict:
    """Per-UTC-day activity, oldest day first: {"trend": [{date, prompts, high_risk}]}."""
    service = _service(request)
    points = await _fetch("trend", service.trend(org_id, days=days))
    return {"trend": [asdict(p) for p in points]}


@router.get("/dashboard/risks")
async def get_risks(
    request: Request,
    level: Optional[str] = Query(None),
    limit: int = Query(DEFAULT_PAGE_LIMIT),
    offset: int = Query(0),
    days: Optional[int] = Query(None),
    org_id: str = Depends(require_org_id),
) -> dict:
    """Flagged findings, newest prompt first, then finding position."""
    service = _service(request)
    rows = await _fetch(
        "risks",
        service.flagged(org_id, level=level, limit=limit, offset=offset, days=days),
    )
    return {
        "risks": [_jsonable(row) for row in rows],
        "limit": limit,
        "offset": offset,
    }


@router.get("/dashboard/users")
async def get_users(
    request: Request,
    days: Optional[int] = Query(None),
    org_id: str = Depends(require_org_id),
) -> dict:
    """Every subject of the organization with window totals, busiest first."""
    service = _service(request)
    rows = await _fetch("users", service.subject_activity(org_id, days=days))
    return {"users": [_jsonable(row) for row in rows]}


@router.get("/prompts/{prompt_id}")
async def get_prompt(
    prompt_id: str,
    request: Request,
    org_id: str = Depends(require_org_id),
) -> dict:
    """Full prompt (including text) and its findings in scan order.

    Returns 404 for unknown ids and for prompts of other organizations alike.
    """
    service = _service(request)
    detail = await _fetch("prompt", service.prompt_detail(org_id, prompt_id))
    if detail is None:
        raise HTTPException(status_code=404, detail="Prompt not found")
    return {
        "prompt": _jsonable(detail.prompt),
        "risks": [_jsonable(f) for f in detail.findings],
    }
