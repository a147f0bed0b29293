"""Dashboard aggregation service.

Read-only reports over persisted prompts and findings for one organization:

  summary()          — totals, per-severity breakdown, per-tool counts
  trend()            — per-day prompt and high-risk counts
  flagged()          — paginated (prompt, finding) rows
  subject_activity() — per-subject totals
  prompt_detail()    — one prompt with its findings

Every report is scoped to the caller-supplied org_id and to a lookback window
of ``days`` (1..365) ending now. The org_id is trusted: it comes from the
authentication layer, never from a query parameter. The scanner is never
consulted here; reports reflect what the capture pipeline persisted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from promptaudit.constants import (
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_PAGE_LIMIT,
    DEFAULT_STORE_TIMEOUT_S,
    MAX_LOOKBACK_DAYS,
    MAX_PAGE_LIMIT,
)
from promptaudit.models.risk import Severity
from promptaudit.store.models import (
    Finding,
    FlaggedFinding,
    Prompt,
    SubjectActivity,
    TrendPoint,
)
from promptaudit.store.protocol import ListingFilters, PromptStore, with_timeout
from promptaudit.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class DashboardSummary:
    total_prompts: int
    risk_breakdown: dict[str, int]
    """critical/high/medium/low/none → distinct prompt count. Levels overlap:
    a prompt with a critical and a low finding counts under both."""
    by_tool: dict[str, int]
    active_users: int
    period_days: int


@dataclass
class PromptDetail:
    prompt: Prompt
    findings: list[Finding] = field(default_factory=list)


class DashboardService:
    """Aggregation queries behind the dashboard API.

    Args:
        store:        PromptStore to read from.
        timeout_s:    Upper bound for each store call (StoreTimeoutError on expiry).
        default_days: Window used when a caller passes ``days=None``.
        clock:        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: PromptStore,
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
        default_days: int = DEFAULT_LOOKBACK_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._timeout_s = timeout_s
        self._default_days = _validate_days(default_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Window helpers ────────────────────────────────────────────────────────

    def _window(self, days: Optional[int]) -> tuple[int, datetime]:
        period = self._default_days if days is None else _validate_days(days)
        return period, self._clock() - timedelta(days=period)

    async def _call(self, awaitable, operation: str):
        return await with_timeout(awaitable, self._timeout_s, operation)

    # ── Reports ───────────────────────────────────────────────────────────────

    async def summary(self, org_id: str, days: Optional[int] = None) -> DashboardSummary:
        period, since = self._window(days)
        total, breakdown, by_tool, active = await _gather_or_cancel(
            self._call(self._store.count_prompts(org_id, since), "count_prompts"),
            self._call(self._store.severity_breakdown(org_id, since), "severity_breakdown"),
            self._call(self._store.prompts_by_tool(org_id, since), "prompts_by_tool"),
            self._call(
                self._store.count_active_subjects(org_id, since), "count_active_subjects"
            ),
        )
        return DashboardSummary(
            total_prompts=total,
            risk_breakdown=breakdown,
            by_tool=by_tool,
            active_users=active,
            period_days=period,
        )

    async def trend(self, org_id: str, days: Optional[int] = None) -> list[TrendPoint]:
        _, since = self._window(days)
        return await self._call(self._store.daily_trend(org_id, since), "daily_trend")

    async def flagged(
        self,
        org_id: str,
        level: Optional[str] = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        days: Optional[int] = None,
    ) -> list[FlaggedFinding]:
        """Findings of the window, newest prompt first.

        Raises:
            ValueError: Unknown ``level`` (or ``none``), ``limit`` outside
                        1..500, negative ``offset``, or ``days`` outside 1..365.
        """
        severity = _parse_level(level)
        if not 1 <= limit <= MAX_PAGE_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
        if offset < 0:
            raise ValueError("offset must not be negative")
        _, since = self._window(days)
        filters = ListingFilters(since=since, severity=severity, limit=limit, offset=offset)
        return await self._call(self._store.list_flagged(org_id, filters), "list_flagged")

    async def subject_activity(
        self, org_id: str, days: Optional[int] = None
    ) -> list[SubjectActivity]:
        _, since = self._window(days)
        return await self._call(
            self._store.subject_activity(org_id, since), "subject_activity"
        )

    async def prompt_detail(self, org_id: str, prompt_id: str) -> Optional[PromptDetail]:
        """One prompt and its findings, or None if absent or another org's."""
        prompt = await self._call(self._store.get_prompt(org_id, prompt_id), "get_prompt")
        if prompt is None:
            return None
        findings = await self._call(self._store.list_findings(prompt.id), "list_findings")
        return PromptDetail(prompt=prompt, findings=findings)


def _validate_days(days: int) -> int:
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValueError("days must be an integer")
    if not 1 <= days <= MAX_LOOKBACK_DAYS:
        raise ValueError(f"days must be between 1 and {MAX_LOOKBACK_DAYS}")
    return days


def _parse_level(level: Optional[str]) -> Optional[Severity]:
    if level is None or level == "":
        return None
    severity = Severity.parse(level)
    if severity is Severity.NONE:
        raise ValueError("level 'none' has no findings to list")
    return severity


async def _gather_or_cancel(*awaitables):
    """Await concurrently; on the first failure cancel the rest, then re-raise."""
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
