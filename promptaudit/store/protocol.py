"""PromptStore Protocol, store errors and the ListingFilters dataclass.

Record types are defined in promptaudit/store/models.py.

Layout:
    models.py         — Subject, Prompt, Finding and the aggregate row types
    protocol.py       — PromptStore Protocol + errors + ListingFilters
    sqlite_backend.py — LocalSQLiteBackend (aiosqlite, WAL mode, version guard)
    factory.py        — create_prompt_store()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Optional, Protocol, Sequence, TypeVar, runtime_checkable

from promptaudit.constants import DEFAULT_PAGE_LIMIT
from promptaudit.models.risk import Severity
from promptaudit.store.models import (
    Finding,
    FlaggedFinding,
    NewFinding,
    NewPrompt,
    Prompt,
    Subject,
    SubjectActivity,
    TrendPoint,
)


# ─── Errors ───────────────────────────────────────────────────────────────────


class StoreError(Exception):
    """The store could not complete an operation (driver error, closed DB...)."""


class StoreTimeoutError(StoreError):
    """A store interaction exceeded its time budget."""


class SubjectConflictError(StoreError):
    """A subject with the same (org_id, email) already exists."""


_T = TypeVar("_T")


async def with_timeout(awaitable: Awaitable[_T], timeout_s: float, operation: str) -> _T:
    """Await a store call, bounded by ``timeout_s`` seconds.

    Raises:
        StoreTimeoutError: The call did not complete in time (it is cancelled).
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError:
        raise StoreTimeoutError(
            f"{operation} did not complete within {timeout_s:g}s"
        ) from None


# ─── ListingFilters ───────────────────────────────────────────────────────────


@dataclass
class ListingFilters:
    """Query filters for PromptStore.list_flagged().

    An empty ListingFilters() returns the newest findings of every severity
    across all time, up to limit=50.
    """

    since: Optional[datetime] = None
    """Include prompts with captured_at >= since (UTC)."""
    severity: Optional[Severity] = None
    """Only findings of this severity."""
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0


# ─── PromptStore Protocol ─────────────────────────────────────────────────────


@runtime_checkable
class PromptStore(Protocol):
    """Persistence interface used by the capture pipeline and the dashboard.

    Implementation: LocalSQLiteBackend. Selection via create_prompt_store().

    Every method except health_check() raises StoreError (or a subclass) on
    failure. All reads are scoped to one organization by the caller-supplied
    org_id.
    """

    async def initialize(self) -> None:
        """Open connections and create or verify the schema."""
        ...

    async def close(self) -> None:
        """Release connections. Called during graceful shutdown."""
        ...

    async def health_check(self) -> bool:
        """Returns True if the store is queryable. Must not raise."""
        ...

    # ── Subjects ──────────────────────────────────────────────────────────────

    async def find_subject(self, org_id: str, email: str) -> Optional[Subject]:
        ...

    async def create_subject(
        self,
        org_id: str,
        email: str,
        name: Optional[str] = None,
        department: Optional[str] = None,
    ) -> Subject:
        """Insert a subject.

        Raises:
            SubjectConflictError: (org_id, email) already exists.
        """
        ...

    async def touch_subject(self, subject_id: str, at: datetime) -> None:
        """Set the subject's last_active timestamp."""
        ...

    # ── Writes ────────────────────────────────────────────────────────────────

    async def insert_prompt(self, prompt: NewPrompt) -> str:
        """Persist a prompt and return its id."""
        ...

    async def insert_findings(
        self, prompt_id: str, findings: Sequence[NewFinding]
    ) -> None:
        """Persist all findings of one prompt atomically."""
        ...

    # ── Windowed reads ────────────────────────────────────────────────────────

    async def count_prompts(self, org_id: str, since: datetime) -> int:
        ...

    async def severity_breakdown(self, org_id: str, since: datetime) -> dict[str, int]:
        """Distinct prompts per finding severity, plus ``none`` for prompts
        without findings. Every severity key is present."""
        ...

    async def prompts_by_tool(self, org_id: str, since: datetime) -> dict[str, int]:
        ...

    async def count_active_subjects(self, org_id: str, since: datetime) -> int:
        ...

    async def daily_trend(self, org_id: str, since: datetime) -> list[TrendPoint]:
        """Per UTC day, oldest first."""
        ...

    async def list_flagged(
        self, org_id: str, filters: ListingFilters
    ) -> list[FlaggedFinding]:
        """Newest prompts first, then finding position."""
        ...

    async def subject_activity(
        self, org_id: str, since: datetime
    ) -> list[SubjectActivity]:
        """Every subject of the org, busiest first, then by email."""
        ...

    async def get_prompt(self, org_id: str, prompt_id: str) -> Optional[Prompt]:
        """None when absent or owned by another organization."""
        ...

    async def list_findings(self, prompt_id: str) -> list[Finding]:
        """Findings of one prompt in scan order."""
        ...
