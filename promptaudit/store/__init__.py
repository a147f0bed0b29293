"""PromptAudit store package.

Re-exports the public API for ergonomic imports:

    from promptaudit.store import PromptStore, StoreError, Subject

Layout:
    models.py         — Subject, Prompt, Finding, NewPrompt, NewFinding and
                        the dashboard row types
    protocol.py       — PromptStore Protocol + StoreError family + ListingFilters
    sqlite_backend.py — LocalSQLiteBackend (aiosqlite, WAL mode, PRAGMA version guard)
    factory.py        — create_prompt_store() — database path selection
"""

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
from promptaudit.store.protocol import (
    ListingFilters,
    PromptStore,
    StoreError,
    StoreTimeoutError,
    SubjectConflictError,
    with_timeout,
)

__all__ = [
    # Records
    "Finding",
    "FlaggedFinding",
    "NewFinding",
    "NewPrompt",
    "Prompt",
    "Subject",
    "SubjectActivity",
    "TrendPoint",
    # Protocol + filters
    "ListingFilters",
    "PromptStore",
    # Errors
    "StoreError",
    "StoreTimeoutError",
    "SubjectConflictError",
    # Helpers
    "with_timeout",
]
