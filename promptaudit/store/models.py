"""Record types read from and written to the PromptAudit store.

Timestamps are timezone-aware UTC datetimes in Python and ISO 8601 strings
on disk.

IMPORTANT: ``Finding.masked_value`` is the only representation of a matched
value that is ever persisted. Raw matches stay inside the capture pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from promptaudit.models.risk import Severity


@dataclass
class Subject:
    """A monitored individual, unique per (org_id, email)."""

    id: str
    org_id: str
    email: str
    created_at: datetime
    last_active: datetime
    name: Optional[str] = None
    department: Optional[str] = None


@dataclass
class NewPrompt:
    """A prompt about to be persisted. The store assigns the id.

    captured_at defaults to the time of insertion.
    """

    org_id: str
    subject_id: str
    ai_tool: str
    prompt_text: str
    prompt_preview: str
    char_count: int
    url: Optional[str] = None
    session_id: Optional[str] = None
    captured_at: Optional[datetime] = None


@dataclass
class Prompt:
    """A persisted prompt, joined with its subject for display."""

    id: str
    org_id: str
    subject_id: str
    ai_tool: str
    prompt_text: str
    prompt_preview: str
    char_count: int
    captured_at: datetime
    user_email: str
    user_name: Optional[str] = None
    url: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class NewFinding:
    """A masked detection about to be persisted against a prompt."""

    position: int
    """0-based scan order within the prompt."""
    category: str
    severity: Severity
    label: str
    masked_value: str


@dataclass
class Finding:
    """A persisted finding."""

    id: str
    prompt_id: str
    position: int
    category: str
    severity: Severity
    label: str
    masked_value: str
    detected_at: datetime


@dataclass
class TrendPoint:
    """Activity for one UTC day."""

    date: str
    """YYYY-MM-DD."""
    prompts: int
    high_risk: int


@dataclass
class FlaggedFinding:
    """One (prompt, finding) row of the flagged-activity listing."""

    prompt_id: str
    ai_tool: str
    prompt_preview: str
    captured_at: datetime
    user_email: str
    finding_id: str
    category: str
    severity: Severity
    label: str
    masked_value: str
    position: int


@dataclass
class SubjectActivity:
    """Per-subject activity counts within a lookback window."""

    subject_id: str
    email: str
    last_active: datetime
    total_prompts: int
    high_risk_count: int
    name: Optional[str] = None
    department: Optional[str] = None
