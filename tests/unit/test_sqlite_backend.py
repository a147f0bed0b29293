"""Unit tests for LocalSQLiteBackend — aiosqlite, WAL mode, schema, writes, reports.

Coverage:
  - schema creation, WAL mode, version guard, indexes, parent dir creation
  - subjects: create, find, UNIQUE(org_id, email) conflict, touch
  - prompts and findings: insert, ordering, all-or-none finding batches
  - windowed reports: counts, severity breakdown, tool split, trend, flagged
    listing, subject activity, prompt detail
  - organization isolation on every read
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import aiosqlite
import pytest

from promptaudit.models.risk import Severity
from promptaudit.store.models import NewFinding, NewPrompt, Subject
from promptaudit.store.protocol import (
    ListingFilters,
    PromptStore,
    StoreError,
    StoreTimeoutError,
    SubjectConflictError,
    with_timeout,
)
from promptaudit.store.sqlite_backend import LocalSQLiteBackend

ORG = "org-acme"
OTHER_ORG = "org-globex"

# ─── Helpers ──────────────────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _subject(store: LocalSQLiteBackend, email: str, org_id: str = ORG) -> Subject:
    existing = await store.find_subject(org_id, email)
    if existing is not None:
        return existing
    return await store.create_subject(org_id, email)


async def _seed(
    store: LocalSQLiteBackend,
    email: str = "jane@acme.com",
    severities: Sequence[Severity] = (),
    org_id: str = ORG,
    ai_tool: str = "chatgpt",
    captured_at: Optional[datetime] = None,
    text: str = "hello",
) -> str:
    subject = await _subject(store, email, org_id)
    prompt_id = await store.insert_prompt(
        NewPrompt(
            org_id=org_id,
            subject_id=subject.id,
            ai_tool=ai_tool,
            prompt_text=text,
            prompt_preview=text[:100],
            char_count=len(text),
            captured_at=captured_at,
        )
    )
    await store.insert_findings(
        prompt_id,
        [
            NewFinding(
                position=i,
                category=f"cat_{i}",
                severity=severity,
                label=f"Category {i}",
                masked_value="****",
            )
            for i, severity in enumerate(severities)
        ],
    )
    return prompt_id


# ─── Schema Creation + WAL Mode ───────────────────────────────────────────────


class TestLocalSQLiteBackendSchema:

    async def test_fresh_db_creates_schema(self, tmp_path: Any) -> None:
        db_path = str(tmp_path / "audit.db")
        backend = LocalSQLiteBackend(db_path=db_path)
        await backend.initialize()
        await backend.close()

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA user_version;")
            assert (await cursor.fetchone())[0] == 1
            cursor = await db.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            )
            tables = {row[0] for row in await cursor.fetchall()}
        assert {"subjects", "prompts", "findings"} <= tables

    async def test_fresh_db_creates_indexes(self, tmp_path: Any) -> None:
        db_path = str(tmp_path / "audit.db")
        backend = LocalSQLiteBackend(db_path=db_path)
        await backend.initialize()
        await backend.close()

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute(
                "SELECT name FROM sqlite_master WHERE type='index' AND name LIKE 'idx_%'"
            )
            indexes = {row[0] for row in await cursor.fetchall()}
        assert indexes == {
            "idx_prompts_org_captured",
            "idx_prompts_subject",
            "idx_findings_prompt",
            "idx_findings_severity",
        }

    async def test_wal_mode_enabled(self, tmp_path: Any) -> None:
        db_path = str(tmp_path / "audit.db")
        backend = LocalSQLiteBackend(db_path=db_path)
        await backend.initialize()
        try:
            async with aiosqlite.connect(db_path) as db:
                cursor = await db.execute("PRAGMA journal_mode;")
                assert (await cursor.fetchone())[0].lower() == "wal"
        finally:
            await backend.close()

    async def test_idempotent_reinit(self, tmp_path: Any) -> None:
        db_path = str(tmp_path / "audit.db")
        first = LocalSQLiteBackend(db_path=db_path)
        await first.initialize()
        await first.create_subject(ORG, "jane@acme.com")
        await first.close()

        second = LocalSQLiteBackend(db_path=db_path)
        await second.initialize()
        try:
            assert await second.find_subject(ORG, "jane@acme.com") is not None
        finally:
            await second.close()

    @pytest.mark.parametrize("version", [2, 99])
    async def test_version_mismatch_raises_runtime_error(
        self, tmp_path: Any, version: int
    ) -> None:
        db_path = str(tmp_path / "audit.db")
        async with aiosqlite.connect(db_path) as db:
            await db.execute(f"PRAGMA user_version = {version};")
            await db.commit()

        backend = LocalSQLiteBackend(db_path=db_path)
        with pytest.raises(RuntimeError, match="schema version"):
            await backend.initialize()
        assert await backend.health_check() is False

    async def test_parent_dir_created_if_absent(self, tmp_path: Any) -> None:
        db_path = tmp_path / "nested" / "dir" / "audit.db"
        backend = LocalSQLiteBackend(db_path=str(db_path))
        await backend.initialize()
        await backend.close()
        assert db_path.exists()

    async def test_protocol_compliance(self, store: LocalSQLiteBackend) -> None:
        assert isinstance(store, PromptStore)

    async def test_uninitialized_store_raises_store_error(self, tmp_path: Any) -> None:
        backend = LocalSQLiteBackend(db_path=str(tmp_path / "audit.db"))
        with pytest.raises(StoreError):
            await backend.find_subject(ORG, "jane@acme.com")


# ─── Subjects ─────────────────────────────────────────────────────────────────


class TestSubjects:

    async def test_create_then_find(self, store: LocalSQLiteBackend) -> None:
        created = await store.create_subject(ORG, "jane@acme.com", name="Jane", department="Legal")
        found = await store.find_subject(ORG, "jane@acme.com")
        assert found == created
        assert found.created_at == found.last_active
        assert found.created_at.tzinfo is not None

    async def test_find_unknown_returns_none(self, store: LocalSQLiteBackend) -> None:
        assert await store.find_subject(ORG, "nobody@acme.com") is None

    async def test_duplicate_email_in_org_conflicts(self, store: LocalSQLiteBackend) -> None:
        await store.create_subject(ORG, "jane@acme.com")
        with pytest.raises(SubjectConflictError):
            await store.create_subject(ORG, "jane@acme.com")

    async def test_store_usable_after_conflict(self, store: LocalSQLiteBackend) -> None:
        await store.create_subject(ORG, "jane@acme.com")
        with pytest.raises(SubjectConflictError):
            await store.create_subject(ORG, "jane@acme.com")
        await store.create_subject(ORG, "john@acme.com")
        assert await store.find_subject(ORG, "john@acme.com") is not None

    async def test_same_email_in_other_org_is_separate(self, store: LocalSQLiteBackend) -> None:
        a = await store.create_subject(ORG, "jane@acme.com")
        b = await store.create_subject(OTHER_ORG, "jane@acme.com")
        assert a.id != b.id
        assert await store.find_subject(OTHER_ORG, "jane@acme.com") == b

    async def test_email_match_is_exact(self, store: LocalSQLiteBackend) -> None:
        await store.create_subject(ORG, "jane@acme.com")
        assert await store.find_subject(ORG, "Jane@acme.com") is None

    async def test_touch_subject_updates_last_active(self, store: LocalSQLiteBackend) -> None:
        subject = await store.create_subject(ORG, "jane@acme.com")
        later = subject.last_active + timedelta(minutes=5)
        await store.touch_subject(subject.id, later)
        refreshed = await store.find_subject(ORG, "jane@acme.com")
        assert refreshed.last_active == later
        assert refreshed.created_at == subject.created_at


# ─── Prompts and findings ─────────────────────────────────────────────────────


class TestPromptsAndFindings:

    async def test_insert_prompt_returns_unique_ids(self, store: LocalSQLiteBackend) -> None:
        ids = {await _seed(store) for _ in range(5)}
        assert len(ids) == 5

    async def test_prompt_requires_existing_subject(self, store: LocalSQLiteBackend) -> None:
        with pytest.raises(StoreError):
            await store.insert_prompt(
                NewPrompt(
                    org_id=ORG,
                    subject_id="missing-subject",
                    ai_tool="chatgpt",
                    prompt_text="hi",
                    prompt_preview="hi",
                    char_count=2,
                )
            )

    async def test_get_prompt_full_record(self, store: LocalSQLiteBackend) -> None:
        subject = await store.create_subject(ORG, "jane@acme.com", name="Jane Doe")
        text = "x" * 250
        prompt_id = await store.insert_prompt(
            NewPrompt(
                org_id=ORG,
                subject_id=subject.id,
                ai_tool="claude",
                prompt_text=text,
                prompt_preview=text[:100],
                char_count=250,
                url="https://claude.ai/chat/1",
                session_id="sess-1",
            )
        )
        prompt = await store.get_prompt(ORG, prompt_id)
        assert prompt is not None
        assert prompt.prompt_text == text
        assert prompt.prompt_preview == text[:100]
        assert prompt.char_count == 250
        assert prompt.url == "https://claude.ai/chat/1"
        assert prompt.session_id == "sess-1"
        assert prompt.user_email == "jane@acme.com"
        assert prompt.user_name == "Jane Doe"

    async def test_get_prompt_of_other_org_returns_none(self, store: LocalSQLiteBackend) -> None:
        prompt_id = await _seed(store, org_id=ORG)
        assert await store.get_prompt(OTHER_ORG, prompt_id) is None
        assert await store.get_prompt(ORG, "does-not-exist") is None

    async def test_findings_listed_in_position_order(self, store: LocalSQLiteBackend) -> None:
        prompt_id = await _seed(
            store, severities=[Severity.LOW, Severity.CRITICAL, Severity.MEDIUM]
        )
        findings = await store.list_findings(prompt_id)
        assert [f.position for f in findings] == [0, 1, 2]
        assert [f.severity for f in findings] == [
            Severity.LOW, Severity.CRITICAL, Severity.MEDIUM,
        ]
        assert all(f.prompt_id == prompt_id for f in findings)

    async def test_empty_findings_is_noop(self, store: LocalSQLiteBackend) -> None:
        prompt_id = await _seed(store)
        await store.insert_findings(prompt_id, [])
        assert await store.list_findings(prompt_id) == []

    async def test_finding_batch_is_all_or_none(self, store: LocalSQLiteBackend) -> None:
        prompt_id = await _seed(store)
        duplicate_position = [
            NewFinding(0, "ssn", Severity.CRITICAL, "Social Security Number", "***-**-6789"),
            NewFinding(0, "email", Severity.HIGH, "Email Address", "j***@acme.com"),
        ]
        with pytest.raises(StoreError):
            await store.insert_findings(prompt_id, duplicate_position)
        assert await store.list_findings(prompt_id) == []

    async def test_finding_for_missing_prompt_rejected(self, store: LocalSQLiteBackend) -> None:
        with pytest.raises(StoreError):
            await store.insert_findings(
                "missing-prompt",
                [NewFinding(0, "ssn", Severity.CRITICAL, "Social Security Number", "****")],
            )


# ─── Windowed reports ─────────────────────────────────────────────────────────


class TestReports:

    async def test_count_prompts_respects_window(self, store: LocalSQLiteBackend) -> None:
        now = _now()
        await _seed(store, captured_at=now - timedelta(days=40))
        await _seed(store, captured_at=now - timedelta(days=2))
        await _seed(store)
        assert await store.count_prompts(ORG, now - timedelta(days=30)) == 2
        assert await store.count_prompts(ORG, now - timedelta(days=60)) == 3

    async def test_severity_breakdown_counts_each_level_independently(
        self, store: LocalSQLiteBackend
    ) -> None:
        await _seed(store, severities=[Severity.CRITICAL, Severity.LOW])
        await _seed(store, severities=[Severity.CRITICAL, Severity.CRITICAL])
        await _seed(store)
        breakdown = await store.severity_breakdown(ORG, _now() - timedelta(days=1))
        assert breakdown == {"critical": 2, "high": 0, "medium": 0, "low": 1, "none": 1}

    async def test_severity_breakdown_empty(self, store: LocalSQLiteBackend) -> None:
        breakdown = await store.severity_breakdown(ORG, _now() - timedelta(days=1))
        assert breakdown == {"critical": 0, "high": 0, "medium": 0, "low": 0, "none": 0}

    async def test_prompts_by_tool(self, store: LocalSQLiteBackend) -> None:
        await _seed(store, ai_tool="chatgpt")
        await _seed(store, ai_tool="claude")
        await _seed(store, ai_tool="claude")
        by_tool = await store.prompts_by_tool(ORG, _now() - timedelta(days=1))
        assert by_tool == {"claude": 2, "chatgpt": 1}
        assert list(by_tool) == ["claude", "chatgpt"]

    async def test_count_active_subjects(self, store: LocalSQLiteBackend) -> None:
        now = _now()
        await _seed(store, email="a@acme.com")
        await _seed(store, email="a@acme.com")
        await _seed(store, email="b@acme.com")
        await _seed(store, email="old@acme.com", captured_at=now - timedelta(days=90))
        assert await store.count_active_subjects(ORG, now - timedelta(days=30)) == 2

    async def test_daily_trend(self, store: LocalSQLiteBackend) -> None:
        day1 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        day2 = datetime(2026, 3, 2, 23, 59, tzinfo=timezone.utc)
        await _seed(store, captured_at=day1, severities=[Severity.CRITICAL, Severity.HIGH])
        await _seed(store, captured_at=day1, severities=[Severity.LOW])
        await _seed(store, captured_at=day2)
        await _seed(store, captured_at=day2, severities=[Severity.HIGH])

        trend = await store.daily_trend(ORG, datetime(2026, 2, 1, tzinfo=timezone.utc))
        assert [(t.date, t.prompts, t.high_risk) for t in trend] == [
            ("2026-03-01", 2, 1),
            ("2026-03-02", 2, 1),
        ]

    async def test_daily_trend_omits_empty_days(self, store: LocalSQLiteBackend) -> None:
        await _seed(store, captured_at=datetime(2026, 3, 1, tzinfo=timezone.utc))
        await _seed(store, captured_at=datetime(2026, 3, 5, tzinfo=timezone.utc))
        trend = await store.daily_trend(ORG, datetime(2026, 2, 1, tzinfo=timezone.utc))
        assert [t.date for t in trend] == ["2026-03-01", "2026-03-05"]


class TestListFlagged:

    async def test_newest_first_then_position(self, store: LocalSQLiteBackend) -> None:
        now = _now()
        older = await _seed(store, captured_at=now - timedelta(hours=2), severities=[Severity.LOW])
        newer = await _seed(
            store, captured_at=now - timedelta(hours=1),
            severities=[Severity.HIGH, Severity.CRITICAL],
        )
        rows = await store.list_flagged(ORG, ListingFilters())
        assert [(r.prompt_id, r.position) for r in rows] == [
            (newer, 0), (newer, 1), (older, 0),
        ]
        assert rows[0].user_email == "jane@acme.com"
        assert rows[0].masked_value == "****"

    async def test_severity_filter(self, store: LocalSQLiteBackend) -> None:
        await _seed(store, severities=[Severity.CRITICAL, Severity.LOW])
        await _seed(store, severities=[Severity.LOW])
        rows = await store.list_flagged(ORG, ListingFilters(severity=Severity.LOW))
        assert len(rows) == 2
        assert {r.severity for r in rows} == {Severity.LOW}

    async def test_since_filter(self, store: LocalSQLiteBackend) -> None:
        now = _now()
        await _seed(store, captured_at=now - timedelta(days=10), severities=[Severity.HIGH])
        recent = await _seed(store, severities=[Severity.HIGH])
        rows = await store.list_flagged(ORG, ListingFilters(since=now - timedelta(days=1)))
        assert [r.prompt_id for r in rows] == [recent]

    async def test_limit_and_offset(self, store: LocalSQLiteBackend) -> None:
        now = _now()
        for i in range(5):
            await _seed(store, captured_at=now - timedelta(minutes=i), severities=[Severity.MEDIUM])
        everything = await store.list_flagged(ORG, ListingFilters(limit=10))
        page = await store.list_flagged(ORG, ListingFilters(limit=2, offset=2))
        assert [r.finding_id for r in page] == [r.finding_id for r in everything[2:4]]

    async def test_equal_timestamps_list_latest_insert_first(
        self, store: LocalSQLiteBackend
    ) -> None:
        at = _now() - timedelta(minutes=5)
        inserted = [
            await _seed(store, captured_at=at, severities=[Severity.HIGH]) for _ in range(6)
        ]
        rows = await store.list_flagged(ORG, ListingFilters())
        assert [r.prompt_id for r in rows] == list(reversed(inserted))

    async def test_prompts_without_findings_not_listed(self, store: LocalSQLiteBackend) -> None:
        await _seed(store)
        assert await store.list_flagged(ORG, ListingFilters()) == []


class TestSubjectActivity:

    async def test_totals_and_high_risk(self, store: LocalSQLiteBackend) -> None:
        await _seed(store, email="a@acme.com", severities=[Severity.CRITICAL, Severity.HIGH])
        await _seed(store, email="a@acme.com", severities=[Severity.LOW])
        await _seed(store, email="a@acme.com")
        await _seed(store, email="b@acme.com", severities=[Severity.HIGH])

        rows = await store.subject_activity(ORG, _now() - timedelta(days=30))
        assert [(r.email, r.total_prompts, r.high_risk_count) for r in rows] == [
            ("a@acme.com", 3, 1),
            ("b@acme.com", 1, 1),
        ]

    async def test_includes_subjects_without_prompts_in_window(
        self, store: LocalSQLiteBackend
    ) -> None:
        now = _now()
        await _seed(store, email="old@acme.com", captured_at=now - timedelta(days=90))
        await store.create_subject(ORG, "idle@acme.com")
        await _seed(store, email="active@acme.com")

        rows = await store.subject_activity(ORG, now - timedelta(days=30))
        assert [(r.email, r.total_prompts) for r in rows] == [
            ("active@acme.com", 1),
            ("idle@acme.com", 0),
            ("old@acme.com", 0),
        ]


# ─── Organization isolation ───────────────────────────────────────────────────


class TestOrganizationIsolation:

    async def test_reports_never_cross_orgs(self, store: LocalSQLiteBackend) -> None:
        await _seed(store, org_id=ORG, severities=[Severity.CRITICAL])
        await _seed(store, org_id=OTHER_ORG, email="spy@globex.com", severities=[Severity.HIGH])
        since = _now() - timedelta(days=1)

        assert await store.count_prompts(ORG, since) == 1
        assert await store.count_active_subjects(ORG, since) == 1
        assert (await store.severity_breakdown(ORG, since))["high"] == 0
        assert await store.prompts_by_tool(ORG, since) == {"chatgpt": 1}
        assert sum(t.prompts for t in await store.daily_trend(ORG, since)) == 1
        flagged = await store.list_flagged(ORG, ListingFilters())
        assert {r.user_email for r in flagged} == {"jane@acme.com"}
        activity = await store.subject_activity(ORG, since)
        assert [r.email for r in activity] == ["jane@acme.com"]


# ─── Cancelled writes ─────────────────────────────────────────────────────────


def _stall_after(
    monkeypatch: pytest.MonkeyPatch, store: LocalSQLiteBackend, method: str, marker: str
) -> None:
    """Make the connection sleep after running a statement containing ``marker``."""
    conn = store._db
    original = getattr(conn, method)

    async def stalled(sql: str, *args: Any, **kwargs: Any) -> Any:
        result = await original(sql, *args, **kwargs)
        if marker in sql:
            await asyncio.sleep(1)
        return result

    monkeypatch.setattr(conn, method, stalled)


class TestCancelledWrites:

    async def test_timed_out_prompt_insert_not_committed_by_next_write(
        self, store: LocalSQLiteBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        subject = await store.create_subject(ORG, "jane@acme.com")
        _stall_after(monkeypatch, store, "execute", "INSERT INTO prompts")
        with pytest.raises(StoreTimeoutError):
            await with_timeout(
                store.insert_prompt(
                    NewPrompt(
                        org_id=ORG,
                        subject_id=subject.id,
                        ai_tool="chatgpt",
                        prompt_text="SSN 123-45-6789",
                        prompt_preview="SSN 123-45-6789",
                        char_count=15,
                    )
                ),
                0.2,
                "insert_prompt",
            )
        monkeypatch.undo()

        await store.create_subject(ORG, "john@acme.com")
        assert await store.count_prompts(ORG, _now() - timedelta(days=1)) == 0

    async def test_timed_out_findings_not_committed_by_next_write(
        self, store: LocalSQLiteBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        prompt_id = await _seed(store)
        _stall_after(monkeypatch, store, "executemany", "INSERT INTO findings")
        finding = NewFinding(0, "ssn", Severity.CRITICAL, "Social Security Number", "***-**-6789")
        with pytest.raises(StoreTimeoutError):
            await with_timeout(store.insert_findings(prompt_id, [finding]), 0.2, "insert_findings")
        monkeypatch.undo()

        await _seed(store, email="john@acme.com")
        assert await store.list_findings(prompt_id) == []

    async def test_timed_out_subject_create_not_committed_by_next_write(
        self, store: LocalSQLiteBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _stall_after(monkeypatch, store, "execute", "INSERT INTO subjects")
        with pytest.raises(StoreTimeoutError):
            await with_timeout(store.create_subject(ORG, "jane@acme.com"), 0.2, "create_subject")
        monkeypatch.undo()

        await store.create_subject(ORG, "john@acme.com")
        assert await store.find_subject(ORG, "jane@acme.com") is None


# ─── Health check and timeouts ────────────────────────────────────────────────


class TestHealthCheck:

    async def test_healthy_when_open(self, store: LocalSQLiteBackend) -> None:
        assert await store.health_check() is True

    async def test_unhealthy_before_initialize(self, tmp_path: Any) -> None:
        backend = LocalSQLiteBackend(db_path=str(tmp_path / "audit.db"))
        assert await backend.health_check() is False

    async def test_unhealthy_after_close(self, tmp_path: Any) -> None:
        backend = LocalSQLiteBackend(db_path=str(tmp_path / "audit.db"))
        await backend.initialize()
        await backend.close()
        assert await backend.health_check() is False


class TestWithTimeout:

    async def test_returns_result_in_time(self) -> None:
        async def quick() -> int:
            return 7

        assert await with_timeout(quick(), 1.0, "quick") == 7

    async def test_slow_call_raises_store_timeout(self) -> None:
        with pytest.raises(StoreTimeoutError, match="slow_call"):
            await with_timeout(asyncio.sleep(5), 0.01, "slow_call")

    async def test_timeout_is_a_store_error(self) -> None:
        assert issubclass(StoreTimeoutError, StoreError)
