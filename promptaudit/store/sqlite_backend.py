"""LocalSQLiteBackend — aiosqlite-based async prompt store.

Uses aiosqlite EXCLUSIVELY; the synchronous stdlib sqlite3 module is never
imported in promptaudit/store/.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent dashboard reads while a
    capture is writing)
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch,
    refuse startup
  - Long-lived connection: opened in initialize(), closed in close()
  - Writes serialized by an asyncio.Lock, each committed or rolled back
    explicitly, so a failed write never discards another coroutine's work
  - A write cancelled mid-transaction (store timeout) is rolled back before
    the lock is released, so the next writer's commit cannot persist it
  - UNIQUE(org_id, email) on subjects: a lost first-capture race surfaces as
    SubjectConflictError
"""

from __future__ import annotations

import asyncio
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Sequence

import aiosqlite

from promptaudit.models.risk import FINDING_SEVERITIES, HIGH_RISK_SEVERITIES, Severity
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
from promptaudit.store.protocol import ListingFilters, StoreError, SubjectConflictError
from promptaudit.utils.ids import generate_id
from promptaudit.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS subjects (
    id           TEXT PRIMARY KEY,
    org_id       TEXT NOT NULL,
    email        TEXT NOT NULL,
    name         TEXT,
    department   TEXT,
    created_at   TEXT NOT NULL,
    last_active  TEXT NOT NULL,
    UNIQUE (org_id, email)
);

CREATE TABLE IF NOT EXISTS prompts (
    id              TEXT PRIMARY KEY,
    org_id          TEXT NOT NULL,
    subject_id      TEXT NOT NULL REFERENCES subjects(id),
    ai_tool         TEXT NOT NULL,
    prompt_text     TEXT NOT NULL,
    prompt_preview  TEXT NOT NULL,
    char_count      INTEGER NOT NULL,
    url             TEXT,
    session_id      TEXT,
    captured_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS findings (
    id            TEXT PRIMARY KEY,
    prompt_id     TEXT NOT NULL REFERENCES prompts(id),
    position      INTEGER NOT NULL,
    category      TEXT NOT NULL,
    severity      TEXT NOT NULL CHECK(severity IN ('critical', 'high', 'medium', 'low')),
    label         TEXT NOT NULL,
    masked_value  TEXT NOT NULL,
    detected_at   TEXT NOT NULL,
    UNIQUE (prompt_id, position)
);

CREATE INDEX IF NOT EXISTS idx_prompts_org_captured
    ON prompts(org_id, captured_at DESC);

CREATE INDEX IF NOT EXISTS idx_prompts_subject
    ON prompts(subject_id);

CREATE INDEX IF NOT EXISTS idx_findings_prompt
    ON findings(prompt_id, position);

CREATE INDEX IF NOT EXISTS idx_findings_severity
    ON findings(severity);
"""

_SCHEMA_VERSION = 1

# Literal IN-list for the high-risk severities; values come from the enum only.
_HIGH_RISK_SQL = ", ".join(
    f"'{s.value}'" for s in sorted(HIGH_RISK_SEVERITIES, key=lambda s: -s.rank)
)


# ─── Timestamp helpers ────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime) -> str:
    """UTC ISO 8601 with fixed precision, so stored values sort as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


# ─── Row deserialisers ────────────────────────────────────────────────────────


def _row_to_subject(row: aiosqlite.Row) -> Subject:
    return Subject(
        id=row["id"],
        org_id=row["org_id"],
        email=row["email"],
        name=row["name"],
        department=row["department"],
        created_at=_from_iso(row["created_at"]),
        last_active=_from_iso(row["last_active"]),
    )


def _row_to_prompt(row: aiosqlite.Row) -> Prompt:
    return Prompt(
        id=row["id"],
        org_id=row["org_id"],
        subject_id=row["subject_id"],
        ai_tool=row["ai_tool"],
        prompt_text=row["prompt_text"],
        prompt_preview=row["prompt_preview"],
        char_count=row["char_count"],
        url=row["url"],
        session_id=row["session_id"],
        captured_at=_from_iso(row["captured_at"]),
        user_email=row["user_email"],
        user_name=row["user_name"],
    )


def _row_to_finding(row: aiosqlite.Row) -> Finding:
    return Finding(
        id=row["id"],
        prompt_id=row["prompt_id"],
        position=row["position"],
        category=row["category"],
        severity=Severity(row["severity"]),
        label=row["label"],
        masked_value=row["masked_value"],
        detected_at=_from_iso(row["detected_at"]),
    )


def _row_to_flagged(row: aiosqlite.Row) -> FlaggedFinding:
    return FlaggedFinding(
        prompt_id=row["prompt_id"],
        ai_tool=row["ai_tool"],
        prompt_preview=row["prompt_preview"],
        captured_at=_from_iso(row["captured_at"]),
        user_email=row["user_email"],
        finding_id=row["finding_id"],
        category=row["category"],
        severity=Severity(row["severity"]),
        label=row["label"],
        masked_value=row["masked_value"],
        position=row["position"],
    )


def _row_to_activity(row: aiosqlite.Row) -> SubjectActivity:
    return SubjectActivity(
        subject_id=row["id"],
        email=row["email"],
        name=row["name"],
        department=row["department"],
        last_active=_from_iso(row["last_active"]),
        total_prompts=row["total_prompts"],
        high_risk_count=row["high_risk_count"],
    )


# ─── LocalSQLiteBackend ───────────────────────────────────────────────────────


class LocalSQLiteBackend:
    """Async SQLite prompt store using aiosqlite exclusively.

    Architecture:
      - Single long-lived connection (open once in initialize(), close in close())
      - WAL mode: PRAGMA journal_mode=WAL, foreign keys enforced
      - Schema version guard: RuntimeError on PRAGMA user_version != 0 or 1
      - Every aiosqlite.Error is re-raised as StoreError

    Default path: ~/.promptaudit/promptaudit.db
    Override via: PROMPTAUDIT_DB_PATH environment variable (see factory.py)
    Or pass db_path explicitly (used in tests).

    Usage:
        store = LocalSQLiteBackend(db_path="/tmp/promptaudit.db")
        await store.initialize()   # raises RuntimeError on schema version mismatch
        subject = await store.create_subject("org-1", "jane@corp.com")
        await store.close()
    """

    def __init__(self, db_path: str = "~/.promptaudit/promptaudit.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the SQLite connection, enable WAL mode, and create/verify schema.

        Steps:
          1. Create parent directory if absent (os.makedirs)
          2. Open aiosqlite connection (long-lived), dict-like rows
          3. Enable WAL and foreign keys
          4. Read PRAGMA user_version
             - 0: fresh DB → create schema, set user_version=1
             - 1: compatible schema → no-op (idempotent)
             - other: raises RuntimeError with a reset hint

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
                          The FastAPI lifespan propagates this and refuses startup.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute("PRAGMA foreign_keys=ON;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            # executescript may not honour PRAGMA in all SQLite builds;
            # set user_version separately after the script.
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "store_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "store_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported PromptAudit database schema version: {current_version}. "
                f"Delete {self._db_path} to reset, or point PROMPTAUDIT_DB_PATH elsewhere."
            )

    async def close(self) -> None:
        """Close the aiosqlite connection gracefully."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("store_closed", db_path=self._db_path)

    async def health_check(self) -> bool:
        """Returns True if the DB connection is alive and queryable."""
        if self._db is None:
            return False
        try:
            await self._db.execute("SELECT 1")
            return True
        except aiosqlite.Error as exc:
            logger.warning("store_health_check_failed", error=str(exc))
            return False

    # ── Internal helpers ──────────────────────────────────────────────────────

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Store not initialized — call initialize() first")
        return self._db

    async def _fetchall(self, sql: str, params: Sequence[Any]) -> list[aiosqlite.Row]:
        with _driver_errors():
            cursor = await self._conn.execute(sql, params)
            return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: Sequence[Any]) -> Optional[aiosqlite.Row]:
        with _driver_errors():
            cursor = await self._conn.execute(sql, params)
            return await cursor.fetchone()

    async def _scalar(self, sql: str, params: Sequence[Any]) -> int:
        row = await self._fetchone(sql, params)
        return row[0] if row and row[0] is not None else 0

    async def _rollback(self) -> None:
        try:
            await self._conn.rollback()
        except aiosqlite.Error as exc:
            logger.error("store_rollback_failed", error=str(exc))

    # ── Subjects ──────────────────────────────────────────────────────────────

    async def find_subject(self, org_id: str, email: str) -> Optional[Subject]:
        row = await self._fetchone(
            "SELECT * FROM subjects WHERE org_id = ? AND email = ?",
            (org_id, email),
        )
        return _row_to_subject(row) if row is not None else None

    async def create_subject(
        self,
        org_id: str,
        email: str,
        name: Optional[str] = None,
        department: Optional[str] = None,
    ) -> Subject:
        now = _utcnow()
        subject = Subject(
            id=generate_id(),
            org_id=org_id,
            email=email,
            name=name,
            department=department,
            created_at=now,
            last_active=now,
        )
        async with self._write_lock:
            try:
                await self._conn.execute(
                    """INSERT INTO subjects
                       (id, org_id, email, name, department, created_at, last_active)
                       VALUES (?,?,?,?,?,?,?)""",
                    (
                        subject.id,
                        org_id,
                        email,
                        name,
                        department,
                        _to_iso(now),
                        _to_iso(now),
                    ),
                )
                await self._conn.commit()
            except aiosqlite.IntegrityError as exc:
                await self._rollback()
                raise SubjectConflictError(
                    f"Subject already exists for org {org_id!r}"
                ) from exc
            except aiosqlite.Error as exc:
                await self._rollback()
                raise StoreError(f"create_subject failed: {exc}") from exc
            except BaseException:
                await asyncio.shield(self._rollback())
                raise

        logger.debug("subject_created", subject_id=subject.id, org_id=org_id)
        return subject

    async def touch_subject(self, subject_id: str, at: datetime) -> None:
        await self._write(
            "UPDATE subjects SET last_active = ? WHERE id = ?",
            (_to_iso(at), subject_id),
            operation="touch_subject",
        )

    # ── Writes ────────────────────────────────────────────────────────────────

    async def insert_prompt(self, prompt: NewPrompt) -> str:
        prompt_id = generate_id()
        captured_at = prompt.captured_at or _utcnow()
        await self._write(
            """INSERT INTO prompts
               (id, org_id, subject_id, ai_tool, prompt_text, prompt_preview,
                char_count, url, session_id, captured_at)
               VALUES (?,?,?,?,?,?,?,?,?,?)""",
            (
                prompt_id,
                prompt.org_id,
                prompt.subject_id,
                prompt.ai_tool,
                prompt.prompt_text,
                prompt.prompt_preview,
                prompt.char_count,
                prompt.url,
                prompt.session_id,
                _to_iso(captured_at),
            ),
            operation="insert_prompt",
        )
        return prompt_id

    async def insert_findings(
        self, prompt_id: str, findings: Sequence[NewFinding]
    ) -> None:
        """Insert every finding of a prompt in one transaction (all or none)."""
        if not findings:
            return
        detected_at = _to_iso(_utcnow())
        rows = [
            (
                generate_id(),
                prompt_id,
                f.position,
                f.category,
                Severity(f.severity).value,
                f.label,
                f.masked_value,
                detected_at,
            )
            for f in findings
        ]
        async with self._write_lock:
            try:
                await self._conn.executemany(
                    """INSERT INTO findings
                       (id, prompt_id, position, category, severity, label,
                        masked_value, detected_at)
                       VALUES (?,?,?,?,?,?,?,?)""",
                    rows,
                )
                await self._conn.commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                raise StoreError(f"insert_findings failed: {exc}") from exc
            except BaseException:
                await asyncio.shield(self._rollback())
                raise

    async def _write(self, sql: str, params: Sequence[Any], *, operation: str) -> None:
        """Execute and commit one statement under the write lock."""
        async with self._write_lock:
            try:
                await self._conn.execute(sql, params)
                await self._conn.commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                raise StoreError(f"{operation} failed: {exc}") from exc
            except BaseException:
                await asyncio.shield(self._rollback())
                raise

    # ── Windowed reads ────────────────────────────────────────────────────────

    async def count_prompts(self, org_id: str, since: datetime) -> int:
        return await self._scalar(
            "SELECT COUNT(*) FROM prompts WHERE org_id = ? AND captured_at >= ?",
            (org_id, _to_iso(since)),
        )

    async def severity_breakdown(self, org_id: str, since: datetime) -> dict[str, int]:
        """Each level is counted independently: a prompt with a critical and a
        low finding contributes to both. ``none`` counts prompts without any."""
        params = (org_id, _to_iso(since))
        rows = await self._fetchall(
            """SELECT f.severity AS severity, COUNT(DISTINCT f.prompt_id) AS n
               FROM findings f
               JOIN prompts p ON p.id = f.prompt_id
               WHERE p.org_id = ? AND p.captured_at >= ?
               GROUP BY f.severity""",
            params,
        )
        breakdown = {s.value: 0 for s in FINDING_SEVERITIES}
        for row in rows:
            breakdown[row["severity"]] = row["n"]
        breakdown[Severity.NONE.value] = await self._scalar(
            """SELECT COUNT(*) FROM prompts p
               WHERE p.org_id = ? AND p.captured_at >= ?
                 AND NOT EXISTS (SELECT 1 FROM findings f WHERE f.prompt_id = p.id)""",
            params,
        )
        return breakdown

    async def prompts_by_tool(self, org_id: str, since: datetime) -> dict[str, int]:
        rows = await self._fetchall(
            """SELECT ai_tool, COUNT(*) AS n FROM prompts
               WHERE org_id = ? AND captured_at >= ?
               GROUP BY ai_tool
               ORDER BY n DESC, ai_tool ASC""",
            (org_id, _to_iso(since)),
        )
        return {row["ai_tool"]: row["n"] for row in rows}

    async def count_active_subjects(self, org_id: str, since: datetime) -> int:
        return await self._scalar(
            """SELECT COUNT(DISTINCT subject_id) FROM prompts
               WHERE org_id = ? AND captured_at >= ?""",
            (org_id, _to_iso(since)),
        )

    async def daily_trend(self, org_id: str, since: datetime) -> list[TrendPoint]:
        rows = await self._fetchall(
            f"""SELECT substr(p.captured_at, 1, 10) AS day,
                       COUNT(DISTINCT p.id) AS prompts,
                       COUNT(DISTINCT CASE WHEN f.severity IN ({_HIGH_RISK_SQL})
                                           THEN p.id END) AS high_risk
                FROM prompts p
                LEFT JOIN findings f ON f.prompt_id = p.id
                WHERE p.org_id = ? AND p.captured_at >= ?
                GROUP BY day
                ORDER BY day ASC""",
            (org_id, _to_iso(since)),
        )
        return [
            TrendPoint(date=row["day"], prompts=row["prompts"], high_risk=row["high_risk"])
            for row in rows
        ]

    async def list_flagged(
        self, org_id: str, filters: ListingFilters
    ) -> list[FlaggedFinding]:
        """All condition values use ? placeholders; limit/offset included."""
        conditions = ["p.org_id = ?"]
        params: list[Any] = [org_id]
        if filters.since is not None:
            conditions.append("p.captured_at >= ?")
            params.append(_to_iso(filters.since))
        if filters.severity is not None:
            conditions.append("f.severity = ?")
            params.append(Severity(filters.severity).value)
        params.extend([filters.limit, filters.offset])

        rows = await self._fetchall(
            f"""SELECT p.id AS prompt_id, p.ai_tool, p.prompt_preview, p.captured_at,
                       s.email AS user_email,
                       f.id AS finding_id, f.category, f.severity, f.label,
                       f.masked_value, f.position
                FROM findings f
                JOIN prompts p ON p.id = f.prompt_id
                JOIN subjects s ON s.id = p.subject_id
                WHERE {" AND ".join(conditions)}
                ORDER BY p.captured_at DESC, p.rowid DESC, f.position ASC
                LIMIT ? OFFSET ?""",
            params,
        )
        return [_row_to_flagged(row) for row in rows]

    async def subject_activity(
        self, org_id: str, since: datetime
    ) -> list[SubjectActivity]:
        rows = await self._fetchall(
            f"""SELECT s.id, s.email, s.name, s.department, s.last_active,
                       COUNT(DISTINCT p.id) AS total_prompts,
                       COUNT(DISTINCT CASE WHEN f.severity IN ({_HIGH_RISK_SQL})
                                           THEN p.id END) AS high_risk_count
                FROM subjects s
                LEFT JOIN prompts p ON p.subject_id = s.id AND p.captured_at >= ?
                LEFT JOIN findings f ON f.prompt_id = p.id
                WHERE s.org_id = ?
                GROUP BY s.id
                ORDER BY total_prompts DESC, s.email ASC""",
            (_to_iso(since), org_id),
        )
        return [_row_to_activity(row) for row in rows]

    async def get_prompt(self, org_id: str, prompt_id: str) -> Optional[Prompt]:
        row = await self._fetchone(
            """SELECT p.*, s.email AS user_email, s.name AS user_name
               FROM prompts p
               JOIN subjects s ON s.id = p.subject_id
               WHERE p.id = ? AND p.org_id = ?""",
            (prompt_id, org_id),
        )
        return _row_to_prompt(row) if row is not None else None

    async def list_findings(self, prompt_id: str) -> list[Finding]:
        rows = await self._fetchall(
            "SELECT * FROM findings WHERE prompt_id = ? ORDER BY position ASC",
            (prompt_id,),
        )
        return [_row_to_finding(row) for row in rows]


@contextmanager
def _driver_errors() -> Iterator[None]:
    """Re-raise aiosqlite errors from read paths as StoreError."""
    try:
        yield
    except aiosqlite.Error as exc:
        raise StoreError(str(exc)) from exc
