"""Capture pipeline — validate, attribute, scan, mask and persist one prompt.

Flow for a single capture:
  1. Validate the required fields (no store call on failure)
  2. Resolve the subject by (org_id, user_email), creating it on first sight
     and refreshing last_active when it already exists
  3. Persist the prompt
  4. Scan the text with the injected registry and mask every match
  5. Persist the findings in one store call, in scan order
  6. Return CaptureResult(prompt_id, risks_detected, overall_risk)

Every store interaction is bounded by ``timeout_s``. Raw prompt text and raw
matches never reach a log entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from promptaudit.constants import DEFAULT_STORE_TIMEOUT_S, PROMPT_PREVIEW_CHARS
from promptaudit.models.risk import Severity
from promptaudit.scanner.definitions import DetectorRegistry
from promptaudit.scanner.engine import scan_text
from promptaudit.scanner.masking import mask_value
from promptaudit.scanner.severity import resolve_overall_severity
from promptaudit.store.models import NewFinding, NewPrompt, Subject
from promptaudit.store.protocol import (
    PromptStore,
    StoreError,
    SubjectConflictError,
    with_timeout,
)
from promptaudit.utils.logger import PerformanceLogger, get_logger

logger = get_logger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = ("org_id", "user_email", "ai_tool", "prompt_text")


# ─── Errors ───────────────────────────────────────────────────────────────────


class CaptureError(Exception):
    """Base class for capture failures that are not plain store errors."""


class CaptureValidationError(CaptureError):
    """One or more required fields are missing or empty."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing required fields: {', '.join(missing)}")


class FindingPersistenceError(CaptureError):
    """The prompt was stored but its findings could not be.

    ``prompt_id`` identifies the stored prompt so an operator can reconcile.
    """

    def __init__(self, prompt_id: str, cause: BaseException) -> None:
        self.prompt_id = prompt_id
        super().__init__(f"Findings for prompt {prompt_id} were not persisted: {cause}")


# ─── Request / result ─────────────────────────────────────────────────────────


@dataclass
class CaptureRequest:
    """One captured prompt as submitted by the browser extension.

    Required fields are Optional here so that absence is reported by
    CapturePipeline as a validation error rather than a TypeError.
    """

    org_id: Optional[str] = None
    user_email: Optional[str] = None
    ai_tool: Optional[str] = None
    prompt_text: Optional[str] = None
    url: Optional[str] = None
    session_id: Optional[str] = None

    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]


@dataclass(frozen=True)
class CaptureResult:
    prompt_id: str
    risks_detected: int
    overall_risk: Severity


# ─── Pipeline ─────────────────────────────────────────────────────────────────


class CapturePipeline:
    """Orchestrates a single capture against a PromptStore.

    Stateless between calls: concurrent captures share only the store.
    """

    def __init__(
        self,
        store: PromptStore,
        registry: DetectorRegistry,
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
        preview_chars: int = PROMPT_PREVIEW_CHARS,
    ) -> None:
        self._store = store
        self._registry = registry
        self._timeout_s = timeout_s
        self._preview_chars = preview_chars

    async def capture(self, request: CaptureRequest) -> CaptureResult:
        """Run the full capture flow for one prompt.

        Raises:
            CaptureValidationError: A required field is missing or empty.
            StoreError:             Subject resolution or prompt insert failed
                                    (StoreTimeoutError on expiry).
            FindingPersistenceError: The prompt was stored, its findings were not.
        """
        missing = request.missing_fields()
        if missing:
            raise CaptureValidationError(missing)

        # Narrowed by missing_fields() above.
        org_id: str = request.org_id  # type: ignore[assignment]
        email: str = request.user_email  # type: ignore[assignment]
        text: str = request.prompt_text  # type: ignore[assignment]

        subject = await self._resolve_subject(org_id, email)

        prompt_id = await with_timeout(
            self._store.insert_prompt(
                NewPrompt(
                    org_id=org_id,
                    subject_id=subject.id,
                    ai_tool=request.ai_tool,  # type: ignore[arg-type]
                    prompt_text=text,
                    prompt_preview=text[: self._preview_chars],
                    char_count=len(text),
                    url=request.url,
                    session_id=request.session_id,
                )
            ),
            self._timeout_s,
            "insert_prompt",
        )

        with PerformanceLogger(
            "scan", logger=logger, prompt_id=prompt_id, char_count=len(text)
        ):
            detections = scan_text(text, self._registry)
            findings = [
                NewFinding(
                    position=position,
                    category=d.category,
                    severity=d.severity,
                    label=d.label,
                    masked_value=mask_value(d.raw_match, d.category),
                )
                for position, d in enumerate(detections)
            ]

        if findings:
            try:
                await with_timeout(
                    self._store.insert_findings(prompt_id, findings),
                    self._timeout_s,
                    "insert_findings",
                )
            except StoreError as exc:
                logger.error(
                    "finding_persistence_failed",
                    prompt_id=prompt_id,
                    org_id=org_id,
                    finding_count=len(findings),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise FindingPersistenceError(prompt_id, exc) from exc

        overall = resolve_overall_severity(findings)
        logger.info(
            "prompt_captured",
            prompt_id=prompt_id,
            org_id=org_id,
            subject_id=subject.id,
            ai_tool=request.ai_tool,
            risks_detected=len(findings),
            overall_risk=overall.value,
        )
        return CaptureResult(
            prompt_id=prompt_id,
            risks_detected=len(findings),
            overall_risk=overall,
        )

    async def _resolve_subject(self, org_id: str, email: str) -> Subject:
        """Find or create the subject; a lost creation race falls back to lookup.

        An existing subject's last_active is refreshed here, before anything of
        the capture is written. A new subject starts with last_active = now.
        """
        subject = await with_timeout(
            self._store.find_subject(org_id, email), self._timeout_s, "find_subject"
        )
        if subject is not None:
            await with_timeout(
                self._store.touch_subject(subject.id, datetime.now(timezone.utc)),
                self._timeout_s,
                "touch_subject",
            )
            return subject

        try:
            return await with_timeout(
                self._store.create_subject(org_id, email),
                self._timeout_s,
                "create_subject",
            )
        except SubjectConflictError:
            logger.debug("subject_create_conflict", org_id=org_id)

        subject = await with_timeout(
            self._store.find_subject(org_id, email), self._timeout_s, "find_subject"
        )
        if subject is None:
            raise StoreError(
                f"Subject for org {org_id!r} conflicted on create but was not found"
            )
        return subject
