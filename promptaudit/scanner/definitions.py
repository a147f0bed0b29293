"""Detector registry for the sensitive-data scanner.

All built-in patterns are pre-compiled at module load time using google-re2
(linear-time matching — no catastrophic backtracking on hostile prompts).
NO pattern compilation happens per-request or lazily.

IMPORT RULES:
  - ``import re2`` ONLY — ``import re`` is PROHIBITED in promptaudit/scanner/.

The registry is an explicit ordered tuple, never a mapping: finding order is
part of the scanner's observable output. It is built once at startup by
``build_registry()`` and handed to the scanner; nothing in the scanner looks
detectors up globally.
"""

from __future__ import annotations

import re2  # google-re2 — NOT stdlib re

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Optional

from promptaudit.models.risk import Severity

if TYPE_CHECKING:
    from promptaudit.config import CustomDetectorConfig


class RegistryError(ValueError):
    """Detector configuration is malformed. Fatal at startup."""


# ---------------------------------------------------------------------------
# DetectorDefinition
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectorDefinition:
    """A single compiled detection rule with metadata.

    Fields:
        category:  Stable identifier persisted on findings (e.g. ``"ssn"``).
                   Also selects the masking rule in masking.py.
        pattern:   Pre-compiled re2 pattern object.
        severity:  Severity assigned to every match of this rule.
        label:     Human-readable description shown on dashboards.
    """
    category: str
    pattern: Any           # re2._Regexp — pre-compiled
    severity: Severity
    label: str


# ---------------------------------------------------------------------------
# Category identifiers
# ---------------------------------------------------------------------------

SSN = "ssn"
CREDIT_CARD = "credit_card"
EMAIL = "email"
PHONE = "phone"
MEDICAL_RECORD = "medical_record"
BANK_ACCOUNT = "bank_account"
CODE_BLOCK = "code_block"
API_KEY = "api_key"
PERSON_NAME = "person_name"


# ===========================================================================
# BUILT-IN DETECTORS
# COMPILED AT MODULE LOAD — never per-request. Order is fixed.
# ===========================================================================

BUILTIN_DETECTORS: tuple[DetectorDefinition, ...] = (
    # ─── Critical: identity and payment data ─────────────────────────────
    DetectorDefinition(
        category=SSN,
        pattern=re2.compile(r'\b\d{3}-\d{2}-\d{4}\b'),
        severity=Severity.CRITICAL,
        label="Social Security Number",
    ),
    DetectorDefinition(
        category=CREDIT_CARD,
        pattern=re2.compile(r'\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b'),
        severity=Severity.CRITICAL,
        label="Credit Card Number",
    ),
    # ─── Contact details ─────────────────────────────────────────────────
    DetectorDefinition(
        category=EMAIL,
        pattern=re2.compile(r'\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b'),
        severity=Severity.HIGH,
        label="Email Address",
    ),
    DetectorDefinition(
        category=PHONE,
        pattern=re2.compile(r'\b\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b'),
        severity=Severity.MEDIUM,
        label="Phone Number",
    ),
    # ─── Healthcare (PHI) ────────────────────────────────────────────────
    DetectorDefinition(
        category=MEDICAL_RECORD,
        pattern=re2.compile(r'(?i)\b(MRN|medical record|patient id)[:\s]?\d+\b'),
        severity=Severity.CRITICAL,
        label="Medical Record Number",
    ),
    # ─── Financial ───────────────────────────────────────────────────────
    DetectorDefinition(
        category=BANK_ACCOUNT,
        pattern=re2.compile(r'(?i)\b(account|routing)[:\s#]?\d{8,17}\b'),
        severity=Severity.CRITICAL,
        label="Bank Account/Routing Number",
    ),
    # ─── Proprietary source code ─────────────────────────────────────────
    DetectorDefinition(
        category=CODE_BLOCK,
        pattern=re2.compile(
            r'(function\s+\w+'
            r'|const\s+\w+\s*='
            r'|import\s+.*from'
            r'|class\s+\w+'
            r'|def\s+\w+'
            r'|public\s+class)'
        ),
        severity=Severity.MEDIUM,
        label="Source Code",
    ),
    # ─── Credentials ─────────────────────────────────────────────────────
    DetectorDefinition(
        category=API_KEY,
        pattern=re2.compile(
            r'''(?i)(api[_-]?key|secret[_-]?key|access[_-]?token)[:\s=]["']?[\w-]{20,}["']?'''
        ),
        severity=Severity.HIGH,
        label="API Key or Secret",
    ),
    # ─── Names (context dependent) ───────────────────────────────────────
    DetectorDefinition(
        category=PERSON_NAME,
        pattern=re2.compile(r'\b(Mr\.|Mrs\.|Ms\.|Dr\.)\s+[A-Z][a-z]+\s+[A-Z][a-z]+\b'),
        severity=Severity.LOW,
        label="Person Name with Title",
    ),
)


# ---------------------------------------------------------------------------
# DetectorRegistry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectorRegistry:
    """Immutable ordered collection of detectors.

    Iteration yields detectors in registry order. Construct via
    ``build_registry()``, which validates the whole set.
    """

    detectors: tuple[DetectorDefinition, ...]

    def __iter__(self) -> Iterator[DetectorDefinition]:
        return iter(self.detectors)

    def __len__(self) -> int:
        return len(self.detectors)

    @property
    def categories(self) -> tuple[str, ...]:
        return tuple(d.category for d in self.detectors)

    def get(self, category: str) -> Optional[DetectorDefinition]:
        for detector in self.detectors:
            if detector.category == category:
                return detector
        return None


# Probe strings used to reject rules that can match without consuming input.
_EMPTY_MATCH_PROBES: tuple[str, ...] = ("", " ", "a", "0")


def compile_detector(
    category: str,
    pattern: str,
    severity: str,
    label: str,
) -> DetectorDefinition:
    """Compile and validate one operator-supplied detector.

    Raises:
        RegistryError: On an empty field, an unknown severity, a pattern that
            does not compile under re2, or a pattern that can match the empty
            string.
    """
    if not category or not category.strip():
        raise RegistryError("Detector category must be a non-empty string")
    if not label or not label.strip():
        raise RegistryError(f"Detector {category!r}: label must be a non-empty string")
    if not pattern:
        raise RegistryError(f"Detector {category!r}: pattern must be a non-empty string")

    try:
        parsed_severity = Severity.parse(severity)
    except ValueError as exc:
        raise RegistryError(f"Detector {category!r}: {exc}") from exc
    if parsed_severity is Severity.NONE:
        raise RegistryError(f"Detector {category!r}: 'none' is not a finding severity")

    try:
        compiled = re2.compile(pattern)
    except re2.error as exc:
        raise RegistryError(
            f"Detector {category!r}: pattern does not compile: {exc}"
        ) from exc

    for probe in _EMPTY_MATCH_PROBES:
        m = compiled.search(probe)
        if m is not None and m.group(0) == "":
            raise RegistryError(
                f"Detector {category!r}: pattern can match the empty string"
            )

    return DetectorDefinition(
        category=category.strip(),
        pattern=compiled,
        severity=parsed_severity,
        label=label.strip(),
    )


def build_registry(
    custom: Iterable["CustomDetectorConfig"] = (),
) -> DetectorRegistry:
    """Build the process-wide detector registry.

    Built-in detectors come first in their fixed order, followed by custom
    detectors in configuration order.

    Raises:
        RegistryError: If any custom detector is malformed or reuses a
            category already in the registry.
    """
    detectors: list[DetectorDefinition] = list(BUILTIN_DETECTORS)
    seen: set[str] = {d.category for d in detectors}

    for entry in custom:
        detector = compile_detector(
            category=entry.category,
            pattern=entry.pattern,
            severity=entry.severity,
            label=entry.label,
        )
        if detector.category in seen:
            raise RegistryError(f"Duplicate detector category: {detector.category!r}")
        seen.add(detector.category)
        detectors.append(detector)

    return DetectorRegistry(detectors=tuple(detectors))
