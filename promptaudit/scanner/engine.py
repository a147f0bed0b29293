"""Sensitive-data scanner.

Provides:
  - ``Detection``: frozen dataclass for one matched occurrence (INTERNAL ONLY).
  - ``scan_text()``: apply every detector of a registry to a text.

INVARIANTS:
  - Synchronous, pure, no I/O and no shared mutable state: identical input
    yields an identical, order-stable result, and concurrent calls from
    unrelated requests need no coordination.
  - Every occurrence is reported (``finditer``, never ``search``), in registry
    order and then left to right within a detector.
  - No cross-category deduplication: a secret that also looks like an email
    address is reported once per matching category.

IMPORT RULES:
  - ``import re2`` ONLY — ``import re`` is PROHIBITED in promptaudit/scanner/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from promptaudit.models.risk import Severity
from promptaudit.scanner.definitions import DetectorRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Detection:
    """One matched occurrence of a detector in a scanned text.

    INTERNAL TYPE — ``raw_match`` is the sensitive value itself. It is only
    ever handed to ``mask_value()``; it is never persisted, logged or
    returned by an API.
    """

    category: str
    severity: Severity
    label: str
    raw_match: str
    start: int
    end: int


def scan_text(text: str, registry: DetectorRegistry) -> list[Detection]:
    """Scan ``text`` with every detector in ``registry``.

    Args:
        text:     Prompt text. Size is bounded upstream by the request body cap.
        registry: Detector registry built at startup.

    Returns:
        Detections in registry order, then in order of appearance. Empty when
        ``text`` is empty or nothing matches.
    """
    if not text:
        return []

    detections: list[Detection] = []
    for detector in registry:
        for m in detector.pattern.finditer(text):
            detections.append(
                Detection(
                    category=detector.category,
                    severity=detector.severity,
                    label=detector.label,
                    raw_match=m.group(0),
                    start=m.start(),
                    end=m.end(),
                )
            )

    if detections:
        logger.debug(
            "scan matched %d occurrence(s) across %d categories",
            len(detections),
            len({d.category for d in detections}),
        )
    return detections
