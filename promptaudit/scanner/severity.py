"""Overall severity of a scanned prompt."""

from __future__ import annotations

from typing import Iterable, Protocol

from promptaudit.models.risk import Severity


class _HasSeverity(Protocol):
    severity: Severity


def resolve_overall_severity(findings: Iterable[_HasSeverity]) -> Severity:
    """Return the highest severity present in ``findings``.

    Single pass; the result depends only on which severities occur, never on
    their order. Returns ``Severity.NONE`` for an empty input.
    """
    highest = Severity.NONE
    for finding in findings:
        if finding.severity.rank > highest.rank:
            highest = finding.severity
    return highest
