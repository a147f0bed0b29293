"""Severity levels shared by the scanner, the store and the dashboard.

Severities form a total order ``critical > high > medium > low``. ``none`` is
not a finding severity: it only describes a prompt that produced no findings.
"""

from __future__ import annotations

from enum import Enum


class Severity(str, Enum):
    """Risk rank of a finding (or of a whole prompt)."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"

    @property
    def rank(self) -> int:
        """Numeric rank; higher is more severe. NONE ranks below LOW."""
        return _RANKS[self]

    @classmethod
    def parse(cls, value: str) -> "Severity":
        """Parse a case-insensitive severity name.

        Raises:
            ValueError: If ``value`` is not a known severity.
        """
        try:
            return cls(value.strip().lower())
        except (AttributeError, ValueError):
            raise ValueError(
                f"Unknown severity {value!r}; expected one of "
                f"{[s.value for s in cls]}"
            ) from None


_RANKS: dict[Severity, int] = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.NONE: 0,
}

#: Finding severities, most severe first.
FINDING_SEVERITIES: tuple[Severity, ...] = (
    Severity.CRITICAL,
    Severity.HIGH,
    Severity.MEDIUM,
    Severity.LOW,
)

#: Severities counted as "high risk" by the trend and activity reports.
HIGH_RISK_SEVERITIES: frozenset[Severity] = frozenset({Severity.CRITICAL, Severity.HIGH})
