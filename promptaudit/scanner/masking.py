"""Display-safe masking of matched values.

``mask_value()`` turns a raw match into a string that keeps only a minimal
distinguishing fragment (usually the last four digits). The output is what
gets persisted on a finding and shown on dashboards.

Categories without a dedicated rule (including operator-defined detectors)
use the generic rule: values longer than 10 characters keep their first and
last four characters, shorter values become a fixed mask. The partial reveal
of long values is intended behavior.
"""

from __future__ import annotations

from promptaudit.scanner.definitions import CREDIT_CARD, EMAIL, PHONE, SSN

GENERIC_MASK = "****"

#: Values longer than this keep their first and last four characters.
_GENERIC_REVEAL_THRESHOLD = 10


def _digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def _mask_ssn(value: str) -> str:
    return f"***-**-{value[-4:]}"


def _mask_credit_card(value: str) -> str:
    return f"****-****-****-{_digits(value)[-4:]}"


def _mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    return f"{local[:1]}***@{domain}"


def _mask_phone(value: str) -> str:
    return f"(***) ***-{_digits(value)[-4:]}"


def _mask_generic(value: str) -> str:
    if len(value) > _GENERIC_REVEAL_THRESHOLD:
        return f"{value[:4]}...{value[-4:]}"
    return GENERIC_MASK


_MASKERS = {
    SSN: _mask_ssn,
    CREDIT_CARD: _mask_credit_card,
    EMAIL: _mask_email,
    PHONE: _mask_phone,
}


def mask_value(value: str, category: str) -> str:
    """Return the display-safe rendering of ``value`` for ``category``.

    Examples::

        mask_value("123-45-6789", "ssn")              # "***-**-6789"
        mask_value("4111 1111 1111 1111", "credit_card")  # "****-****-****-1111"
        mask_value("jane.doe@corp.com", "email")      # "j***@corp.com"
        mask_value("(555) 123-4567", "phone")         # "(***) ***-4567"
        mask_value("function loadUsers", "code_block")  # "func...sers"
    """
    if not value:
        return GENERIC_MASK
    masker = _MASKERS.get(category, _mask_generic)
    return masker(value)
