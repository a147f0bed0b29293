"""Identifier generation for PromptAudit records and HTTP requests.

Subjects, prompts, findings and requests are keyed by random UUID4 strings
(36 characters, canonical hyphenated form). Ordering never relies on ids;
every listing sorts on a timestamp or a position first.
"""

from __future__ import annotations

import uuid


def generate_id() -> str:
    """Generate a new random identifier.

    Example::

        prompt_id = generate_id()
        # "3f0c6a8e-2b1d-4c4e-9a57-0d6f1b2e8c41"
        assert len(prompt_id) == 36
    """
    return str(uuid.uuid4())
