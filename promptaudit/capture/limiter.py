"""Shared rate limiter for the capture endpoint.

Uses slowapi (Starlette-compatible rate limiting) keyed by client address.
Browser extensions send one request per submitted prompt, so the limit only
bites on runaway clients.

The Limiter instance is created here and shared between:
  - promptaudit/capture/router.py  (route decorator)
  - promptaudit/main.py            (app.state.limiter + exception handler)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from promptaudit.constants import CAPTURE_RATE_LIMIT

limiter = Limiter(key_func=get_remote_address)

__all__ = ["CAPTURE_RATE_LIMIT", "limiter"]
