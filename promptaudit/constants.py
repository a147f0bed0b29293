"""Shared constants for PromptAudit.

All size limits, window bounds and numeric caps used across modules are
defined here. No magic numbers in other modules — import from here.
"""

# ─── Request Size Limits ─────────────────────────────────────────────────────

# Maximum allowed request body size. Captures larger than this are rejected
# with HTTP 413 before the body is parsed, which also bounds scanner input.
MAX_REQUEST_BODY_BYTES: int = 10 * 1024 * 1024  # 10 MB

# ─── Capture ─────────────────────────────────────────────────────────────────

# Length of the stored prompt preview shown in dashboard listings.
PROMPT_PREVIEW_CHARS: int = 100

# Per-client capture rate limit (slowapi syntax). Browser extensions send one
# request per submitted prompt, so this is far above any human typing rate.
CAPTURE_RATE_LIMIT: str = "600/minute"

# ─── Store ───────────────────────────────────────────────────────────────────

# Upper bound for any single store interaction before it is reported as a
# persistence failure.
DEFAULT_STORE_TIMEOUT_S: float = 5.0

# ─── Dashboard windows and paging ────────────────────────────────────────────

DEFAULT_LOOKBACK_DAYS: int = 30
MAX_LOOKBACK_DAYS: int = 365

DEFAULT_PAGE_LIMIT: int = 50
MAX_PAGE_LIMIT: int = 500
