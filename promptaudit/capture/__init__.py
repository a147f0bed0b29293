"""PromptAudit capture package.

    pipeline.py — CapturePipeline, CaptureRequest/CaptureResult, capture errors
    router.py   — POST /api/capture
    limiter.py  — shared slowapi Limiter
"""

from promptaudit.capture.pipeline import (
    CaptureError,
    CapturePipeline,
    CaptureRequest,
    CaptureResult,
    CaptureValidationError,
    FindingPersistenceError,
)

__all__ = [
    "CaptureError",
    "CapturePipeline",
    "CaptureRequest",
    "CaptureResult",
    "CaptureValidationError",
    "FindingPersistenceError",
]
