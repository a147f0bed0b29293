"""HTTP surface of the capture pipeline.

Provides:
  POST /api/capture — scan and persist one prompt submitted by the extension

Response codes:
  201 {prompt_id, risks_detected, overall_risk}
  400 {"error": "Missing required fields", "missing": [...]}
  500 {"error": "Failed to capture prompt"}
  503 {"error": "Service not ready"} before the lifespan has finished startup
"""

from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from promptaudit.capture.limiter import CAPTURE_RATE_LIMIT, limiter
from promptaudit.capture.pipeline import (
    CaptureError,
    CapturePipeline,
    CaptureRequest,
    CaptureValidationError,
    FindingPersistenceError,
)
from promptaudit.store.protocol import StoreError
from promptaudit.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["capture"])

MISSING_FIELDS_MESSAGE = "Missing required fields"
CAPTURE_FAILED_MESSAGE = "Failed to capture prompt"


class CaptureBody(BaseModel):
    """Request body for POST /api/capture.

    Every field is optional at the schema level; required-field checks belong
    to CapturePipeline so the 400 body can list exactly what is missing.
    """

    org_id: Optional[str] = None
    user_email: Optional[str] = None
    ai_tool: Optional[str] = None
    prompt_text: Optional[str] = None
    url: Optional[str] = None
    session_id: Optional[str] = None


def missing_fields_response(missing: list[str]) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": MISSING_FIELDS_MESSAGE, "missing": missing},
    )


@router.post("/capture", status_code=status.HTTP_201_CREATED)
@limiter.limit(CAPTURE_RATE_LIMIT)
async def capture_prompt(body: CaptureBody, request: Request) -> JSONResponse:
    """Scan one prompt, persist it with its masked findings, report the risk."""
    pipeline: Optional[CapturePipeline] = getattr(request.app.state, "capture_pipeline", None)
    if pipeline is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "Service not ready"},
        )

    try:
        result = await pipeline.capture(CaptureRequest(**body.model_dump()))
    except CaptureValidationError as exc:
        return missing_fields_response(exc.missing)
    except FindingPersistenceError as exc:
        # Already logged with full context by the pipeline.
        logger.warning("capture_incomplete", prompt_id=exc.prompt_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": CAPTURE_FAILED_MESSAGE},
        )
    except (StoreError, CaptureError) as exc:
        logger.error(
            "capture_failed",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": CAPTURE_FAILED_MESSAGE},
        )

    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={
            "prompt_id": result.prompt_id,
            "risks_detected": result.risks_detected,
            "overall_risk": result.overall_risk.value,
        },
    )
