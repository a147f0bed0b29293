"""HTTP middleware for PromptAudit.

  - BodySizeLimitMiddleware   — 10 MB request body cap (HTTP 413). Bounds the
                                size of any text handed to the scanner.
  - RequestContextMiddleware  — per-request request id (``X-Request-ID``)
                                bound into every log entry, plus one access log
                                line per request.
"""

from __future__ import annotations

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from promptaudit.constants import MAX_REQUEST_BODY_BYTES
from promptaudit.utils.ids import generate_id
from promptaudit.utils.logger import bind_request_id, get_logger, unbind_request_id

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_PAYLOAD_TOO_LARGE_BODY: dict = {
    "error": f"Request body too large. Maximum size: {MAX_REQUEST_BODY_BYTES // (1024 * 1024)}MB",
}

_INVALID_CONTENT_LENGTH_BODY: dict = {"error": "Invalid Content-Length header"}


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject request bodies larger than MAX_REQUEST_BODY_BYTES with HTTP 413.

    Two-phase check:
      1. Content-Length fast path: reject on the declared size without
         reading the body.
      2. No Content-Length (chunked): read with a rolling cap; the accepted
         body is cached on the request for the route handler.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        content_length_header = request.headers.get("content-length")

        if content_length_header is not None:
            try:
                declared_size = int(content_length_header)
            except ValueError:
                logger.warning(
                    "Invalid Content-Length header",
                    value=content_length_header,
                    path=request.url.path,
                )
                return JSONResponse(status_code=400, content=_INVALID_CONTENT_LENGTH_BODY)

            if declared_size > MAX_REQUEST_BODY_BYTES:
                logger.warning(
                    "Request body too large (Content-Length)",
                    declared_size=declared_size,
                    limit=MAX_REQUEST_BODY_BYTES,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)

            return await call_next(request)

        if request.method in ("GET", "HEAD", "OPTIONS"):
            return await call_next(request)

        body_chunks: list[bytes] = []
        total_size = 0
        async for chunk in request.stream():
            total_size += len(chunk)
            if total_size > MAX_REQUEST_BODY_BYTES:
                logger.warning(
                    "Request body too large (chunked)",
                    accumulated_size=total_size,
                    limit=MAX_REQUEST_BODY_BYTES,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)
            body_chunks.append(chunk)

        # Starlette's Request.body() returns request._body when present.
        request._body = b"".join(body_chunks)  # type: ignore[attr-defined]
        return await call_next(request)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request id, expose it in ``X-Request-ID`` and log the request.

    The id is bound in structlog's context variables for the duration of the
    request, so entries from the pipeline and the store carry it too.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = generate_id()
        bind_request_id(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info(
                "request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return response
        finally:
            unbind_request_id()
