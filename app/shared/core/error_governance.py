"""
Unified error handling for the HTTP surface.

Classifies exceptions, records them on the current trace span, counts and
logs them, and renders a uniform JSON body. 5xx responses carry
`Retry-After` so providers redeliver rolled-back webhooks.
"""

from typing import Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from opentelemetry import trace

from app.shared.core.config import get_settings
from app.shared.core.exceptions import LedgerlineException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

# Codes whose messages are safe to show in production.
SAFE_CODES = {
    "signature_invalid",
    "malformed_payload",
    "unknown_provider",
    "subscription_conflict",
    "processing_timeout",
}

RETRY_AFTER_SECONDS = "30"


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """Classify and record `exc`, returning the standardized JSON response."""
    error_id = error_id or str(uuid4())
    settings = get_settings()
    is_prod = settings.ENVIRONMENT.lower() in ("production", "staging")

    if isinstance(exc, LedgerlineException):
        app_exc = exc
        message = exc.message
        if is_prod and exc.code not in SAFE_CODES:
            message = "An error occurred while processing your request"
    else:
        # Never echo raw exception text; it may carry secrets.
        app_exc = LedgerlineException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        message = app_exc.message
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    with tracer.start_as_current_span("handle_exception") as span:
        span.set_attribute("error.id", error_id)
        span.set_attribute("error.code", app_exc.code)
        span.set_attribute("http.path", request.url.path)
        span.record_exception(exc)
        if app_exc.status_code >= 500:
            span.set_status(trace.Status(trace.StatusCode.ERROR, app_exc.code))

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=app_exc.status_code,
    ).inc()

    log = logger.error if app_exc.status_code >= 500 else logger.warning
    log(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    headers = {}
    if app_exc.status_code >= 500:
        headers["Retry-After"] = RETRY_AFTER_SECONDS

    return JSONResponse(
        status_code=app_exc.status_code,
        content={"error": app_exc.code, "message": message, "error_id": error_id},
        headers=headers,
    )
