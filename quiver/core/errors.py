"""Error taxonomy and FastAPI handlers."""

import logging
import builtins
from typing import Mapping, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from quiver.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class AuthenticationRequiredError(AppError):
    """No verified caller identity. Raised before any storage access."""
    code = "authentication_required"
    status_code = 401


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class UpstreamError(AppError):
    """Billing provider call failed. Not retried internally."""
    code = "upstream_failure"
    status_code = 502


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class SignatureVerificationError(AppError):
    """Webhook delivery rejected before any state is touched."""
    code = "signature_invalid"
    status_code = 400


class WebhookProcessingError(AppError):
    """Verified event failed to apply; 5xx so the provider redelivers."""
    code = "webhook_processing_failed"
    status_code = 500


class ConfigurationError(AppError):
    code = "configuration_error"
    status_code = 500


_HTTP_CODES = {
    401: "authentication_required",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    422: "validation_error",
}

logger = logging.getLogger("quiver.errors")


def _request_id_for(request: Request, preferred: Optional[str] = None) -> str:
    return preferred or getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(
    request: Request,
    code: str,
    message: str,
    status_code: int,
    *,
    request_id: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """
    The one error body every route returns.

    ``{"error": {code, message, request_id}, "detail": message}`` with the
    request id mirrored in the x-request-id header.
    """
    rid = _request_id_for(request, request_id)
    response = JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "request_id": rid}, "detail": message},
        headers=dict(headers or {}),
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return error_response(request, exc.code, exc.message, exc.status_code, request_id=exc.request_id)


async def http_error_handler(request: Request, exc: HTTPException):
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"error_code": code, "status": exc.status_code})
    return error_response(
        request,
        code,
        str(exc.detail or "HTTP error"),
        exc.status_code,
        headers=exc.headers,
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    # Runs outside the request-id middleware, so the context var is already reset
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return error_response(request, "internal_error", "Unexpected error", 500, request_id=rid)
