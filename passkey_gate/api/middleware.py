import uuid
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

from passkey_gate.core.errors import InternalError, error_payload, rate_limit_headers
from passkey_gate.middleware.request_guards import apply_security_headers

logger = structlog.get_logger()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())

        # Add to request state
        request.state.request_id = request_id

        # Add to logger context
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        finally:
            # Clear context
            structlog.contextvars.clear_contextvars()

        # Add to response headers
        response.headers["X-Request-ID"] = request_id

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add hardening headers to every response.

    Exceptions that escape the routes are logged and turned into a generic
    500 here so that even failed requests carry the headers.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        settings = request.app.state.settings
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception("Unhandled error", path=request.url.path, error=str(e))
            error = InternalError(detail=str(e))
            response = JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=error_payload(error, include_detail=not settings.is_production),
                headers=rate_limit_headers(request),
            )
        return apply_security_headers(response, settings)
