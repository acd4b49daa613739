"""
Error types crossing the HTTP boundary.

Every error carries its status code, a stable machine-readable ``code`` and a
client-safe ``message``. ``detail`` holds diagnostic text that is only
rendered outside production.
"""

from typing import Dict, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

logger = structlog.get_logger()


class GatewayError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"
    message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        if message is not None:
            self.message = message
        self.detail = detail
        self.headers = headers or {}
        super().__init__(self.message)


class InvalidRequest(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_request"
    message = "Request is missing required fields"


class NotAuthenticated(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "not_authenticated"
    message = "Missing or invalid session"

    def __init__(self, message: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.headers.setdefault("WWW-Authenticate", "Bearer")


class OriginRejected(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "origin_rejected"
    message = "Origin is not allowed"


class OriginNotConfigured(GatewayError):
    code = "origin_not_configured"
    message = "Allowed origins are not configured"


class CsrfRejected(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "csrf_rejected"
    message = "CSRF validation failed"


class RateLimited(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"
    message = "Too many requests, please try again later"


# Ceremony errors. Messages tell the client to restart from the options step.

class ChallengeNotFound(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "challenge_not_found"
    message = "No pending passkey challenge, request new options and retry"


class ChallengeExpired(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "challenge_expired"
    message = "Passkey challenge expired, request new options and retry"


class VerificationFailed(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "verification_failed"
    message = "Passkey verification failed"


class NoCredentialsFound(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "no_credentials"
    message = "No passkey is registered for this account"


class CredentialNotFound(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "credential_not_found"
    message = "Passkey is not registered or was removed"


class CredentialOwnershipConflict(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "credential_conflict"
    message = "This passkey is registered to another account"


class PasskeyNotFound(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "passkey_not_found"
    message = "Passkey not found"


class IdentityBackendUnavailable(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "identity_unavailable"
    message = "Identity service is unavailable"


class SessionIssuanceFailed(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "session_issuance_failed"
    message = "Passkey verified but the session could not be created"


class InternalError(GatewayError):
    pass


def rate_limit_headers(request: Request) -> Dict[str, str]:
    """``X-RateLimit-*`` headers of the decision the request already passed, if any."""
    decision = getattr(request.state, "rate_limit", None)
    return decision.headers() if decision is not None else {}


def error_payload(exc: GatewayError, include_detail: bool) -> Dict[str, str]:
    payload = {"error": exc.code, "message": exc.message}
    if include_detail and exc.detail:
        payload["detail"] = exc.detail
    return payload


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    settings = request.app.state.settings
    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            error=exc.code,
            detail=exc.detail,
            path=request.url.path,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc, include_detail=not settings.is_production),
        headers={**rate_limit_headers(request), **exc.headers},
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    settings = request.app.state.settings
    error = InvalidRequest(detail=str(exc.errors()))
    return JSONResponse(
        status_code=error.status_code,
        content=error_payload(error, include_detail=not settings.is_production),
        headers=rate_limit_headers(request),
    )
