"""
Request guards for the passkey API.

Each guard is a plain function of the request, the settings and (for rate
limiting) the limiter. A guard either returns quietly or raises a
``GatewayError`` that the application's exception handler renders.
"""

from typing import Optional
import hmac

from fastapi import Request, Response
import structlog

from passkey_gate.core.config import Settings
from passkey_gate.core.errors import CsrfRejected, OriginNotConfigured, OriginRejected, RateLimited
from passkey_gate.core.metrics import record_rate_limit_rejection
from passkey_gate.services.rate_limiter import RateLimitDecision, RateLimiter

logger = structlog.get_logger()

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
TRUSTED_FETCH_SITES = frozenset({"same-origin", "same-site", "none"})

PERMISSIONS_POLICY = ", ".join(
    f"{feature}=()"
    for feature in (
        "accelerometer",
        "autoplay",
        "camera",
        "geolocation",
        "gyroscope",
        "magnetometer",
        "microphone",
        "payment",
        "usb",
    )
)


def apply_security_headers(response: Response, settings: Settings) -> Response:
    """Attach the fixed hardening header set to ``response``."""
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Permissions-Policy"] = PERMISSIONS_POLICY
    response.headers["Cache-Control"] = "no-store, max-age=0"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"
    return response


def get_client_ip(request: Request) -> str:
    """First ``X-Forwarded-For`` hop, else the peer address, else ``unknown``."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _request_host(request: Request) -> Optional[str]:
    return request.headers.get("host") or request.headers.get("x-forwarded-host")


def ensure_allowed_origin(request: Request, settings: Settings, allow_no_origin: bool = True) -> None:
    origin = request.headers.get("origin")

    if not origin:
        if allow_no_origin:
            return
        logger.warning("Origin header missing", path=request.url.path)
        raise OriginRejected("Origin header is required")

    allowed = settings.allowed_origins
    if not allowed:
        if settings.is_production:
            raise OriginNotConfigured(detail="Set APP_ORIGIN, PASSKEY_ORIGIN or ALLOWED_ORIGINS")
        return

    if origin in allowed:
        return

    host = _request_host(request)
    if host:
        if origin == f"https://{host}":
            return
        if not settings.is_production and origin == f"http://{host}":
            return

    logger.warning("Origin rejected", origin=origin, host=host, path=request.url.path)
    raise OriginRejected()


def tokens_match(cookie_token: Optional[str], header_token: Optional[str]) -> bool:
    """
    Constant-time comparison of the two double-submit tokens.

    Length is compared first and a mismatch returns without touching the bytes.
    """
    if not cookie_token or not header_token:
        return False
    try:
        cookie_bytes = cookie_token.encode("utf-8")
        header_bytes = header_token.encode("utf-8")
    except UnicodeError:
        return False
    if len(cookie_bytes) != len(header_bytes):
        return False
    return hmac.compare_digest(cookie_bytes, header_bytes)


def ensure_csrf_protection(
    request: Request,
    settings: Settings,
    cookie_name: Optional[str] = None,
    header_name: Optional[str] = None,
) -> None:
    if request.method.upper() in SAFE_METHODS:
        return

    fetch_site = request.headers.get("sec-fetch-site")
    if fetch_site and fetch_site.lower() not in TRUSTED_FETCH_SITES:
        logger.warning("Cross-site request rejected", sec_fetch_site=fetch_site, path=request.url.path)
        raise CsrfRejected()

    cookie_token = request.cookies.get(cookie_name or settings.CSRF_COOKIE_NAME)
    header_token = request.headers.get(header_name or settings.CSRF_HEADER_NAME)

    if not tokens_match(cookie_token, header_token):
        logger.warning("CSRF token mismatch", path=request.url.path)
        raise CsrfRejected()


async def enforce_rate_limit(
    request: Request,
    response: Response,
    limiter: RateLimiter,
    prefix: str,
    identifier: Optional[str] = None,
    limit: Optional[int] = None,
    window_seconds: Optional[float] = None,
) -> RateLimitDecision:
    """
    Count the request and emit the ``X-RateLimit-*`` headers on ``response``.

    Raises ``RateLimited`` (carrying the same headers plus ``Retry-After``)
    once the window's limit is exceeded. The decision is kept on
    ``request.state.rate_limit`` so error responses raised later in the
    request carry the headers too.
    """
    identifier = identifier or get_client_ip(request)
    decision = await limiter.hit(prefix, identifier, limit=limit, window_seconds=window_seconds)
    request.state.rate_limit = decision
    headers = decision.headers()

    if not decision.allowed:
        record_rate_limit_rejection(prefix)
        raise RateLimited(headers=headers)

    for name, value in headers.items():
        response.headers[name] = value
    return decision
