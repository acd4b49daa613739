from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from passkey_gate.core.config import Settings
from passkey_gate.core.errors import NotAuthenticated
from passkey_gate.db.session import get_db
from passkey_gate.middleware.request_guards import (
    enforce_rate_limit,
    ensure_allowed_origin,
    ensure_csrf_protection,
    get_client_ip,
)
from passkey_gate.services.identity import IdentityBackend, IdentityUser, extract_bearer_token
from passkey_gate.services.passkey_service import PasskeyService
from passkey_gate.services.rate_limiter import RateLimiter
from passkey_gate.services.webauthn import WebAuthnVerifier

logger = structlog.get_logger()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_identity_backend(request: Request) -> IdentityBackend:
    return request.app.state.identity


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_verifier(request: Request) -> WebAuthnVerifier:
    return request.app.state.verifier


def request_guard(prefix: str, allow_no_origin: bool = True):
    """
    Origin, CSRF and rate-limit checks for one group of routes, in that order.
    """
    async def guard(
        request: Request,
        response: Response,
        settings: Settings = Depends(get_settings),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> None:
        ensure_allowed_origin(request, settings, allow_no_origin=allow_no_origin)
        ensure_csrf_protection(request, settings)
        await enforce_rate_limit(request, response, limiter, prefix)

    return guard


async def get_current_user(
    request: Request,
    identity: IdentityBackend = Depends(get_identity_backend),
) -> IdentityUser:
    token = extract_bearer_token(request.headers.get("authorization"))
    if not token:
        raise NotAuthenticated("Missing bearer session")

    user = await identity.get_user_for_session(token)
    structlog.contextvars.bind_contextvars(user_id=user.id)
    return user


def get_passkey_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    identity: IdentityBackend = Depends(get_identity_backend),
    verifier: WebAuthnVerifier = Depends(get_verifier),
) -> PasskeyService:
    return PasskeyService(
        db,
        identity=identity,
        verifier=verifier,
        challenge_ttl_seconds=settings.CHALLENGE_TTL_SECONDS,
        client_ip=get_client_ip(request),
    )
