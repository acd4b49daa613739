"""
Passkey ceremonies and credential management.

Registration and authentication each run in two steps. Start stores a fresh
challenge and returns the options the browser passes to
``navigator.credentials``; Finish verifies the signed response against that
challenge, updates the credential rows and consumes the challenge in the same
transaction.
"""

from functools import wraps
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from passkey_gate.core.audit import AuditLogger
from passkey_gate.core.errors import (
    ChallengeNotFound,
    CredentialNotFound,
    GatewayError,
    InternalError,
    InvalidRequest,
    NoCredentialsFound,
    PasskeyNotFound,
)
from passkey_gate.core.metrics import track_ceremony_metrics
from passkey_gate.models.passkey import AUTHENTICATION, REGISTRATION
from passkey_gate.schemas.passkey import PasskeySummary, RenamedPasskey
from passkey_gate.services.challenge_store import ChallengeStore, generate_challenge
from passkey_gate.services.credential_store import CredentialStore, clean_friendly_name
from passkey_gate.services.identity import IdentityBackend, IdentityUser
from passkey_gate.services.session_issuer import SessionIssuer
from passkey_gate.services.webauthn import WebAuthnVerifier

logger = structlog.get_logger()


def ceremony_step(step: str):
    """Record metrics for ``step`` and turn unexpected exceptions into ``InternalError``."""
    def decorator(func):
        @track_ceremony_metrics(step)
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except GatewayError:
                raise
            except Exception as e:
                logger.exception("Passkey step failed", step=step, error=str(e))
                raise InternalError(detail=str(e)) from e
        return wrapper
    return decorator


class PasskeyService:
    def __init__(
        self,
        db: AsyncSession,
        identity: IdentityBackend,
        verifier: WebAuthnVerifier,
        challenge_ttl_seconds: int = 300,
        session_issuer: Optional[SessionIssuer] = None,
        audit: Optional[AuditLogger] = None,
        client_ip: Optional[str] = None,
    ):
        self.db = db
        self.identity = identity
        self.verifier = verifier
        self.challenges = ChallengeStore(db, ttl_seconds=challenge_ttl_seconds)
        self.credentials = CredentialStore(db)
        self.session_issuer = session_issuer or SessionIssuer(identity)
        self.audit = audit or AuditLogger()
        self.client_ip = client_ip

    def _audit(self, action: str, outcome: str, **kwargs):
        self.audit.log_event(
            event_type="PASSKEY",
            action=action,
            outcome=outcome,
            ip_address=self.client_ip,
            **kwargs,
        )

    # ============ Registration ============

    @ceremony_step("registration_start")
    async def begin_registration(self, user: IdentityUser) -> Dict[str, Any]:
        existing = await self.credentials.list_for_user(user.id)
        challenge = generate_challenge()
        await self.challenges.issue([user.id], REGISTRATION, challenge)
        await self.db.commit()

        logger.info("Passkey registration started", user_id=user.id, existing_passkeys=len(existing))
        return self.verifier.registration_options(
            challenge=challenge,
            user_id=user.id,
            user_name=user.email or user.id,
            exclude_credential_ids=[c.credential_id for c in existing],
        )

    @ceremony_step("registration_finish")
    async def complete_registration(
        self,
        user: IdentityUser,
        attestation_response: Dict[str, Any],
        friendly_name: Optional[str] = None,
    ) -> PasskeySummary:
        challenge = await self.challenges.load_live(user.id, REGISTRATION)
        if self.verifier.answers_other_challenge(challenge.challenge, attestation_response):
            raise ChallengeNotFound()

        try:
            verified = self.verifier.verify_registration(challenge.challenge, attestation_response)
        except GatewayError:
            self._audit("REGISTER", "FAILURE", user_id=user.id)
            raise

        credential = await self.credentials.upsert(
            user_id=user.id,
            user_email=user.email,
            credential_id=verified.credential_id,
            public_key=verified.public_key,
            sign_count=verified.sign_count,
            aaguid=verified.aaguid,
            device_type=verified.device_type,
            backed_up=verified.backed_up,
            friendly_name=friendly_name,
        )
        await self.challenges.consume(challenge)
        await self.db.commit()

        self._audit("REGISTER", "SUCCESS", user_id=user.id, resource_id=credential.credential_id)
        logger.info("Passkey registered", user_id=user.id, device_type=credential.device_type)
        return PasskeySummary.from_credential(credential)

    # ============ Authentication ============

    @ceremony_step("authentication_start")
    async def begin_authentication(self, email: str) -> Dict[str, Any]:
        users = await self.identity.find_users_by_email(email)
        credentials = await self.credentials.list_for_users([u.id for u in users])
        if not credentials:
            # Same response whether the email is unknown or has no passkeys
            raise NoCredentialsFound()

        owner_ids = list(dict.fromkeys(c.user_id for c in credentials))
        if len(owner_ids) > 1:
            logger.warning("Email maps to several passkey owners", owners=len(owner_ids))

        challenge = generate_challenge()
        await self.challenges.issue(owner_ids, AUTHENTICATION, challenge)
        await self.db.commit()

        return self.verifier.authentication_options(
            challenge=challenge,
            allow_credential_ids=[c.credential_id for c in credentials],
        )

    @ceremony_step("authentication_finish")
    async def complete_authentication(self, email: str, assertion_response: Dict[str, Any]) -> Dict[str, Any]:
        credential_id = assertion_response.get("id") or assertion_response.get("rawId")
        if not isinstance(credential_id, str) or not credential_id:
            raise InvalidRequest("assertionResponse.id is required")

        users = await self.identity.find_users_by_email(email)
        user_ids = {u.id for u in users}

        credential = await self.credentials.get_by_credential_id(credential_id)
        if credential is None or credential.user_id not in user_ids:
            self._audit("AUTHENTICATE", "FAILURE", resource_id=credential_id, details={"reason": "unknown_credential"})
            raise CredentialNotFound()

        challenge = await self.challenges.load_live(credential.user_id, AUTHENTICATION)
        if self.verifier.answers_other_challenge(challenge.challenge, assertion_response):
            raise ChallengeNotFound()

        try:
            verified = self.verifier.verify_authentication(
                challenge=challenge.challenge,
                credential_id=credential.credential_id,
                public_key=credential.public_key,
                stored_sign_count=credential.sign_count,
                response=assertion_response,
            )
        except GatewayError:
            self._audit("AUTHENTICATE", "FAILURE", user_id=credential.user_id, resource_id=credential_id)
            raise

        await self.challenges.consume(challenge)
        await self.credentials.advance_counter(credential, verified.new_sign_count, backed_up=verified.backed_up)
        await self.db.commit()

        self._audit("AUTHENTICATE", "SUCCESS", user_id=credential.user_id, resource_id=credential_id)
        return await self.session_issuer.issue(credential.user_id)

    # ============ Management ============

    async def list_passkeys(self, user: IdentityUser) -> List[PasskeySummary]:
        credentials = await self.credentials.list_for_user(user.id)
        return [PasskeySummary.from_credential(c) for c in credentials]

    async def rename_passkey(self, user: IdentityUser, passkey_id: str, friendly_name: str) -> RenamedPasskey:
        name = clean_friendly_name(friendly_name)
        if not name:
            raise InvalidRequest("Friendly name must not be empty")

        credential = await self.credentials.rename(user.id, passkey_id, name)
        if credential is None:
            raise PasskeyNotFound()
        await self.db.commit()

        logger.info("Passkey renamed", user_id=user.id, passkey_id=passkey_id)
        return RenamedPasskey(id=str(credential.id), friendly_name=credential.friendly_name)

    async def delete_passkey(self, user: IdentityUser, passkey_id: str) -> None:
        deleted = await self.credentials.delete(user.id, passkey_id)
        if not deleted:
            raise PasskeyNotFound()
        await self.db.commit()

        self._audit("DELETE", "SUCCESS", user_id=user.id, resource_id=passkey_id)
