"""
WebAuthn verification on top of ``fido2.server.Fido2Server``.

Options are built here from stored challenges; attestation and assertion
checking (client data, RP id hash, flags, COSE signature) is left to fido2.
Every verification failure surfaces as the same ``VerificationFailed``; the
underlying reason is only logged.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from fido2 import cbor
from fido2.server import Fido2Server
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    Aaguid,
    AttestedCredentialData,
    AuthenticationResponse,
    CollectedClientData,
    PublicKeyCredentialRpEntity,
    RegistrationResponse,
    UserVerificationRequirement,
)
import structlog

from passkey_gate.core.errors import VerificationFailed

logger = structlog.get_logger()

# ES256 and RS256
SUPPORTED_ALGORITHMS = (-7, -257)

# Authenticator data flag bits
FLAG_BACKUP_ELIGIBLE = 0x08
FLAG_BACKED_UP = 0x10

_PARSE_ERRORS = (ValueError, KeyError, TypeError)


@dataclass
class VerifiedRegistration:
    credential_id: str
    public_key: bytes
    sign_count: int
    aaguid: Optional[str]
    device_type: str
    backed_up: bool


@dataclass
class VerifiedAuthentication:
    credential_id: str
    new_sign_count: int
    backed_up: bool


def device_type_from_flags(flags: int) -> str:
    return "multiDevice" if flags & FLAG_BACKUP_ELIGIBLE else "singleDevice"


class WebAuthnVerifier:
    def __init__(self, rp_id: str, rp_name: str, expected_origin: str, timeout_ms: int = 60000):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.expected_origin = expected_origin
        self.timeout_ms = timeout_ms
        self.server = Fido2Server(
            PublicKeyCredentialRpEntity(name=rp_name, id=rp_id),
            verify_origin=self._verify_origin,
        )

    @classmethod
    def from_settings(cls, settings) -> "WebAuthnVerifier":
        return cls(
            rp_id=settings.rp_id,
            rp_name=settings.PASSKEY_RP_NAME,
            expected_origin=settings.expected_origin,
            timeout_ms=settings.CHALLENGE_TTL_SECONDS * 1000,
        )

    def _verify_origin(self, origin: str) -> bool:
        return origin == self.expected_origin

    @staticmethod
    def _state(challenge: str) -> Dict[str, Any]:
        return {
            "challenge": challenge,
            "user_verification": UserVerificationRequirement.REQUIRED,
        }

    # ============ Options ============

    def registration_options(
        self,
        challenge: str,
        user_id: str,
        user_name: str,
        exclude_credential_ids: List[str],
    ) -> Dict[str, Any]:
        return {
            "challenge": challenge,
            "rp": {"id": self.rp_id, "name": self.rp_name},
            "user": {
                "id": websafe_encode(user_id.encode("utf-8")),
                "name": user_name,
                "displayName": user_name,
            },
            "pubKeyCredParams": [{"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGORITHMS],
            "timeout": self.timeout_ms,
            "attestation": "none",
            "excludeCredentials": [
                {"type": "public-key", "id": credential_id} for credential_id in exclude_credential_ids
            ],
            "authenticatorSelection": {
                "residentKey": "preferred",
                "userVerification": "preferred",
            },
        }

    def authentication_options(self, challenge: str, allow_credential_ids: List[str]) -> Dict[str, Any]:
        return {
            "challenge": challenge,
            "timeout": self.timeout_ms,
            "rpId": self.rp_id,
            "allowCredentials": [
                {"type": "public-key", "id": credential_id} for credential_id in allow_credential_ids
            ],
            "userVerification": "preferred",
        }

    # ============ Verification ============

    @staticmethod
    def answers_other_challenge(challenge: str, response: Mapping[str, Any]) -> bool:
        """
        True when the client data in ``response`` parses and names a challenge
        other than ``challenge``, i.e. the client answered a superseded Start.

        Unparseable responses return False and are left to verification.
        """
        try:
            client_data = CollectedClientData(websafe_decode(response["response"]["clientDataJSON"]))
            expected = websafe_decode(challenge)
        except _PARSE_ERRORS:
            return False
        return client_data.challenge != expected

    def verify_registration(self, challenge: str, response: Mapping[str, Any]) -> VerifiedRegistration:
        """
        Check an attestation response against the stored challenge.

        User presence and user verification are both required.
        """
        try:
            parsed = RegistrationResponse.from_dict(response)
            auth_data = self.server.register_complete(self._state(challenge), parsed)
        except _PARSE_ERRORS as e:
            logger.warning("Registration verification failed", reason=str(e))
            raise VerificationFailed(detail=str(e)) from e

        credential_data = auth_data.credential_data
        if credential_data is None:
            logger.warning("Registration verification failed", reason="no attested credential data")
            raise VerificationFailed()

        aaguid = str(credential_data.aaguid) if credential_data.aaguid else None
        flags = int(auth_data.flags)
        return VerifiedRegistration(
            credential_id=websafe_encode(credential_data.credential_id),
            public_key=cbor.encode(credential_data.public_key),
            sign_count=auth_data.counter,
            aaguid=aaguid,
            device_type=device_type_from_flags(flags),
            backed_up=bool(flags & FLAG_BACKED_UP),
        )

    def verify_authentication(
        self,
        challenge: str,
        credential_id: str,
        public_key: bytes,
        stored_sign_count: int,
        response: Mapping[str, Any],
    ) -> VerifiedAuthentication:
        """
        Check an assertion with the stored public key.

        A counter that does not exceed ``stored_sign_count`` means a cloned or
        replayed authenticator and fails like a bad signature.
        """
        try:
            parsed = AuthenticationResponse.from_dict(response)
            stored = AttestedCredentialData.create(
                Aaguid.NONE,
                websafe_decode(credential_id),
                cbor.decode(public_key),
            )
            self.server.authenticate_complete(self._state(challenge), [stored], parsed)
        except _PARSE_ERRORS as e:
            logger.warning("Authentication verification failed", credential_id=credential_id, reason=str(e))
            raise VerificationFailed(detail=str(e)) from e

        auth_data = parsed.response.authenticator_data
        if auth_data.counter <= stored_sign_count:
            logger.warning(
                "Signature counter replay detected",
                credential_id=credential_id,
                stored_sign_count=stored_sign_count,
                received_sign_count=auth_data.counter,
            )
            raise VerificationFailed(detail="Signature counter did not increase")

        return VerifiedAuthentication(
            credential_id=credential_id,
            new_sign_count=auth_data.counter,
            backed_up=bool(int(auth_data.flags) & FLAG_BACKED_UP),
        )
