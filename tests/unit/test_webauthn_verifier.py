import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from fido2 import cbor

from passkey_gate.core.errors import VerificationFailed
from passkey_gate.services.challenge_store import generate_challenge
from passkey_gate.services.webauthn import WebAuthnVerifier, device_type_from_flags
from tests.authenticator import SoftwareAuthenticator

ORIGIN = "https://app.example.com"
RP_ID = "app.example.com"


@pytest.fixture
def verifier():
    return WebAuthnVerifier(rp_id=RP_ID, rp_name="Payments Maps", expected_origin=ORIGIN)


def register(verifier, authenticator):
    challenge = generate_challenge()
    response = authenticator.create(challenge)
    return verifier.verify_registration(challenge, response)


class TestOptions:
    def test_registration_options(self, verifier):
        options = verifier.registration_options("abc", "user-1", "user@example.com", ["cred-1"])

        assert options["challenge"] == "abc"
        assert options["rp"] == {"id": RP_ID, "name": "Payments Maps"}
        assert options["user"]["name"] == "user@example.com"
        assert [p["alg"] for p in options["pubKeyCredParams"]] == [-7, -257]
        assert options["attestation"] == "none"
        assert options["excludeCredentials"] == [{"type": "public-key", "id": "cred-1"}]
        assert options["authenticatorSelection"]["userVerification"] == "preferred"

    def test_authentication_options(self, verifier):
        options = verifier.authentication_options("abc", ["cred-1", "cred-2"])

        assert options["rpId"] == RP_ID
        assert len(options["allowCredentials"]) == 2


class TestRegistration:
    def test_valid_attestation(self, verifier, authenticator):
        verified = register(verifier, authenticator)

        assert verified.credential_id in authenticator.passkeys
        assert verified.sign_count == 0
        assert verified.device_type == "singleDevice"
        assert verified.backed_up is False
        assert cbor.decode(verified.public_key)[3] == -7

    def test_synced_passkey_flags(self, verifier):
        authenticator = SoftwareAuthenticator(RP_ID, ORIGIN, backup_eligible=True, backed_up=True)
        verified = register(verifier, authenticator)

        assert verified.device_type == "multiDevice"
        assert verified.backed_up is True

    def test_wrong_challenge_rejected(self, verifier, authenticator):
        response = authenticator.create(generate_challenge())
        with pytest.raises(VerificationFailed):
            verifier.verify_registration(generate_challenge(), response)

    def test_wrong_origin_rejected(self, verifier, authenticator):
        challenge = generate_challenge()
        response = authenticator.create(challenge, origin="https://evil.example.com")
        with pytest.raises(VerificationFailed):
            verifier.verify_registration(challenge, response)

    def test_wrong_rp_id_rejected(self, verifier, authenticator):
        challenge = generate_challenge()
        response = authenticator.create(challenge, rp_id="evil.example.com")
        with pytest.raises(VerificationFailed):
            verifier.verify_registration(challenge, response)

    def test_user_verification_required(self, verifier, authenticator):
        challenge = generate_challenge()
        response = authenticator.create(challenge, user_verified=False)
        with pytest.raises(VerificationFailed):
            verifier.verify_registration(challenge, response)

    def test_malformed_response_rejected(self, verifier):
        with pytest.raises(VerificationFailed) as exc_info:
            verifier.verify_registration(generate_challenge(), {"id": "x", "response": {}})
        assert exc_info.value.message == "Passkey verification failed"


class TestAuthentication:
    def test_valid_assertion(self, verifier, authenticator):
        registered = register(verifier, authenticator)
        challenge = generate_challenge()
        response = authenticator.get(registered.credential_id, challenge)

        verified = verifier.verify_authentication(
            challenge, registered.credential_id, registered.public_key, 0, response
        )

        assert verified.new_sign_count == 1

    def test_non_increasing_counter_rejected(self, verifier, authenticator):
        """A counter at or below the stored value means a replayed or cloned authenticator"""
        registered = register(verifier, authenticator)
        challenge = generate_challenge()
        response = authenticator.get(registered.credential_id, challenge, sign_count=4)

        with pytest.raises(VerificationFailed) as exc_info:
            verifier.verify_authentication(
                challenge, registered.credential_id, registered.public_key, 4, response
            )
        assert exc_info.value.message == "Passkey verification failed"

    def test_higher_counter_accepted(self, verifier, authenticator):
        registered = register(verifier, authenticator)
        challenge = generate_challenge()
        response = authenticator.get(registered.credential_id, challenge, sign_count=5)

        verified = verifier.verify_authentication(
            challenge, registered.credential_id, registered.public_key, 4, response
        )
        assert verified.new_sign_count == 5

    def test_bad_signature_rejected(self, verifier, authenticator):
        registered = register(verifier, authenticator)
        challenge = generate_challenge()
        response = authenticator.get(
            registered.credential_id,
            challenge,
            private_key=ec.generate_private_key(ec.SECP256R1()),
        )

        with pytest.raises(VerificationFailed) as exc_info:
            verifier.verify_authentication(
                challenge, registered.credential_id, registered.public_key, 0, response
            )
        # Same client message as a counter failure
        assert exc_info.value.message == "Passkey verification failed"

    def test_wrong_challenge_rejected(self, verifier, authenticator):
        registered = register(verifier, authenticator)
        response = authenticator.get(registered.credential_id, generate_challenge())

        with pytest.raises(VerificationFailed):
            verifier.verify_authentication(
                generate_challenge(), registered.credential_id, registered.public_key, 0, response
            )


def test_device_type_from_flags():
    assert device_type_from_flags(0x45) == "singleDevice"
    assert device_type_from_flags(0x45 | 0x08) == "multiDevice"
