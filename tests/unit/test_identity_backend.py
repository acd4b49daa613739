import json

import httpx
import pytest
from jose import jwt

from passkey_gate.core.errors import (
    IdentityBackendUnavailable,
    NotAuthenticated,
    SessionIssuanceFailed,
)
from passkey_gate.services.identity import (
    GoTrueIdentityBackend,
    UnconfiguredIdentityBackend,
    build_identity_backend,
    extract_bearer_token,
)
from passkey_gate.services.session_issuer import SessionIssuer
from tests.fakes import FakeIdentityBackend, make_settings

BASE_URL = "https://auth.example.com"
SERVICE_KEY = "service-role-key"


def make_backend(handler, **kwargs) -> GoTrueIdentityBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoTrueIdentityBackend(BASE_URL, SERVICE_KEY, client=client, **kwargs)


class TestGoTrueBackend:
    async def test_get_user_for_session(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["authorization"] = request.headers["authorization"]
            return httpx.Response(200, json={"id": "user-1", "email": "user@example.com"})

        user = await make_backend(handler).get_user_for_session("session-token")

        assert user.id == "user-1"
        assert seen == {"path": "/auth/v1/user", "authorization": "Bearer session-token"}

    async def test_invalid_session(self):
        backend = make_backend(lambda request: httpx.Response(401, json={"msg": "invalid JWT"}))

        with pytest.raises(NotAuthenticated):
            await backend.get_user_for_session("expired")

    async def test_local_jwt_validation(self):
        def handler(request):
            raise AssertionError("no network call expected")

        backend = make_backend(handler, jwt_secret="secret", jwt_audience="authenticated")
        token = jwt.encode({"sub": "user-1", "email": "u@example.com", "aud": "authenticated"}, "secret", algorithm="HS256")

        user = await backend.get_user_for_session(token)

        assert user.id == "user-1"
        with pytest.raises(NotAuthenticated):
            await backend.get_user_for_session(jwt.encode({"sub": "user-1", "aud": "authenticated"}, "other", algorithm="HS256"))

    async def test_find_users_by_email_keeps_exact_matches(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["email"] = request.url.params["email"]
            seen["apikey"] = request.headers["apikey"]
            return httpx.Response(200, json={"users": [
                {"id": "user-1", "email": "User@Example.com"},
                {"id": "user-2", "email": "someone@example.com"},
                {"id": "user-3", "email": "user@example.com"},
            ]})

        users = await make_backend(handler).find_users_by_email("user@example.com")

        assert [u.id for u in users] == ["user-1", "user-3"]
        assert seen == {"email": "user@example.com", "apikey": SERVICE_KEY}

    async def test_find_users_backend_error(self):
        backend = make_backend(lambda request: httpx.Response(500, json={"error": "boom"}))

        with pytest.raises(IdentityBackendUnavailable) as exc_info:
            await backend.find_users_by_email("user@example.com")
        assert exc_info.value.detail == "boom"

    async def test_mint_session(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/auth/v1/admin/users/user-1/tokens"
            return httpx.Response(200, content=json.dumps({"access_token": "a", "refresh_token": "r"}))

        session = await make_backend(handler).mint_session("user-1")

        assert session["access_token"] == "a"

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(IdentityBackendUnavailable):
            await make_backend(handler).mint_session("user-1")


class TestBackendSelection:
    def test_unconfigured_backend_chosen_without_url(self, tmp_path):
        backend = build_identity_backend(make_settings(tmp_path))
        assert isinstance(backend, UnconfiguredIdentityBackend)

    def test_gotrue_backend_chosen_when_configured(self, tmp_path):
        settings = make_settings(tmp_path, IDENTITY_URL=BASE_URL + "/", IDENTITY_SERVICE_KEY=SERVICE_KEY)
        backend = build_identity_backend(settings)

        assert isinstance(backend, GoTrueIdentityBackend)
        assert backend.base_url == BASE_URL

    async def test_unconfigured_backend_fails_closed(self):
        backend = UnconfiguredIdentityBackend()

        with pytest.raises(IdentityBackendUnavailable):
            await backend.find_users_by_email("user@example.com")
        with pytest.raises(IdentityBackendUnavailable):
            await backend.get_user_for_session("token")


class TestSessionIssuer:
    async def test_issue(self):
        identity = FakeIdentityBackend()
        user = identity.add_user("user@example.com")

        session = await SessionIssuer(identity).issue(user.id)

        assert session["access_token"] == f"access-{user.id}"
        assert identity.minted == [user.id]

    async def test_backend_failure_becomes_session_issuance_failed(self):
        identity = FakeIdentityBackend()
        identity.fail_minting = True

        with pytest.raises(SessionIssuanceFailed) as exc_info:
            await SessionIssuer(identity).issue("user-1")
        assert exc_info.value.status_code == 502


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc", "abc"),
        ("bearer   abc ", "abc"),
        ("abc", "abc"),
        ("Bearer ", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected
