from typing import AsyncGenerator, Dict

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from passkey_gate.core.config import Settings
from passkey_gate.db.session import Database
from passkey_gate.main import create_app
from passkey_gate.services.identity import IdentityUser
from passkey_gate.services.webauthn import WebAuthnVerifier
from tests.authenticator import SoftwareAuthenticator
from tests.fakes import CSRF_TOKEN, ORIGIN, RP_ID, FakeIdentityBackend, make_settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def identity() -> FakeIdentityBackend:
    return FakeIdentityBackend()


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    database = Database(settings.DATABASE_URL)
    await database.init()
    yield database
    await database.close()


@pytest.fixture
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    """Fixture to get a test database session."""
    async with database.sessionmaker() as session:
        yield session


@pytest.fixture
def verifier(settings) -> WebAuthnVerifier:
    return WebAuthnVerifier.from_settings(settings)


@pytest.fixture
def authenticator() -> SoftwareAuthenticator:
    return SoftwareAuthenticator(rp_id=RP_ID, origin=ORIGIN)


@pytest.fixture
async def app(settings, identity):
    app = create_app(settings, identity=identity)
    await app.state.database.init()
    yield app
    await app.state.database.close()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Browser-like client: same-origin requests carrying the CSRF cookie and header."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url=ORIGIN,
        headers={"Origin": ORIGIN, "X-CSRF-Token": CSRF_TOKEN},
        cookies={"payments_maps_csrf": CSRF_TOKEN},
    ) as client:
        yield client


@pytest.fixture
def user(identity) -> IdentityUser:
    return identity.add_user("user@example.com", token="session-user")


@pytest.fixture
def auth_headers(user) -> Dict[str, str]:
    return {"Authorization": "Bearer session-user"}
