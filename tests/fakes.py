import uuid
from typing import Dict, List, Optional

from passkey_gate.core.config import Settings
from passkey_gate.core.errors import IdentityBackendUnavailable, NotAuthenticated
from passkey_gate.services.identity import IdentityBackend, IdentityUser

ORIGIN = "https://app.example.com"
RP_ID = "app.example.com"
CSRF_TOKEN = "c2f1b7e04a9d4e1f8a3b6c5d7e9f0a1b"


class FakeIdentityBackend(IdentityBackend):
    """In-memory accounts and sessions."""

    def __init__(self):
        self.users: Dict[str, IdentityUser] = {}
        self.sessions: Dict[str, str] = {}
        self.minted: List[str] = []
        self.fail_minting = False

    def add_user(self, email: str, token: Optional[str] = None) -> IdentityUser:
        user = IdentityUser(id=str(uuid.uuid4()), email=email)
        self.users[user.id] = user
        if token:
            self.sessions[token] = user.id
        return user

    async def get_user_for_session(self, token: str) -> IdentityUser:
        user_id = self.sessions.get(token)
        if user_id is None:
            raise NotAuthenticated()
        return self.users[user_id]

    async def find_users_by_email(self, email: str) -> List[IdentityUser]:
        return [u for u in self.users.values() if (u.email or "").lower() == email.lower()]

    async def mint_session(self, user_id: str) -> Dict:
        if self.fail_minting:
            raise IdentityBackendUnavailable(detail="token endpoint returned 500")
        self.minted.append(user_id)
        return {
            "access_token": f"access-{user_id}",
            "refresh_token": f"refresh-{user_id}",
            "token_type": "bearer",
            "user": {"id": user_id},
        }


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        ENVIRONMENT="development",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'passkeys.db'}",
        APP_ORIGIN=ORIGIN,
        PASSKEY_ORIGIN=ORIGIN,
        PASSKEY_RP_ID=RP_ID,
        ALLOWED_ORIGINS="",
        DEPLOYMENT_HOST=None,
        IDENTITY_URL=None,
        IDENTITY_SERVICE_KEY=None,
        METRICS_ENABLED=False,
        RATE_LIMIT_BACKEND="memory",
        LOG_LEVEL="WARNING",
        LOG_JSON=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)
