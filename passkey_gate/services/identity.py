"""
Identity/session backend.

The gateway never owns accounts or sessions. It asks a GoTrue-compatible
auth server to validate bearer tokens, look accounts up by email and mint
sessions for accounts that passed a passkey ceremony. The implementation is
chosen once at startup by ``build_identity_backend``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from jose import JWTError, jwt
import structlog

from passkey_gate.core.errors import IdentityBackendUnavailable, NotAuthenticated

logger = structlog.get_logger()


@dataclass
class IdentityUser:
    id: str
    email: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "IdentityUser":
        return cls(id=str(payload["id"]), email=payload.get("email"), raw=payload)


class IdentityBackend(ABC):
    @abstractmethod
    async def get_user_for_session(self, token: str) -> IdentityUser:
        """Resolve a bearer session to its account, or raise ``NotAuthenticated``."""

    @abstractmethod
    async def find_users_by_email(self, email: str) -> List[IdentityUser]:
        """Every account whose email equals ``email`` (case-insensitive)."""

    @abstractmethod
    async def mint_session(self, user_id: str) -> Dict[str, Any]:
        """Create a session for ``user_id`` and return it as issued by the backend."""

    async def close(self):
        pass


class UnconfiguredIdentityBackend(IdentityBackend):
    """Used when the auth server is not configured. Every call fails closed."""

    def _fail(self):
        raise IdentityBackendUnavailable(detail="IDENTITY_URL and IDENTITY_SERVICE_KEY must be set")

    async def get_user_for_session(self, token: str) -> IdentityUser:
        self._fail()

    async def find_users_by_email(self, email: str) -> List[IdentityUser]:
        self._fail()

    async def mint_session(self, user_id: str) -> Dict[str, Any]:
        self._fail()


class GoTrueIdentityBackend(IdentityBackend):
    def __init__(
        self,
        base_url: str,
        service_key: str,
        client: Optional[httpx.AsyncClient] = None,
        jwt_secret: Optional[str] = None,
        jwt_audience: Optional[str] = "authenticated",
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.jwt_secret = jwt_secret
        self.jwt_audience = jwt_audience
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def admin_headers(self) -> Dict[str, str]:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
        }

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            logger.error("Identity backend request failed", method=method, path=path, error=str(e))
            raise IdentityBackendUnavailable(detail=str(e)) from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("error_description") or data.get("msg") or data.get("error") or f"HTTP {response.status_code}")
        return f"HTTP {response.status_code}"

    def _decode_locally(self, token: str) -> IdentityUser:
        try:
            options = {"verify_aud": self.jwt_audience is not None}
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=["HS256"],
                audience=self.jwt_audience,
                options=options,
            )
        except JWTError as e:
            logger.warning("Session token rejected", error=str(e))
            raise NotAuthenticated() from e

        subject = payload.get("sub")
        if not subject:
            raise NotAuthenticated()
        return IdentityUser(id=str(subject), email=payload.get("email"), raw=payload)

    async def get_user_for_session(self, token: str) -> IdentityUser:
        if self.jwt_secret:
            return self._decode_locally(token)

        response = await self._request(
            "GET",
            "/auth/v1/user",
            headers={"apikey": self.service_key, "Authorization": f"Bearer {token}"},
        )
        if response.status_code in (401, 403):
            raise NotAuthenticated()
        if response.is_error:
            raise IdentityBackendUnavailable(detail=self._error_detail(response))

        data = response.json()
        if not isinstance(data, dict) or not data.get("id"):
            raise NotAuthenticated()
        return IdentityUser.from_payload(data)

    async def find_users_by_email(self, email: str) -> List[IdentityUser]:
        response = await self._request(
            "GET",
            "/auth/v1/admin/users",
            params={"email": email},
            headers=self.admin_headers,
        )
        if response.is_error:
            raise IdentityBackendUnavailable(detail=self._error_detail(response))

        data = response.json()
        users = data.get("users") if isinstance(data, dict) else None
        if not isinstance(users, list):
            return []

        # The admin listing may filter loosely; keep exact matches only
        wanted = email.strip().lower()
        return [
            IdentityUser.from_payload(user)
            for user in users
            if isinstance(user, dict) and user.get("id") and (user.get("email") or "").lower() == wanted
        ]

    async def mint_session(self, user_id: str) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            f"/auth/v1/admin/users/{user_id}/tokens",
            headers=self.admin_headers,
        )
        if response.is_error:
            raise IdentityBackendUnavailable(detail=self._error_detail(response))

        try:
            data = response.json()
        except ValueError as e:
            raise IdentityBackendUnavailable(detail="Session response is not JSON") from e
        if not isinstance(data, dict):
            raise IdentityBackendUnavailable(detail="Session response is not an object")
        return data

    async def close(self):
        if self._owns_client:
            await self.client.aclose()


def build_identity_backend(settings, client: Optional[httpx.AsyncClient] = None) -> IdentityBackend:
    if not settings.IDENTITY_URL or not settings.IDENTITY_SERVICE_KEY:
        logger.warning("Identity backend not configured, passkey ceremonies will fail closed")
        return UnconfiguredIdentityBackend()
    return GoTrueIdentityBackend(
        base_url=settings.IDENTITY_URL,
        service_key=settings.IDENTITY_SERVICE_KEY,
        client=client,
        jwt_secret=settings.IDENTITY_JWT_SECRET,
        jwt_audience=settings.IDENTITY_JWT_AUDIENCE or None,
        timeout=settings.IDENTITY_TIMEOUT_SECONDS,
    )


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """``Bearer <token>``, or a bare token."""
    if not authorization:
        return None
    parts = authorization.strip().split(None, 1)
    if not parts:
        return None
    if parts[0].lower() == "bearer":
        return parts[1].strip() if len(parts) > 1 else None
    return parts[0] if len(parts) == 1 else None
