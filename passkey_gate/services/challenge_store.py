"""
Single-use ceremony challenges.

At most one live challenge exists per ``(user_id, ceremony)``; a new Start
replaces the previous row in place. Finish consumes a challenge with a
compare-and-delete so only one of several concurrent Finish calls wins.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional
import os
import uuid

from fido2.utils import websafe_encode
from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from passkey_gate.core.clock import utcnow
from passkey_gate.core.errors import ChallengeExpired, ChallengeNotFound
from passkey_gate.models.passkey import CEREMONIES, PasskeyChallenge

logger = structlog.get_logger()

CHALLENGE_BYTES = 32

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def generate_challenge(num_bytes: int = CHALLENGE_BYTES) -> str:
    """Fresh random challenge, base64url without padding."""
    return websafe_encode(os.urandom(num_bytes))


class ChallengeStore:
    def __init__(self, db: AsyncSession, ttl_seconds: int = 300):
        self.db = db
        self.ttl = timedelta(seconds=ttl_seconds)

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _UPSERT_DIALECTS[dialect]
        except KeyError:
            raise RuntimeError(f"Unsupported database dialect for challenges: {dialect}")

    async def issue(
        self,
        user_ids: Iterable[str],
        ceremony: str,
        challenge: str,
        now: Optional[datetime] = None,
    ) -> datetime:
        """
        Store ``challenge`` as the live ``ceremony`` challenge of every user.

        Any previous challenge for the same user and ceremony is replaced. The
        row id is regenerated so a Finish holding the old row cannot consume
        the new one. Returns the expiry time.
        """
        if ceremony not in CEREMONIES:
            raise ValueError(f"Unknown ceremony: {ceremony}")

        now = now or utcnow()
        expires_at = now + self.ttl
        insert = self._insert()

        for user_id in dict.fromkeys(user_ids):
            stmt = insert(PasskeyChallenge).values(
                id=uuid.uuid4(),
                user_id=user_id,
                ceremony=ceremony,
                challenge=challenge,
                created_at=now,
                expires_at=expires_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[PasskeyChallenge.user_id, PasskeyChallenge.ceremony],
                set_={
                    "id": stmt.excluded.id,
                    "challenge": stmt.excluded.challenge,
                    "created_at": stmt.excluded.created_at,
                    "expires_at": stmt.excluded.expires_at,
                },
            )
            await self.db.execute(stmt)

        logger.debug("Challenge issued", ceremony=ceremony, expires_at=expires_at.isoformat())
        return expires_at

    async def get(self, user_id: str, ceremony: str) -> Optional[PasskeyChallenge]:
        result = await self.db.execute(
            select(PasskeyChallenge).where(
                PasskeyChallenge.user_id == user_id,
                PasskeyChallenge.ceremony == ceremony,
            )
        )
        return result.scalar_one_or_none()

    async def load_live(self, user_id: str, ceremony: str, now: Optional[datetime] = None) -> PasskeyChallenge:
        """The user's live challenge, or ``ChallengeNotFound``/``ChallengeExpired``."""
        challenge = await self.get(user_id, ceremony)
        if challenge is None:
            raise ChallengeNotFound()

        now = now or utcnow()
        if challenge.expires_at <= now:
            raise ChallengeExpired()
        return challenge

    async def consume(self, challenge: PasskeyChallenge) -> None:
        """
        Delete ``challenge`` only if it is still the stored one.

        Raises ``ChallengeNotFound`` when another request consumed or replaced
        it first.
        """
        result = await self.db.execute(
            delete(PasskeyChallenge).where(
                PasskeyChallenge.id == challenge.id,
                PasskeyChallenge.challenge == challenge.challenge,
            )
        )
        if result.rowcount != 1:
            logger.warning("Challenge consumed concurrently", user_id=challenge.user_id, ceremony=challenge.ceremony)
            raise ChallengeNotFound()

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        result = await self.db.execute(
            delete(PasskeyChallenge).where(PasskeyChallenge.expires_at <= (now or utcnow()))
        )
        return result.rowcount or 0
