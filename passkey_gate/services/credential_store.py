from datetime import datetime
from typing import Iterable, List, Optional
import uuid

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from passkey_gate.core.clock import utcnow
from passkey_gate.core.errors import CredentialOwnershipConflict, VerificationFailed
from passkey_gate.models.passkey import PasskeyCredential

logger = structlog.get_logger()

FRIENDLY_NAME_MAX_LENGTH = 120


def clean_friendly_name(value: Optional[str]) -> str:
    """Trimmed and truncated name, or an empty string."""
    if not isinstance(value, str):
        return ""
    return value.strip()[:FRIENDLY_NAME_MAX_LENGTH]


def default_friendly_name(now: Optional[datetime] = None) -> str:
    return f"Passkey {(now or utcnow()).strftime('%Y-%m-%d %H:%M')}"


def _parse_row_id(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class CredentialStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_for_user(self, user_id: str) -> List[PasskeyCredential]:
        result = await self.db.execute(
            select(PasskeyCredential)
            .where(PasskeyCredential.user_id == user_id)
            .order_by(PasskeyCredential.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_users(self, user_ids: Iterable[str]) -> List[PasskeyCredential]:
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return []
        result = await self.db.execute(
            select(PasskeyCredential)
            .where(PasskeyCredential.user_id.in_(user_ids))
            .order_by(PasskeyCredential.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_by_credential_id(self, credential_id: str) -> Optional[PasskeyCredential]:
        result = await self.db.execute(
            select(PasskeyCredential).where(PasskeyCredential.credential_id == credential_id)
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, user_id: str, passkey_id: str) -> Optional[PasskeyCredential]:
        row_id = _parse_row_id(passkey_id)
        if row_id is None:
            return None
        result = await self.db.execute(
            select(PasskeyCredential).where(
                PasskeyCredential.id == row_id,
                PasskeyCredential.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        user_id: str,
        user_email: Optional[str],
        credential_id: str,
        public_key: bytes,
        sign_count: int,
        aaguid: Optional[str],
        device_type: str,
        backed_up: bool,
        friendly_name: Optional[str],
    ) -> PasskeyCredential:
        """
        Insert the credential, or refresh it when the same owner registers it again.

        A credential id already owned by another account is rejected.
        """
        now = utcnow()
        name = clean_friendly_name(friendly_name) or default_friendly_name(now)
        credential = await self.get_by_credential_id(credential_id)

        if credential is not None and credential.user_id != user_id:
            logger.warning(
                "Credential id registered to another account",
                user_id=user_id,
                credential_id=credential_id,
            )
            raise CredentialOwnershipConflict()

        if credential is None:
            credential = PasskeyCredential(
                user_id=user_id,
                credential_id=credential_id,
                created_at=now,
            )
            self.db.add(credential)
        else:
            # The signature counter never moves backwards
            sign_count = max(credential.sign_count or 0, sign_count)

        credential.user_email = user_email
        credential.public_key = public_key
        credential.sign_count = sign_count
        credential.aaguid = aaguid
        credential.device_type = device_type
        credential.backed_up = backed_up
        credential.friendly_name = name
        credential.updated_at = now

        await self.db.flush()
        return credential

    async def advance_counter(
        self,
        credential: PasskeyCredential,
        new_sign_count: int,
        backed_up: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Store ``new_sign_count`` only if it is above the stored counter.

        Raises ``VerificationFailed`` when a concurrent authentication already
        moved the counter to or past ``new_sign_count``.
        """
        now = now or utcnow()
        values = {"sign_count": new_sign_count, "last_used_at": now, "updated_at": now}
        if backed_up is not None:
            values["backed_up"] = backed_up

        result = await self.db.execute(
            update(PasskeyCredential)
            .where(
                PasskeyCredential.id == credential.id,
                PasskeyCredential.sign_count < new_sign_count,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "Signature counter did not advance",
                credential_id=credential.credential_id,
                new_sign_count=new_sign_count,
            )
            raise VerificationFailed()

        credential.sign_count = new_sign_count
        credential.last_used_at = now

    async def rename(self, user_id: str, passkey_id: str, friendly_name: str) -> Optional[PasskeyCredential]:
        credential = await self.get_for_user(user_id, passkey_id)
        if credential is None:
            return None
        credential.friendly_name = friendly_name
        credential.updated_at = utcnow()
        await self.db.flush()
        return credential

    async def delete(self, user_id: str, passkey_id: str) -> bool:
        row_id = _parse_row_id(passkey_id)
        if row_id is None:
            return False
        result = await self.db.execute(
            delete(PasskeyCredential).where(
                PasskeyCredential.id == row_id,
                PasskeyCredential.user_id == user_id,
            )
        )
        return result.rowcount == 1
