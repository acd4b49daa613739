import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    LargeBinary,
    String,
    UniqueConstraint,
    Uuid,
)

from passkey_gate.core.clock import utcnow
from passkey_gate.db.session import Base

REGISTRATION = "registration"
AUTHENTICATION = "authentication"
CEREMONIES = (REGISTRATION, AUTHENTICATION)


class PasskeyCredential(Base):
    __tablename__ = "passkey_credentials"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    user_email = Column(String(320))
    # base64url credential id, unique across all accounts
    credential_id = Column(String(1024), unique=True, nullable=False)
    # COSE_Key bytes as returned by the authenticator
    public_key = Column(LargeBinary, nullable=False)
    sign_count = Column(BigInteger, nullable=False, default=0)
    aaguid = Column(String(36))
    device_type = Column(String(16), nullable=False, default="singleDevice")
    backed_up = Column(Boolean, nullable=False, default=False)
    friendly_name = Column(String(120))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    last_used_at = Column(DateTime)


class PasskeyChallenge(Base):
    __tablename__ = "passkey_challenges"
    __table_args__ = (
        UniqueConstraint("user_id", "ceremony", name="uq_passkey_challenges_user_ceremony"),
        Index("ix_passkey_challenges_expires_at", "expires_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False)
    ceremony = Column(String(16), nullable=False)
    challenge = Column(String(128), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
