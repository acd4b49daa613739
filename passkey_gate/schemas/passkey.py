from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


# ============ Requests ============

class RegistrationVerifyRequest(BaseModel):
    attestationResponse: Dict[str, Any]
    friendlyName: Optional[str] = None


class AuthenticationOptionsRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=320)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("email is required")
        return v


class AuthenticationVerifyRequest(AuthenticationOptionsRequest):
    assertionResponse: Dict[str, Any]


class RenamePasskeyRequest(BaseModel):
    # Older browser builds send ``passkeyId``
    id: str = Field(..., min_length=1, validation_alias=AliasChoices("id", "passkeyId"))
    friendlyName: str


class DeletePasskeyRequest(BaseModel):
    id: str = Field(..., min_length=1)


# ============ Responses ============

class PasskeySummary(BaseModel):
    id: str
    friendly_name: Optional[str] = None
    device_type: Optional[str] = None
    backed_up: bool = False
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_credential(cls, credential) -> "PasskeySummary":
        return cls(
            id=str(credential.id),
            friendly_name=credential.friendly_name,
            device_type=credential.device_type,
            backed_up=bool(credential.backed_up),
            created_at=credential.created_at,
            last_used_at=credential.last_used_at,
        )


class RenamedPasskey(BaseModel):
    id: str
    friendly_name: str


class PasskeyListResponse(BaseModel):
    passkeys: List[PasskeySummary]


class RegistrationVerifyResponse(BaseModel):
    verified: bool
    passkey: PasskeySummary


class AuthenticationVerifyResponse(BaseModel):
    verified: bool
    session: Dict[str, Any]


class RenamePasskeyResponse(BaseModel):
    success: bool
    passkey: RenamedPasskey


class DeletePasskeyResponse(BaseModel):
    success: bool
