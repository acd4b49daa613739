from typing import Any, Dict

from fastapi import APIRouter, Depends, status
import structlog

from passkey_gate.api.dependencies import get_current_user, get_passkey_service, request_guard
from passkey_gate.schemas.passkey import (
    AuthenticationOptionsRequest,
    AuthenticationVerifyRequest,
    AuthenticationVerifyResponse,
    DeletePasskeyRequest,
    DeletePasskeyResponse,
    PasskeyListResponse,
    RegistrationVerifyRequest,
    RegistrationVerifyResponse,
    RenamePasskeyRequest,
    RenamePasskeyResponse,
)
from passkey_gate.services.identity import IdentityUser
from passkey_gate.services.passkey_service import PasskeyService

router = APIRouter()
logger = structlog.get_logger()

register_guard = request_guard("passkey-register", allow_no_origin=False)
auth_guard = request_guard("passkey-auth", allow_no_origin=False)
manage_guard = request_guard("passkey-manage", allow_no_origin=True)


@router.post(
    "/register/options",
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(register_guard)],
)
async def registration_options(
    *,
    current_user: IdentityUser = Depends(get_current_user),
    service: PasskeyService = Depends(get_passkey_service),
) -> Dict[str, Any]:
    """Begin passkey registration for the signed-in account."""
    return await service.begin_registration(current_user)


@router.post(
    "/register/verify",
    response_model=RegistrationVerifyResponse,
    dependencies=[Depends(register_guard)],
)
async def registration_verify(
    *,
    body: RegistrationVerifyRequest,
    current_user: IdentityUser = Depends(get_current_user),
    service: PasskeyService = Depends(get_passkey_service),
) -> Any:
    """Verify the attestation and store the new passkey."""
    passkey = await service.complete_registration(
        current_user,
        attestation_response=body.attestationResponse,
        friendly_name=body.friendlyName,
    )
    return RegistrationVerifyResponse(verified=True, passkey=passkey)


@router.post(
    "/auth/options",
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(auth_guard)],
)
async def authentication_options(
    *,
    body: AuthenticationOptionsRequest,
    service: PasskeyService = Depends(get_passkey_service),
) -> Dict[str, Any]:
    """Begin passwordless sign-in for an email address."""
    return await service.begin_authentication(body.email)


@router.post(
    "/auth/verify",
    response_model=AuthenticationVerifyResponse,
    dependencies=[Depends(auth_guard)],
)
async def authentication_verify(
    *,
    body: AuthenticationVerifyRequest,
    service: PasskeyService = Depends(get_passkey_service),
) -> Any:
    """Verify the assertion and return a new session."""
    session = await service.complete_authentication(body.email, body.assertionResponse)
    logger.info("User signed in with passkey")
    return AuthenticationVerifyResponse(verified=True, session=session)


@router.get(
    "/list",
    response_model=PasskeyListResponse,
    dependencies=[Depends(manage_guard)],
)
async def list_passkeys(
    current_user: IdentityUser = Depends(get_current_user),
    service: PasskeyService = Depends(get_passkey_service),
) -> Any:
    return PasskeyListResponse(passkeys=await service.list_passkeys(current_user))


@router.patch(
    "/rename",
    response_model=RenamePasskeyResponse,
    dependencies=[Depends(manage_guard)],
)
async def rename_passkey(
    *,
    body: RenamePasskeyRequest,
    current_user: IdentityUser = Depends(get_current_user),
    service: PasskeyService = Depends(get_passkey_service),
) -> Any:
    passkey = await service.rename_passkey(current_user, body.id, body.friendlyName)
    return RenamePasskeyResponse(success=True, passkey=passkey)


@router.delete(
    "/delete",
    response_model=DeletePasskeyResponse,
    dependencies=[Depends(manage_guard)],
)
async def delete_passkey(
    *,
    body: DeletePasskeyRequest,
    current_user: IdentityUser = Depends(get_current_user),
    service: PasskeyService = Depends(get_passkey_service),
) -> Any:
    await service.delete_passkey(current_user, body.id)
    return DeletePasskeyResponse(success=True)
