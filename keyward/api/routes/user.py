"""
Account Security Endpoints.

TOTP enrollment, registered WebAuthn keys, recovery code management and
password change for the signed-in user.
"""
import base64
import binascii
import logging
from typing import List, Tuple

from fastapi import APIRouter, Depends, status

from ..models import (
    TOTPSetupResponse,
    TOTPRegisterRequest,
    RecoveryCodeResponse,
    WebAuthnCredentialResponse,
    PasswordChangeRequest,
    MessageResponse,
    ErrorResponse,
)
from ..deps import get_auth_service, get_current_session
from ...auth.models import Session, User, WebAuthnCredential
from ...auth.service import AuthService
from ...auth.totp import (
    encode_totp_key,
    generate_qr_code_base64,
    generate_totp_key,
    get_totp_provisioning_uri,
)
from ...errors import ValidationError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/user", tags=["Account"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input or code"},
    401: {"model": ErrorResponse, "description": "Not authorized"},
    429: {"model": ErrorResponse, "description": "Too many attempts"},
}


@router.get("/totp/setup", response_model=TOTPSetupResponse, responses=ERROR_RESPONSES)
async def totp_setup(
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    """
    Generate a fresh TOTP key.

    Nothing is stored until the key is posted back to /user/totp together
    with a code the authenticator app generated from it.
    """
    session, user = current
    service.require_sensitive_access(session, user)

    key = generate_totp_key()
    uri = get_totp_provisioning_uri(key, user.email)
    return TOTPSetupResponse(
        encoded_key=encode_totp_key(key),
        provisioning_uri=uri,
        qr_code_base64=generate_qr_code_base64(uri),
    )


@router.post("/totp", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def register_totp(
    request: TOTPRegisterRequest,
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    """
    Install the TOTP key. Every other session of the user is signed out.
    """
    session, user = current
    service.register_totp(session, user, request.encoded_key, request.code)
    return MessageResponse(message="TOTP enabled")


@router.delete("/totp", status_code=status.HTTP_204_NO_CONTENT, responses=ERROR_RESPONSES)
async def delete_totp(
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    session, user = current
    service.delete_totp(session, user)
    return None


@router.get("/recovery-code", response_model=RecoveryCodeResponse, responses=ERROR_RESPONSES)
async def get_recovery_code(
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    session, user = current
    return RecoveryCodeResponse(recovery_code=service.get_recovery_code(session, user))


@router.post("/recovery-code/reset", response_model=RecoveryCodeResponse, responses=ERROR_RESPONSES)
async def regenerate_recovery_code(
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    """Replace the recovery code. The previous one stops working immediately."""
    session, user = current
    return RecoveryCodeResponse(recovery_code=service.regenerate_recovery_code(session, user))


@router.post("/password", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def change_password(
    request: PasswordChangeRequest,
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    """
    Change password.

    Requires current password verification. All other sessions are
    invalidated; this one stays signed in.
    """
    session, user = current
    service.change_password(session, user, request.current_password, request.new_password)
    return MessageResponse(message="Password changed")


# ============================================
# Passkeys and Security Keys
# ============================================

def _encode_credential_id(credential_id: bytes) -> str:
    return base64.urlsafe_b64encode(credential_id).decode("ascii").rstrip("=")


def _decode_credential_id(encoded: str) -> bytes:
    try:
        return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
    except (binascii.Error, ValueError):
        raise ValidationError("Invalid credential id", code="malformed_input")


def _credential_response(credential: WebAuthnCredential) -> WebAuthnCredentialResponse:
    return WebAuthnCredentialResponse(
        credential_id=_encode_credential_id(credential.id),
        name=credential.name,
        algorithm_id=credential.algorithm_id,
    )


@router.get("/passkeys", response_model=List[WebAuthnCredentialResponse], responses=ERROR_RESPONSES)
async def list_passkeys(
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    session, user = current
    return [_credential_response(c) for c in service.list_passkeys(session, user)]


@router.delete("/passkeys/{credential_id}", status_code=status.HTTP_204_NO_CONTENT, responses=ERROR_RESPONSES)
async def delete_passkey(
    credential_id: str,
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    session, user = current
    service.delete_passkey(session, user, _decode_credential_id(credential_id))
    return None


@router.get("/security-keys", response_model=List[WebAuthnCredentialResponse], responses=ERROR_RESPONSES)
async def list_security_keys(
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    session, user = current
    return [_credential_response(c) for c in service.list_security_keys(session, user)]


@router.delete("/security-keys/{credential_id}", status_code=status.HTTP_204_NO_CONTENT, responses=ERROR_RESPONSES)
async def delete_security_key(
    credential_id: str,
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    """
    Remove a security key. The account keeps any other second factor it has.
    """
    session, user = current
    service.delete_security_key(session, user, _decode_credential_id(credential_id))
    return None
