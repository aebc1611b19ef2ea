"""
Password Reset Endpoints.

The reset flow is carried by its own token in the X-Password-Reset-Token
header: email code first, then the second factor (if the account has one),
then the new password.
"""
import logging
from typing import Tuple

from fastapi import APIRouter, Depends, status

from ..models import (
    PasswordResetRequest,
    PasswordResetResponse,
    PasswordResetEmailRequest,
    PasswordResetGateResponse,
    PasswordResetCompleteRequest,
    TOTPCodeRequest,
    RecoveryCodeRequest,
    WebAuthnAssertion,
    MessageResponse,
    ErrorResponse,
)
from ..deps import get_auth_service, get_password_reset_session
from ...auth.models import PasswordResetSession, User
from ...auth.service import AuthService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/password-reset", tags=["Password Reset"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input or code"},
    401: {"model": ErrorResponse, "description": "Invalid reset token or step not allowed"},
    429: {"model": ErrorResponse, "description": "Too many attempts"},
}

ResetContext = Tuple[PasswordResetSession, User]


@router.post(
    "",
    response_model=PasswordResetResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def initiate_password_reset(
    request: PasswordResetRequest,
    service: AuthService = Depends(get_auth_service),
):
    """Send a reset code to the account email and return the reset token."""
    reset_session = service.initiate_password_reset(request.email)
    return PasswordResetResponse(reset_token=reset_session.id, expires_at=reset_session.expires_at)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT, responses=ERROR_RESPONSES)
async def cancel_password_reset(
    current: ResetContext = Depends(get_password_reset_session),
    service: AuthService = Depends(get_auth_service),
):
    """Abandon the reset flow. The reset token stops working."""
    reset_session, _ = current
    service.cancel_password_reset(reset_session)
    return None


@router.post("/verify-email", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def verify_email(
    request: PasswordResetEmailRequest,
    current: ResetContext = Depends(get_password_reset_session),
    service: AuthService = Depends(get_auth_service),
):
    reset_session, _ = current
    service.verify_password_reset_email(reset_session, request.code)
    return MessageResponse(message="Email verified")


@router.get("/2fa", response_model=PasswordResetGateResponse, responses=ERROR_RESPONSES)
async def two_factor_gate(
    current: ResetContext = Depends(get_password_reset_session),
    service: AuthService = Depends(get_auth_service),
):
    """
    Which second-factor step the reset flow needs next, if any.
    """
    reset_session, user = current
    decision = service.password_reset_gate(reset_session, user)
    return PasswordResetGateResponse(outcome=decision.outcome, modality=decision.modality)


@router.post("/2fa/totp", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def verify_totp(
    request: TOTPCodeRequest,
    current: ResetContext = Depends(get_password_reset_session),
    service: AuthService = Depends(get_auth_service),
):
    reset_session, user = current
    service.verify_password_reset_totp(reset_session, user, request.code)
    return MessageResponse(message="Two-factor verified")


@router.post("/2fa/passkey", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def verify_passkey(
    assertion: WebAuthnAssertion,
    current: ResetContext = Depends(get_password_reset_session),
    service: AuthService = Depends(get_auth_service),
):
    reset_session, user = current
    service.verify_password_reset_passkey(reset_session, user, assertion.to_payload())
    return MessageResponse(message="Two-factor verified")


@router.post("/2fa/security-key", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def verify_security_key(
    assertion: WebAuthnAssertion,
    current: ResetContext = Depends(get_password_reset_session),
    service: AuthService = Depends(get_auth_service),
):
    reset_session, user = current
    service.verify_password_reset_security_key(reset_session, user, assertion.to_payload())
    return MessageResponse(message="Two-factor verified")


@router.post("/2fa/recovery-code", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def verify_recovery_code(
    request: RecoveryCodeRequest,
    current: ResetContext = Depends(get_password_reset_session),
    service: AuthService = Depends(get_auth_service),
):
    """
    Spend the recovery code. Every second factor of the account is removed.
    """
    reset_session, user = current
    service.verify_password_reset_recovery_code(reset_session, user, request.recovery_code)
    return MessageResponse(message="Two-factor verified")


@router.post("/complete", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def complete_password_reset(
    request: PasswordResetCompleteRequest,
    current: ResetContext = Depends(get_password_reset_session),
    service: AuthService = Depends(get_auth_service),
):
    """Set the new password. Every session of the account is signed out."""
    reset_session, user = current
    service.complete_password_reset(reset_session, user, request.new_password)
    logger.info(f"Password reset completed for user {user.id}")
    return MessageResponse(message="Password updated")
