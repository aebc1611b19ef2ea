"""
Authentication Endpoints.

Provides password, passkey and security-key login, logout, WebAuthn
challenges and the second-factor steps that upgrade a session.
"""
import base64
import logging
from typing import Tuple

from fastapi import APIRouter, Depends, status

from ..models import (
    UserLogin,
    SessionResponse,
    WebAuthnAssertion,
    ChallengeResponse,
    TOTPCodeRequest,
    RecoveryCodeRequest,
    MessageResponse,
    ErrorResponse,
)
from ..deps import get_auth_service, get_challenge_store, get_current_session
from ...auth.challenges import ChallengeStore
from ...auth.models import Session, User
from ...auth.service import AuthService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input or credentials"},
    401: {"model": ErrorResponse, "description": "Not authorized"},
    429: {"model": ErrorResponse, "description": "Too many attempts"},
}


def _session_response(session: Session, two_factor_required: bool = False) -> SessionResponse:
    return SessionResponse(
        access_token=session.id,
        token_type="bearer",
        expires_at=session.expires_at,
        user_id=session.user_id,
        two_factor_verified=session.two_factor_verified,
        two_factor_required=two_factor_required,
    )


@router.post("/login", response_model=SessionResponse, responses=ERROR_RESPONSES)
async def login(
    credentials: UserLogin,
    service: AuthService = Depends(get_auth_service),
):
    """
    Authenticate with email and password.

    If the account has a second factor, the returned session must complete
    one of the /auth/2fa steps before sensitive actions are allowed.
    """
    session, user = service.login_with_password(credentials.email, credentials.password)
    return _session_response(session, two_factor_required=user.registered_2fa)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    """
    Logout current session.

    Invalidates the current access token.
    """
    session, user = current
    service.logout(session)
    logger.info(f"User {user.id} logged out")
    return None


@router.post("/webauthn/challenge", response_model=ChallengeResponse)
async def webauthn_challenge(store: ChallengeStore = Depends(get_challenge_store)):
    """Issue a single-use challenge for navigator.credentials.get()."""
    challenge = store.issue_challenge()
    encoded = base64.urlsafe_b64encode(challenge).decode("ascii").rstrip("=")
    return ChallengeResponse(challenge=encoded)


@router.post("/login/passkey", response_model=SessionResponse, responses=ERROR_RESPONSES)
async def login_with_passkey(
    assertion: WebAuthnAssertion,
    service: AuthService = Depends(get_auth_service),
):
    """Login with a passkey. The new session is already two-factor verified."""
    session = service.login_with_passkey(assertion.to_payload())
    return _session_response(session)


@router.post("/login/security-key", response_model=SessionResponse, responses=ERROR_RESPONSES)
async def login_with_security_key(
    assertion: WebAuthnAssertion,
    service: AuthService = Depends(get_auth_service),
):
    session = service.login_with_security_key(assertion.to_payload())
    return _session_response(session)


# ============================================
# Second Factor
# ============================================

@router.post("/2fa/totp", response_model=SessionResponse, responses=ERROR_RESPONSES)
async def verify_totp(
    request: TOTPCodeRequest,
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    session, user = current
    session = service.verify_totp_2fa(session, user, request.code)
    return _session_response(session)


@router.post("/2fa/passkey", response_model=SessionResponse, responses=ERROR_RESPONSES)
async def verify_passkey(
    assertion: WebAuthnAssertion,
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    session, user = current
    session = service.verify_passkey_2fa(session, user, assertion.to_payload())
    return _session_response(session)


@router.post("/2fa/security-key", response_model=SessionResponse, responses=ERROR_RESPONSES)
async def verify_security_key(
    assertion: WebAuthnAssertion,
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    session, user = current
    session = service.verify_security_key_2fa(session, user, assertion.to_payload())
    return _session_response(session)


@router.post("/2fa/reset", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def reset_two_factor(
    request: RecoveryCodeRequest,
    current: Tuple[Session, User] = Depends(get_current_session),
    service: AuthService = Depends(get_auth_service),
):
    """
    Spend the recovery code.

    Removes every registered second factor; the account must set one up again.
    """
    session, user = current
    service.recover_with_recovery_code(session, user, request.recovery_code)
    return MessageResponse(message="Second factors removed")
