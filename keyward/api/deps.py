"""
FastAPI Dependencies for KEYWARD API.

Provides:
- Database and service singletons
- WebAuthn challenge store (Redis-backed)
- Bearer-session and password-reset-session dependencies
"""
import logging
from typing import Optional, Tuple

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader, HTTPBearer, HTTPAuthorizationCredentials

from ..auth.challenges import ChallengeStore, get_redis_client
from ..auth.models import PasswordResetSession, Session, User
from ..auth.service import AuthService, create_auth_service
from ..config import get_settings
from ..database.auth_db import AuthDB, get_auth_db

logger = logging.getLogger(__name__)

PASSWORD_RESET_HEADER = "X-Password-Reset-Token"

# Security schemes
security = HTTPBearer(auto_error=False)
reset_token_header = APIKeyHeader(name=PASSWORD_RESET_HEADER, auto_error=False)


# ============================================
# Database and Service Dependencies
# ============================================

def get_db() -> AuthDB:
    """Get database connection."""
    return get_auth_db()


_challenge_store: Optional[ChallengeStore] = None
_auth_service: Optional[AuthService] = None


def get_challenge_store() -> ChallengeStore:
    global _challenge_store
    if _challenge_store is None:
        _challenge_store = ChallengeStore(
            get_redis_client(), ttl_seconds=get_settings().challenge_ttl_seconds
        )
    return _challenge_store


def get_auth_service() -> AuthService:
    """
    Get the process-wide AuthService.

    Rate-limit buckets live on the service, so there must be one per process.
    """
    global _auth_service
    if _auth_service is None:
        _auth_service = create_auth_service(
            get_db(), get_challenge_store().verify_and_consume, get_settings()
        )
    return _auth_service


# ============================================
# Session Dependencies
# ============================================

async def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    service: AuthService = Depends(get_auth_service),
) -> Tuple[Session, User]:
    """
    Validate bearer token and return the session and its user.

    Raises:
        HTTPException: If token is missing, invalid, or expired.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    validated = service.sessions.validate_and_refresh(credentials.credentials)

    if validated is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return validated


async def get_password_reset_session(
    token: Optional[str] = Depends(reset_token_header),
    service: AuthService = Depends(get_auth_service),
) -> Tuple[PasswordResetSession, User]:
    """
    Validate the password-reset token header.

    Raises:
        HTTPException: If the header is missing, unknown or expired.
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Password reset token required",
        )

    validated = service.password_resets.validate(token)

    if validated is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired password reset token",
        )

    return validated
