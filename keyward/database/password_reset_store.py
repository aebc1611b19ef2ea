"""
Password-reset sessions.

A reset session is a short-lived, single-user session that only gates the
password-reset completion step. It carries its own email-verified and
two-factor-verified flags, independent of login sessions.
"""
import base64
import hmac
import secrets
import logging
from typing import Optional, Tuple

from sqlalchemy import text

from .auth_db import AuthDB, USER_COLUMNS, now_timestamp, row_to_user
from .session_store import generate_session_token
from ..auth.models import (
    PasswordResetSession,
    ResetGateDecision,
    ResetGateOutcome,
    User,
    preferred_modality,
)
from ..errors import AuthorizationError
from ..utils.secrets import mask_secret

logger = logging.getLogger(__name__)


def generate_email_code() -> str:
    """8-character base32 code sent to the account email."""
    return base64.b32encode(secrets.token_bytes(5)).decode("ascii")


class PasswordResetSessionManager:
    """
    Reset-session CRUD and the gates that guard reset completion.

    Example usage:
        resets = PasswordResetSessionManager(auth_db)
        reset = resets.create_session(user.id, user.email)
        send_password_reset_email(reset.email, reset.code)
    """

    def __init__(self, db: AuthDB, expires_minutes: int = 10):
        self.db = db
        self.lifetime_seconds = expires_minutes * 60

    def create_session(self, user_id: int, email: str) -> PasswordResetSession:
        """
        Start a reset flow. Earlier reset sessions of the user are discarded.
        """
        now = now_timestamp()
        reset_session = PasswordResetSession(
            id=generate_session_token(),
            user_id=user_id,
            email=email.lower().strip(),
            code=generate_email_code(),
            expires_at=now + self.lifetime_seconds,
        )

        with self.db.get_session() as session:
            session.execute(
                text("DELETE FROM password_reset_sessions WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            session.execute(
                text("""
                    INSERT INTO password_reset_sessions (
                        id, user_id, email, code, created_at, expires_at,
                        email_verified, two_factor_verified
                    ) VALUES (
                        :id, :user_id, :email, :code, :created_at, :expires_at,
                        :email_verified, :two_factor_verified
                    )
                """),
                {
                    "id": reset_session.id,
                    "user_id": user_id,
                    "email": reset_session.email,
                    "code": reset_session.code,
                    "created_at": now,
                    "expires_at": reset_session.expires_at,
                    "email_verified": False,
                    "two_factor_verified": False,
                }
            )

        logger.info(f"Password reset session created for user {user_id}")
        return reset_session

    def validate(self, token: str) -> Optional[Tuple[PasswordResetSession, User]]:
        """
        Returns:
            (reset session, user) if valid, None if unknown or expired.
        """
        if not token:
            return None

        with self.db.get_session() as session:
            row = session.execute(
                text(f"""
                    SELECT r.id, r.user_id, r.email, r.code, r.expires_at,
                           r.email_verified, r.two_factor_verified,
                           {USER_COLUMNS}
                    FROM password_reset_sessions r
                    JOIN users u ON r.user_id = u.id
                    WHERE r.id = :token
                """),
                {"token": token}
            ).fetchone()

            if row is None:
                return None

            if now_timestamp() >= row[4]:
                session.execute(
                    text("DELETE FROM password_reset_sessions WHERE id = :token"),
                    {"token": token}
                )
                logger.debug(f"Expired password reset session {mask_secret(token)} removed")
                return None

        reset_session = PasswordResetSession(
            id=row[0],
            user_id=row[1],
            email=row[2],
            code=row[3],
            expires_at=row[4],
            email_verified=bool(row[5]),
            two_factor_verified=bool(row[6]),
        )
        return reset_session, row_to_user(tuple(row)[7:])

    def verify_email(self, session_id: str, code: str) -> bool:
        """
        Check the emailed code and mark the reset session's email verified.
        """
        with self.db.get_session() as session:
            row = session.execute(
                text("SELECT code FROM password_reset_sessions WHERE id = :id"),
                {"id": session_id}
            ).fetchone()
            if row is None or not code:
                return False
            if not hmac.compare_digest(row[0].encode("utf-8"), code.strip().upper().encode("utf-8")):
                return False
            session.execute(
                text("UPDATE password_reset_sessions SET email_verified = :verified WHERE id = :id"),
                {"verified": True, "id": session_id}
            )

        logger.debug(f"Password reset session {mask_secret(session_id)} email verified")
        return True

    def mark_two_factor_verified(self, session_id: str) -> None:
        with self.db.get_session() as session:
            session.execute(
                text("UPDATE password_reset_sessions SET two_factor_verified = :verified WHERE id = :id"),
                {"verified": True, "id": session_id}
            )

    def invalidate_session(self, session_id: str) -> None:
        with self.db.get_session() as session:
            session.execute(
                text("DELETE FROM password_reset_sessions WHERE id = :id"),
                {"id": session_id}
            )

    # ==========================================
    # Gates
    # ==========================================

    @staticmethod
    def two_factor_gate(reset_session: PasswordResetSession, user: User) -> ResetGateDecision:
        """
        Decide where the reset flow's 2FA step should go.

        Returns:
            ALREADY_VERIFIED if this reset session passed a second factor,
            NO_TWO_FACTOR if the user has none registered,
            otherwise STEP_REQUIRED with the modality to present.
        """
        if reset_session.two_factor_verified:
            return ResetGateDecision(ResetGateOutcome.ALREADY_VERIFIED)
        if not user.registered_2fa:
            return ResetGateDecision(ResetGateOutcome.NO_TWO_FACTOR)
        return ResetGateDecision(ResetGateOutcome.STEP_REQUIRED, preferred_modality(user))

    @staticmethod
    def require_completable(reset_session: PasswordResetSession, user: User) -> None:
        """
        Raises:
            AuthorizationError: Email not verified, or the user has a second
                factor the reset session has not passed.
        """
        if not reset_session.email_verified:
            raise AuthorizationError("Email not verified", code="email_unverified")
        if user.registered_2fa and not reset_session.two_factor_verified:
            raise AuthorizationError("Two-factor verification required", code="two_factor_required")
