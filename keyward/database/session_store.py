"""
Login session lifecycle.

A session is created unverified by password login or verified by a passkey /
security-key login, can be promoted to two-factor verified (one-way), and is
deleted on logout, expiry or a password cascade.
"""
import secrets
import logging
from typing import Optional, Tuple

from sqlalchemy import text

from .auth_db import AuthDB, USER_COLUMNS, now_timestamp, row_to_user
from ..auth.models import Session, SessionFlags, User
from ..utils.secrets import mask_secret

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 3600


def generate_session_token() -> str:
    """Secure random 64-char hex string (256 bits)."""
    return secrets.token_hex(32)


class SessionManager:
    """
    Session CRUD over the ``sessions`` table.

    Example usage:
        sessions = SessionManager(auth_db, session_days=30)
        session = sessions.create_session(user.id, SessionFlags(two_factor_verified=False))
        ...
        validated = sessions.validate_and_refresh(bearer_token)
    """

    def __init__(self, db: AuthDB, session_days: int = 30):
        self.db = db
        self.lifetime_seconds = session_days * DAY_SECONDS

    def create_session(self, user_id: int, flags: SessionFlags) -> Session:
        """
        Create a new session for a user.

        Returns:
            The session; its id is the bearer token.
        """
        now = now_timestamp()
        session_record = Session(
            id=generate_session_token(),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.lifetime_seconds,
            two_factor_verified=flags.two_factor_verified,
        )

        with self.db.get_session() as session:
            session.execute(
                text("""
                    INSERT INTO sessions (
                        id, user_id, created_at, expires_at, two_factor_verified
                    ) VALUES (
                        :id, :user_id, :created_at, :expires_at, :two_factor_verified
                    )
                """),
                {
                    "id": session_record.id,
                    "user_id": session_record.user_id,
                    "created_at": session_record.created_at,
                    "expires_at": session_record.expires_at,
                    "two_factor_verified": session_record.two_factor_verified,
                }
            )

        logger.debug(
            f"Created session {mask_secret(session_record.id)} for user {user_id}, "
            f"two_factor_verified={flags.two_factor_verified}"
        )
        return session_record

    def validate_and_refresh(self, token: str) -> Optional[Tuple[Session, User]]:
        """
        Validate a bearer token.

        Expired sessions are deleted. Sessions past the first half of their
        lifetime are extended to a full lifetime from now.

        Returns:
            (session, user) if valid, None if unknown or expired.
        """
        if not token:
            return None

        now = now_timestamp()
        with self.db.get_session() as session:
            row = session.execute(
                text(f"""
                    SELECT s.id, s.user_id, s.created_at, s.expires_at, s.two_factor_verified,
                           {USER_COLUMNS}
                    FROM sessions s
                    JOIN users u ON s.user_id = u.id
                    WHERE s.id = :token
                """),
                {"token": token}
            ).fetchone()

            if row is None:
                return None

            session_record = Session(
                id=row[0],
                user_id=row[1],
                created_at=row[2],
                expires_at=row[3],
                two_factor_verified=bool(row[4]),
            )
            user = row_to_user(tuple(row)[5:])

            if now >= session_record.expires_at:
                session.execute(
                    text("DELETE FROM sessions WHERE id = :token"),
                    {"token": token}
                )
                logger.debug(f"Expired session {mask_secret(token)} removed")
                return None

            if now >= session_record.expires_at - self.lifetime_seconds // 2:
                session_record.expires_at = now + self.lifetime_seconds
                session.execute(
                    text("UPDATE sessions SET expires_at = :expires_at WHERE id = :token"),
                    {"expires_at": session_record.expires_at, "token": token}
                )

        return session_record, user

    def get_session(self, session_id: str) -> Optional[Session]:
        """Read a session without validating or refreshing it."""
        with self.db.get_session() as session:
            row = session.execute(
                text("""
                    SELECT id, user_id, created_at, expires_at, two_factor_verified
                    FROM sessions WHERE id = :id
                """),
                {"id": session_id}
            ).fetchone()

        if row is None:
            return None
        return Session(
            id=row[0],
            user_id=row[1],
            created_at=row[2],
            expires_at=row[3],
            two_factor_verified=bool(row[4]),
        )

    def mark_two_factor_verified(self, session_id: str) -> None:
        with self.db.get_session() as session:
            session.execute(
                text("UPDATE sessions SET two_factor_verified = :verified WHERE id = :id"),
                {"verified": True, "id": session_id}
            )
        logger.debug(f"Session {mask_secret(session_id)} marked two-factor verified")

    def invalidate_session(self, session_id: str) -> None:
        """Invalidate (logout) a session."""
        with self.db.get_session() as session:
            session.execute(
                text("DELETE FROM sessions WHERE id = :id"),
                {"id": session_id}
            )
        logger.debug(f"Invalidated session {mask_secret(session_id)}")

    def invalidate_all_sessions_except(self, user_id: int, keep_session_id: str) -> int:
        """
        Returns:
            Number of sessions invalidated.
        """
        with self.db.get_session() as session:
            result = session.execute(
                text("DELETE FROM sessions WHERE user_id = :user_id AND id != :keep_id"),
                {"user_id": user_id, "keep_id": keep_session_id}
            )
            count = result.rowcount
        logger.info(f"Invalidated {count} other sessions for user {user_id}")
        return count

    def invalidate_all_sessions(self, user_id: int) -> int:
        """
        Invalidate all sessions for a user (logout from all devices).

        Returns:
            Number of sessions invalidated.
        """
        with self.db.get_session() as session:
            result = session.execute(
                text("DELETE FROM sessions WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            count = result.rowcount
        logger.info(f"Invalidated {count} sessions for user {user_id}")
        return count
