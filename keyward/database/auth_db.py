"""
Relational store for authentication data.

This module provides connection management and operations for:
- User accounts and their derived second-factor flags
- Password changes and their session cascades
- Schema initialization

Credential, session and password-reset tables are operated on by the stores in
this package, all of which share one AuthDB and its transaction scope.
"""
import os
import base64
import secrets
import logging
from typing import Optional
from datetime import datetime, timezone
from contextlib import contextmanager

import bcrypt
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from ..auth.models import User
from ..config import get_settings
from ..errors import AuthorizationError, StoreError, ValidationError

logger = logging.getLogger(__name__)

# bcrypt only reads the first 72 bytes of a password.
BCRYPT_MAX_PASSWORD_BYTES = 72

# Derived flags are computed from credential-table membership on every read.
USER_COLUMNS = """
    u.id, u.email, u.username, u.email_verified, u.created_at,
    EXISTS (SELECT 1 FROM totp_credentials t WHERE t.user_id = u.id),
    EXISTS (SELECT 1 FROM passkey_credentials p WHERE p.user_id = u.id),
    EXISTS (SELECT 1 FROM security_key_credentials k WHERE k.user_id = u.id)
"""


def now_timestamp() -> int:
    """Current time as integer Unix seconds (the store's timestamp format)."""
    return int(datetime.now(timezone.utc).timestamp())


def generate_recovery_code() -> str:
    """Generate a recovery code: 10 random bytes, base32 encoded (16 characters)."""
    return base64.b32encode(secrets.token_bytes(10)).decode("ascii")


def row_to_user(row) -> User:
    return User(
        id=row[0],
        email=row[1],
        username=row[2],
        email_verified=bool(row[3]),
        created_at=row[4],
        registered_totp=bool(row[5]),
        registered_passkey=bool(row[6]),
        registered_security_key=bool(row[7]),
    )


def _configure_sqlite(engine) -> None:
    """
    Make SQLite transactions take the write lock up front.

    pysqlite otherwise begins transactions lazily, and two connections that
    both read before writing can fail with "database is locked" instead of
    waiting for each other.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class AuthDB:
    """
    Connection manager and user operations.

    Example usage:
        auth_db = AuthDB()
        auth_db.init_schema()

        # Create user
        user = auth_db.create_user("user@example.com", "user", hash_password("..."))

        # Atomic multi-statement work
        with auth_db.get_session() as session:
            session.execute(text("..."), {...})
    """

    def __init__(self, connection_string: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            connection_string: SQLAlchemy URL. Uses configuration if not provided.
        """
        if connection_string is None:
            connection_string = get_settings().database_url

        if connection_string.startswith("sqlite"):
            self.engine = create_engine(
                connection_string,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            _configure_sqlite(self.engine)
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_pre_ping=True,  # Test connections before use (detect stale)
                pool_recycle=300,    # Recycle connections every 5 minutes
            )
        self.Session = sessionmaker(bind=self.engine)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def get_session(self):
        """
        Get a database session scoped to one transaction.

        Commits when the block exits normally. Any exception rolls the
        transaction back (if one is open) and propagates; storage faults are
        re-raised as StoreError.

        Usage:
            with auth_db.get_session() as session:
                result = session.execute(query)
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            if session.in_transaction():
                session.rollback()
            logger.error(f"Store error, transaction rolled back: {e}")
            raise StoreError("Storage failure") from e
        except Exception:
            if session.in_transaction():
                session.rollback()
            raise
        finally:
            session.close()

    # ==========================================
    # User Management
    # ==========================================

    def create_user(self, email: str, username: str, password_hash: str) -> User:
        """
        Create a new user account with a fresh recovery code.

        Raises:
            ValueError: If email already exists.
        """
        email = email.lower().strip()
        created_at = now_timestamp()

        try:
            with self.get_session() as session:
                row = session.execute(
                    text("""
                        INSERT INTO users (
                            email, username, password_hash, email_verified,
                            recovery_code, created_at
                        ) VALUES (
                            :email, :username, :password_hash, :email_verified,
                            :recovery_code, :created_at
                        )
                        RETURNING id
                    """),
                    {
                        "email": email,
                        "username": username,
                        "password_hash": password_hash,
                        "email_verified": False,
                        "recovery_code": generate_recovery_code(),
                        "created_at": created_at,
                    }
                ).fetchone()
        except StoreError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise ValueError(f"User with email '{email}' already exists")
            raise

        logger.info(f"Created user: {email} (id={row[0]})")
        return User(
            id=row[0],
            email=email,
            username=username,
            email_verified=False,
            created_at=created_at,
        )

    def get_user(self, user_id: int) -> Optional[User]:
        """
        Get user by ID, with second-factor flags computed from the credential tables.
        """
        with self.get_session() as session:
            row = session.execute(
                text(f"SELECT {USER_COLUMNS} FROM users u WHERE u.id = :user_id"),
                {"user_id": user_id}
            ).fetchone()

        return row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.get_session() as session:
            row = session.execute(
                text(f"SELECT {USER_COLUMNS} FROM users u WHERE u.email = :email"),
                {"email": email.lower().strip()}
            ).fetchone()

        return row_to_user(row) if row else None

    def get_user_password_hash(self, user_id: int) -> str:
        """
        Raises:
            ValueError: If the user does not exist.
        """
        with self.get_session() as session:
            row = session.execute(
                text("SELECT password_hash FROM users WHERE id = :user_id"),
                {"user_id": user_id}
            ).fetchone()

        if row is None:
            raise ValueError("Invalid user ID")
        return row[0]

    def verify_user_email(self, user_id: int, email: str) -> None:
        """Mark ``email`` as the user's verified address."""
        with self.get_session() as session:
            session.execute(
                text("UPDATE users SET email_verified = :verified, email = :email WHERE id = :user_id"),
                {"verified": True, "email": email.lower().strip(), "user_id": user_id}
            )
        logger.info(f"Verified email for user {user_id}")

    # ==========================================
    # Password Cascades
    # ==========================================

    def update_password(self, session_id: str, user_id: int, new_password_hash: str) -> int:
        """
        Replace the password hash and sign out every other session.

        The acting session survives. Both changes commit together.

        Returns:
            Number of sessions removed.
        """
        with self.get_session() as session:
            session.execute(
                text("UPDATE users SET password_hash = :password_hash WHERE id = :user_id"),
                {"password_hash": new_password_hash, "user_id": user_id}
            )
            result = session.execute(
                text("DELETE FROM sessions WHERE user_id = :user_id AND id != :session_id"),
                {"user_id": user_id, "session_id": session_id}
            )
            count = result.rowcount

        logger.info(f"Password changed for user {user_id}, {count} other sessions removed")
        return count

    def update_password_with_email_verification(
        self, user_id: int, email: str, new_password_hash: str
    ) -> None:
        """
        Replace the password hash only if ``email`` is still the account email,
        then delete every session and password-reset session of the user.

        Raises:
            AuthorizationError: If the email no longer matches; nothing is committed.
        """
        with self.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE users SET password_hash = :password_hash
                    WHERE id = :user_id AND email = :email
                """),
                {"password_hash": new_password_hash, "user_id": user_id, "email": email.lower().strip()}
            )
            if result.rowcount < 1:
                raise AuthorizationError("Account email changed during password reset", code="email_mismatch")
            session.execute(
                text("DELETE FROM sessions WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            session.execute(
                text("DELETE FROM password_reset_sessions WHERE user_id = :user_id"),
                {"user_id": user_id}
            )

        logger.info(f"Password reset completed for user {user_id}, all sessions removed")

    # ==========================================
    # Schema Initialization
    # ==========================================

    def init_schema(self) -> None:
        """
        Initialize database schema (create tables if not exist).

        Call this once during application setup.
        """
        if self.dialect == "postgresql":
            serial_pk = "SERIAL PRIMARY KEY"
            blob = "BYTEA"
        else:
            serial_pk = "INTEGER PRIMARY KEY AUTOINCREMENT"
            blob = "BLOB"

        with self.get_session() as session:
            session.execute(text(f"""
                CREATE TABLE IF NOT EXISTS users (
                    id {serial_pk},
                    email VARCHAR(255) UNIQUE NOT NULL,
                    username VARCHAR(64) NOT NULL,
                    password_hash VARCHAR(255) NOT NULL,
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    recovery_code VARCHAR(64) NOT NULL,
                    created_at BIGINT NOT NULL
                )
            """))

            session.execute(text("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id VARCHAR(64) PRIMARY KEY,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    created_at BIGINT NOT NULL,
                    expires_at BIGINT NOT NULL,
                    two_factor_verified BOOLEAN NOT NULL DEFAULT FALSE
                )
            """))

            session.execute(text("""
                CREATE TABLE IF NOT EXISTS password_reset_sessions (
                    id VARCHAR(64) PRIMARY KEY,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    email VARCHAR(255) NOT NULL,
                    code VARCHAR(16) NOT NULL,
                    created_at BIGINT NOT NULL,
                    expires_at BIGINT NOT NULL,
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    two_factor_verified BOOLEAN NOT NULL DEFAULT FALSE
                )
            """))

            session.execute(text(f"""
                CREATE TABLE IF NOT EXISTS totp_credentials (
                    id {serial_pk},
                    user_id INTEGER NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                    key {blob} NOT NULL
                )
            """))

            for table in ("passkey_credentials", "security_key_credentials"):
                session.execute(text(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id {blob} PRIMARY KEY,
                        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        name VARCHAR(255) NOT NULL,
                        algorithm INTEGER NOT NULL,
                        public_key {blob} NOT NULL
                    )
                """))

            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_password_reset_sessions_user
                ON password_reset_sessions(user_id)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_passkey_credentials_user ON passkey_credentials(user_id)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_security_key_credentials_user
                ON security_key_credentials(user_id)
            """))

        logger.info("Database schema initialized")


# ==========================================
# Password Hashing Utilities
# ==========================================

def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password.

    Returns:
        Bcrypt hash string.

    Raises:
        ValidationError: Password longer than bcrypt accepts.
    """
    encoded = password.encode('utf-8')
    if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
        raise ValidationError("Password is too long", code="password_too_long")
    salt = bcrypt.gensalt(rounds=int(os.getenv("BCRYPT_ROUNDS", "12")))
    return bcrypt.hashpw(encoded, salt).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its hash.

    Args:
        password: Plain text password to verify.
        password_hash: Stored bcrypt hash.

    Returns:
        True if password matches, False otherwise. Passwords too long to
        have been hashed never match.
    """
    encoded = password.encode('utf-8')
    if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(encoded, password_hash.encode('utf-8'))


# Singleton instance
_auth_db_instance: Optional[AuthDB] = None


def get_auth_db() -> AuthDB:
    """
    Get singleton AuthDB instance.

    Returns:
        AuthDB instance.
    """
    global _auth_db_instance
    if _auth_db_instance is None:
        _auth_db_instance = AuthDB()
    return _auth_db_instance
