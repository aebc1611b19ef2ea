"""
Second-factor credential storage.

Owns the TOTP, passkey and security-key credential tables and the user's
recovery code. The multi-statement operations here (TOTP replacement and
recovery-code consumption) each run in a single AuthDB transaction.
"""
import logging
from typing import List, Optional

from sqlalchemy import text

from .auth_db import AuthDB, generate_recovery_code
from ..auth.models import WebAuthnCredential

logger = logging.getLogger(__name__)

PASSKEY_TABLE = "passkey_credentials"
SECURITY_KEY_TABLE = "security_key_credentials"


def _row_to_credential(row) -> WebAuthnCredential:
    return WebAuthnCredential(
        id=bytes(row[0]),
        user_id=row[1],
        name=row[2],
        algorithm_id=row[3],
        public_key=bytes(row[4]),
    )


class CredentialStore:
    """
    CRUD and invariant enforcement for second-factor credentials.

    Example usage:
        store = CredentialStore(auth_db)
        store.add_or_replace_totp(session.id, user.id, key)
        if store.consume_recovery_code(user.id, presented_code):
            ...  # every second factor of the user is gone now
    """

    def __init__(self, db: AuthDB):
        self.db = db

    # ==========================================
    # TOTP
    # ==========================================

    def get_totp_key(self, user_id: int) -> Optional[bytes]:
        with self.db.get_session() as session:
            row = session.execute(
                text("SELECT key FROM totp_credentials WHERE user_id = :user_id"),
                {"user_id": user_id}
            ).fetchone()

        return bytes(row[0]) if row else None

    def add_or_replace_totp(self, session_id: str, user_id: int, key: bytes) -> None:
        """
        Install ``key`` as the user's only TOTP credential.

        In the same transaction every other session of the user is deleted and
        the acting session is marked two-factor verified: the user has just
        proven possession of the new key.
        """
        with self.db.get_session() as session:
            session.execute(
                text("DELETE FROM totp_credentials WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            session.execute(
                text("INSERT INTO totp_credentials (user_id, key) VALUES (:user_id, :key)"),
                {"user_id": user_id, "key": key}
            )
            session.execute(
                text("DELETE FROM sessions WHERE user_id = :user_id AND id != :session_id"),
                {"user_id": user_id, "session_id": session_id}
            )
            session.execute(
                text("UPDATE sessions SET two_factor_verified = :verified WHERE id = :session_id"),
                {"verified": True, "session_id": session_id}
            )

        logger.info(f"Replaced TOTP credential for user {user_id}")

    def delete_totp(self, user_id: int) -> bool:
        """
        Returns:
            True if a TOTP credential was removed.
        """
        with self.db.get_session() as session:
            result = session.execute(
                text("DELETE FROM totp_credentials WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            removed = result.rowcount > 0

        logger.info(f"Deleted TOTP credential for user {user_id}: removed={removed}")
        return removed

    # ==========================================
    # Passkeys and Security Keys
    # ==========================================

    def _get_credential(self, table: str, credential_id: bytes) -> Optional[WebAuthnCredential]:
        with self.db.get_session() as session:
            row = session.execute(
                text(f"SELECT id, user_id, name, algorithm, public_key FROM {table} WHERE id = :id"),
                {"id": credential_id}
            ).fetchone()

        return _row_to_credential(row) if row else None

    def _get_user_credentials(self, table: str, user_id: int) -> List[WebAuthnCredential]:
        with self.db.get_session() as session:
            rows = session.execute(
                text(f"""
                    SELECT id, user_id, name, algorithm, public_key FROM {table}
                    WHERE user_id = :user_id
                """),
                {"user_id": user_id}
            ).fetchall()

        return [_row_to_credential(row) for row in rows]

    def _add_credential(self, table: str, credential: WebAuthnCredential) -> None:
        with self.db.get_session() as session:
            session.execute(
                text(f"""
                    INSERT INTO {table} (id, user_id, name, algorithm, public_key)
                    VALUES (:id, :user_id, :name, :algorithm, :public_key)
                """),
                {
                    "id": credential.id,
                    "user_id": credential.user_id,
                    "name": credential.name,
                    "algorithm": credential.algorithm_id,
                    "public_key": credential.public_key,
                }
            )
        logger.info(f"Added {table} entry for user {credential.user_id}")

    def _delete_credential(self, table: str, user_id: int, credential_id: bytes) -> bool:
        with self.db.get_session() as session:
            result = session.execute(
                text(f"DELETE FROM {table} WHERE id = :id AND user_id = :user_id"),
                {"id": credential_id, "user_id": user_id}
            )
            return result.rowcount > 0

    def get_passkey_credential(self, credential_id: bytes) -> Optional[WebAuthnCredential]:
        return self._get_credential(PASSKEY_TABLE, credential_id)

    def get_user_passkey_credentials(self, user_id: int) -> List[WebAuthnCredential]:
        return self._get_user_credentials(PASSKEY_TABLE, user_id)

    def add_passkey_credential(self, credential: WebAuthnCredential) -> None:
        self._add_credential(PASSKEY_TABLE, credential)

    def delete_passkey_credential(self, user_id: int, credential_id: bytes) -> bool:
        return self._delete_credential(PASSKEY_TABLE, user_id, credential_id)

    def get_security_key_credential(self, credential_id: bytes) -> Optional[WebAuthnCredential]:
        return self._get_credential(SECURITY_KEY_TABLE, credential_id)

    def get_user_security_key_credentials(self, user_id: int) -> List[WebAuthnCredential]:
        return self._get_user_credentials(SECURITY_KEY_TABLE, user_id)

    def add_security_key_credential(self, credential: WebAuthnCredential) -> None:
        self._add_credential(SECURITY_KEY_TABLE, credential)

    def delete_security_key_credential(self, user_id: int, credential_id: bytes) -> bool:
        return self._delete_credential(SECURITY_KEY_TABLE, user_id, credential_id)

    # ==========================================
    # Recovery Code
    # ==========================================

    def get_recovery_code(self, user_id: int) -> str:
        """
        Raises:
            ValueError: If the user does not exist.
        """
        with self.db.get_session() as session:
            row = session.execute(
                text("SELECT recovery_code FROM users WHERE id = :user_id"),
                {"user_id": user_id}
            ).fetchone()

        if row is None:
            raise ValueError("Invalid user ID")
        return row[0]

    def rotate_recovery_code(self, user_id: int) -> str:
        """
        Replace the recovery code unconditionally.

        Returns:
            The new code.
        """
        recovery_code = generate_recovery_code()
        with self.db.get_session() as session:
            session.execute(
                text("UPDATE users SET recovery_code = :recovery_code WHERE id = :user_id"),
                {"recovery_code": recovery_code, "user_id": user_id}
            )
        logger.info(f"Rotated recovery code for user {user_id}")
        return recovery_code

    def consume_recovery_code(self, user_id: int, recovery_code: str) -> bool:
        """
        Spend the recovery code and reset every second factor of the user.

        The code is rotated by an UPDATE conditioned on the presented value, so
        of several concurrent callers presenting the same code only the first
        to commit sees a changed row. On success all TOTP, passkey and
        security-key credentials are deleted and every session of the user
        loses its two-factor flag, in the same transaction.

        Returns:
            False if the code is wrong or already used (nothing is changed).
        """
        if not recovery_code:
            return False

        with self.db.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE users SET recovery_code = :new_code
                    WHERE id = :user_id AND recovery_code = :code
                """),
                {"new_code": generate_recovery_code(), "user_id": user_id, "code": recovery_code}
            )
            if result.rowcount < 1:
                return False

            session.execute(
                text("DELETE FROM totp_credentials WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            session.execute(
                text(f"DELETE FROM {PASSKEY_TABLE} WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            session.execute(
                text(f"DELETE FROM {SECURITY_KEY_TABLE} WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            session.execute(
                text("UPDATE sessions SET two_factor_verified = :verified WHERE user_id = :user_id"),
                {"verified": False, "user_id": user_id}
            )

        logger.info(f"Recovery code consumed for user {user_id}, second factors reset")
        return True
