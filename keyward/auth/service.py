"""
Authentication orchestration.

Composes the stores, verifiers and rate limiters into the login, two-factor,
recovery and password operations. Every method either completes or raises a
KeywardError subclass; no method leaves a partial cascade behind, because
every cascade is a single store transaction.
"""
import logging
from typing import Hashable, List, Optional, Tuple, Union

from .models import (
    AssertionPayload,
    PasswordResetSession,
    ResetGateDecision,
    Session,
    SessionFlags,
    User,
    WebAuthnCredential,
)
from .rate_limit import ExpiringTokenBucket, RefillingTokenBucket
from .totp import decode_totp_key, verify_totp
from .webauthn import CredentialLookup, WebAuthnVerifier
from ..database.auth_db import BCRYPT_MAX_PASSWORD_BYTES, AuthDB, hash_password, verify_password
from ..database.credential_store import CredentialStore
from ..database.password_reset_store import PasswordResetSessionManager
from ..database.session_store import SessionManager
from ..errors import (
    AuthenticationError,
    AuthorizationError,
    RateLimitedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = BCRYPT_MAX_PASSWORD_BYTES

Bucket = Union[ExpiringTokenBucket, RefillingTokenBucket]


def verify_password_strength(password: str) -> None:
    """
    Raises:
        ValidationError: Password too short or too long.
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters", code="weak_password"
        )
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(
            f"Password must be at most {MAX_PASSWORD_BYTES} bytes", code="password_too_long"
        )


def send_password_reset_email(email: str, code: str) -> None:
    """Deliver the reset code. Outbound mail is handled outside this service."""
    logger.info(f"Password reset code issued for {email}")
    logger.debug(f"To {email}: your password reset code is {code}")


class AuthService:
    """
    Login, two-factor and password operations.

    Example usage:
        service = AuthService(auth_db, credentials, sessions, resets, verifier)
        session, user = service.login_with_password("user@example.com", "...")
        service.verify_totp_2fa(session, user, "123456")
    """

    def __init__(
        self,
        db: AuthDB,
        credentials: CredentialStore,
        sessions: SessionManager,
        password_resets: PasswordResetSessionManager,
        webauthn: WebAuthnVerifier,
    ):
        self.db = db
        self.credentials = credentials
        self.sessions = sessions
        self.password_resets = password_resets
        self.webauthn = webauthn

        self.totp_update_bucket = RefillingTokenBucket(3, 60 * 10)
        self.totp_bucket = ExpiringTokenBucket(5, 60 * 30)
        self.recovery_code_bucket = ExpiringTokenBucket(3, 60 * 60)
        self.password_update_bucket = ExpiringTokenBucket(5, 60 * 30)
        self.login_bucket = ExpiringTokenBucket(10, 60 * 15)
        self.password_reset_bucket = ExpiringTokenBucket(3, 60 * 15)
        self.email_verification_bucket = ExpiringTokenBucket(5, 60 * 30)

    # ==========================================
    # Gates
    # ==========================================

    @staticmethod
    def _consume(bucket: Bucket, key: Hashable, detail: str = "Too many requests") -> None:
        if bucket.consume(key, 1):
            return
        if isinstance(bucket, ExpiringTokenBucket):
            retry_after = bucket.retry_after(key)
        else:
            retry_after = int(bucket.refill_interval_seconds)
        logger.warning(f"Rate limit hit for {key}: {detail}")
        raise RateLimitedError(detail, retry_after=retry_after)

    @staticmethod
    def require_session(session: Optional[Session], user: Optional[User]) -> None:
        if session is None or user is None:
            raise AuthorizationError("Authentication required", code="session_required")
        if not user.email_verified:
            raise AuthorizationError("Email not verified", code="email_unverified")

    def require_sensitive_access(self, session: Optional[Session], user: Optional[User]) -> None:
        """Verified email and, when the user has a second factor, a 2FA-verified session."""
        self.require_session(session, user)
        if user.registered_2fa and not session.two_factor_verified:
            raise AuthorizationError("Two-factor verification required", code="two_factor_required")

    # ==========================================
    # Login
    # ==========================================

    def login_with_password(self, email: str, password: str) -> Tuple[Session, User]:
        """
        Primary-factor login. The new session is not two-factor verified.
        """
        if not email or not password:
            raise ValidationError("Please enter your email and password")

        user = self.db.get_user_by_email(email)
        if user is None:
            raise AuthenticationError("Invalid email or password", code="invalid_credentials")

        self._consume(self.login_bucket, user.id, "Too many login attempts")

        if not verify_password(password, self.db.get_user_password_hash(user.id)):
            logger.warning(f"Failed password login for user {user.id}")
            raise AuthenticationError("Invalid email or password", code="invalid_credentials")

        self.login_bucket.reset(user.id)
        session = self.sessions.create_session(user.id, SessionFlags(two_factor_verified=False))
        logger.info(f"User {user.id} logged in with password")
        return session, user

    def _login_with_assertion(self, assertion: AssertionPayload, lookup: CredentialLookup) -> Session:
        result = self.webauthn.verify_assertion(assertion, lookup)
        return self.sessions.create_session(
            result.user_id, SessionFlags(two_factor_verified=result.two_factor_verified)
        )

    def login_with_passkey(self, assertion: AssertionPayload) -> Session:
        """Passkey login; the session starts two-factor verified."""
        session = self._login_with_assertion(assertion, self.credentials.get_passkey_credential)
        logger.info(f"User {session.user_id} logged in with passkey")
        return session

    def login_with_security_key(self, assertion: AssertionPayload) -> Session:
        session = self._login_with_assertion(assertion, self.credentials.get_security_key_credential)
        logger.info(f"User {session.user_id} logged in with security key")
        return session

    def logout(self, session: Session) -> None:
        self.sessions.invalidate_session(session.id)

    # ==========================================
    # Two-Factor Verification
    # ==========================================

    def verify_totp_2fa(self, session: Optional[Session], user: Optional[User], code: str) -> Session:
        """Upgrade the session with a TOTP code."""
        self.require_session(session, user)
        if not user.registered_totp:
            raise AuthorizationError("TOTP is not set up", code="totp_not_registered")

        self._consume(self.totp_bucket, user.id)

        if not code:
            raise ValidationError("Please enter your code")
        key = self.credentials.get_totp_key(user.id)
        if key is None or not verify_totp(key, code):
            raise AuthenticationError("Invalid code", code="invalid_code")

        self.totp_bucket.reset(user.id)
        self.sessions.mark_two_factor_verified(session.id)
        session.two_factor_verified = True
        logger.info(f"User {user.id} passed TOTP verification")
        return session

    @staticmethod
    def _owned_by(lookup: CredentialLookup, user_id: int) -> CredentialLookup:
        def lookup_owned(credential_id: bytes) -> Optional[WebAuthnCredential]:
            credential = lookup(credential_id)
            if credential is None or credential.user_id != user_id:
                return None
            return credential
        return lookup_owned

    def _verify_assertion_2fa(
        self,
        session: Optional[Session],
        user: Optional[User],
        assertion: AssertionPayload,
        lookup: CredentialLookup,
        registered: bool,
    ) -> Session:
        self.require_session(session, user)
        if not registered:
            raise AuthorizationError("Credential type is not set up", code="credential_not_registered")

        self.webauthn.verify_assertion(assertion, self._owned_by(lookup, user.id))
        self.sessions.mark_two_factor_verified(session.id)
        session.two_factor_verified = True
        return session

    def verify_passkey_2fa(self, session, user, assertion: AssertionPayload) -> Session:
        session = self._verify_assertion_2fa(
            session, user, assertion, self.credentials.get_passkey_credential,
            user is not None and user.registered_passkey,
        )
        logger.info(f"User {user.id} passed passkey verification")
        return session

    def verify_security_key_2fa(self, session, user, assertion: AssertionPayload) -> Session:
        session = self._verify_assertion_2fa(
            session, user, assertion, self.credentials.get_security_key_credential,
            user is not None and user.registered_security_key,
        )
        logger.info(f"User {user.id} passed security key verification")
        return session

    # ==========================================
    # TOTP Management
    # ==========================================

    def register_totp(self, session: Optional[Session], user: Optional[User], encoded_key: str, code: str) -> Session:
        """
        Install a new TOTP key after checking a code generated from it.

        The acting session becomes two-factor verified and every other
        session of the user is signed out.
        """
        self.require_sensitive_access(session, user)
        self._consume(self.totp_update_bucket, user.id)

        if not code:
            raise ValidationError("Please enter your code", code="missing_code")
        key = decode_totp_key(encoded_key or "")
        if key is None:
            raise ValidationError("Invalid key", code="invalid_key")
        if not verify_totp(key, code):
            raise AuthenticationError("Invalid code", code="invalid_code")

        self.credentials.add_or_replace_totp(session.id, user.id, key)
        session.two_factor_verified = True
        return session

    def delete_totp(self, session: Optional[Session], user: Optional[User]) -> None:
        self.require_sensitive_access(session, user)
        self._consume(self.totp_update_bucket, user.id)
        self.credentials.delete_totp(user.id)

    # ==========================================
    # Passkey and Security Key Management
    # ==========================================

    def list_passkeys(self, session: Optional[Session], user: Optional[User]) -> List[WebAuthnCredential]:
        self.require_sensitive_access(session, user)
        return self.credentials.get_user_passkey_credentials(user.id)

    def delete_passkey(self, session: Optional[Session], user: Optional[User], credential_id: bytes) -> None:
        """
        Raises:
            ValidationError: The user has no passkey with this id.
        """
        self.require_sensitive_access(session, user)
        if not self.credentials.delete_passkey_credential(user.id, credential_id):
            raise ValidationError("Passkey not found", code="unknown_credential")
        logger.info(f"User {user.id} removed a passkey")

    def list_security_keys(self, session: Optional[Session], user: Optional[User]) -> List[WebAuthnCredential]:
        self.require_sensitive_access(session, user)
        return self.credentials.get_user_security_key_credentials(user.id)

    def delete_security_key(self, session: Optional[Session], user: Optional[User], credential_id: bytes) -> None:
        self.require_sensitive_access(session, user)
        if not self.credentials.delete_security_key_credential(user.id, credential_id):
            raise ValidationError("Security key not found", code="unknown_credential")
        logger.info(f"User {user.id} removed a security key")

    # ==========================================
    # Recovery Code
    # ==========================================

    def reset_two_factor_with_recovery_code(self, user_id: int, recovery_code: str) -> bool:
        """
        Spend a recovery code. On success every second factor of the user is
        removed and all of the user's sessions lose their two-factor flag.

        Raises:
            RateLimitedError: Too many attempts for this user.
        """
        self._consume(self.recovery_code_bucket, user_id)
        if not self.credentials.consume_recovery_code(user_id, (recovery_code or "").strip().upper()):
            logger.warning(f"Invalid recovery code for user {user_id}")
            return False
        self.recovery_code_bucket.reset(user_id)
        return True

    def recover_with_recovery_code(self, session: Optional[Session], user: Optional[User], recovery_code: str) -> None:
        self.require_session(session, user)
        if not user.registered_2fa:
            raise AuthorizationError("No second factor to reset", code="two_factor_not_registered")
        if not recovery_code:
            raise ValidationError("Please enter your code")
        if not self.reset_two_factor_with_recovery_code(user.id, recovery_code):
            raise AuthenticationError("Invalid recovery code", code="invalid_recovery_code")
        session.two_factor_verified = False

    def get_recovery_code(self, session: Optional[Session], user: Optional[User]) -> str:
        self.require_sensitive_access(session, user)
        return self.credentials.get_recovery_code(user.id)

    def regenerate_recovery_code(self, session: Optional[Session], user: Optional[User]) -> str:
        self.require_sensitive_access(session, user)
        return self.credentials.rotate_recovery_code(user.id)

    # ==========================================
    # Password Change
    # ==========================================

    def change_password(
        self,
        session: Optional[Session],
        user: Optional[User],
        current_password: str,
        new_password: str,
    ) -> None:
        """
        Replace the password. Every other session of the user is signed out;
        the acting session survives.
        """
        self.require_sensitive_access(session, user)
        self._consume(self.password_update_bucket, user.id)

        if not current_password or not new_password:
            raise ValidationError("Please enter your current and new password")
        verify_password_strength(new_password)
        if not verify_password(current_password, self.db.get_user_password_hash(user.id)):
            raise AuthenticationError("Current password is incorrect", code="invalid_password")

        self.db.update_password(session.id, user.id, hash_password(new_password))

    # ==========================================
    # Password Reset
    # ==========================================

    def initiate_password_reset(self, email: str) -> PasswordResetSession:
        if not email:
            raise ValidationError("Please enter your email")
        user = self.db.get_user_by_email(email)
        if user is None:
            raise AuthenticationError("Account does not exist", code="unknown_account")

        self._consume(self.password_reset_bucket, user.id)
        reset_session = self.password_resets.create_session(user.id, user.email)
        send_password_reset_email(reset_session.email, reset_session.code)
        return reset_session

    def verify_password_reset_email(self, reset_session: PasswordResetSession, code: str) -> PasswordResetSession:
        if reset_session.email_verified:
            return reset_session
        if not code:
            raise ValidationError("Please enter your code")

        self._consume(self.email_verification_bucket, reset_session.user_id)
        if not self.password_resets.verify_email(reset_session.id, code):
            raise AuthenticationError("Incorrect code", code="invalid_code")

        self.email_verification_bucket.reset(reset_session.user_id)
        reset_session.email_verified = True
        return reset_session

    def cancel_password_reset(self, reset_session: PasswordResetSession) -> None:
        self.password_resets.invalidate_session(reset_session.id)
        logger.info(f"Password reset cancelled for user {reset_session.user_id}")

    def password_reset_gate(self, reset_session: PasswordResetSession, user: User) -> ResetGateDecision:
        return self.password_resets.two_factor_gate(reset_session, user)

    def _require_reset_2fa_step(self, reset_session: PasswordResetSession, user: User) -> None:
        if not reset_session.email_verified:
            raise AuthorizationError("Email not verified", code="email_unverified")
        if not user.registered_2fa:
            raise AuthorizationError("No second factor registered", code="two_factor_not_registered")
        if reset_session.two_factor_verified:
            raise AuthorizationError("Already verified", code="already_verified")

    def verify_password_reset_totp(self, reset_session: PasswordResetSession, user: User, code: str) -> PasswordResetSession:
        self._require_reset_2fa_step(reset_session, user)
        if not user.registered_totp:
            raise AuthorizationError("TOTP is not set up", code="totp_not_registered")

        self._consume(self.totp_bucket, user.id)
        if not code:
            raise ValidationError("Please enter your code")
        key = self.credentials.get_totp_key(user.id)
        if key is None or not verify_totp(key, code):
            raise AuthenticationError("Invalid code", code="invalid_code")

        self.totp_bucket.reset(user.id)
        self.password_resets.mark_two_factor_verified(reset_session.id)
        reset_session.two_factor_verified = True
        return reset_session

    def _verify_password_reset_assertion(
        self,
        reset_session: PasswordResetSession,
        user: User,
        assertion: AssertionPayload,
        lookup: CredentialLookup,
        registered: bool,
    ) -> PasswordResetSession:
        self._require_reset_2fa_step(reset_session, user)
        if not registered:
            raise AuthorizationError("Credential type is not set up", code="credential_not_registered")

        self.webauthn.verify_assertion(assertion, self._owned_by(lookup, user.id))
        self.password_resets.mark_two_factor_verified(reset_session.id)
        reset_session.two_factor_verified = True
        return reset_session

    def verify_password_reset_passkey(
        self, reset_session: PasswordResetSession, user: User, assertion: AssertionPayload
    ) -> PasswordResetSession:
        reset_session = self._verify_password_reset_assertion(
            reset_session, user, assertion, self.credentials.get_passkey_credential,
            user.registered_passkey,
        )
        logger.info(f"User {user.id} passed passkey verification for password reset")
        return reset_session

    def verify_password_reset_security_key(
        self, reset_session: PasswordResetSession, user: User, assertion: AssertionPayload
    ) -> PasswordResetSession:
        reset_session = self._verify_password_reset_assertion(
            reset_session, user, assertion, self.credentials.get_security_key_credential,
            user.registered_security_key,
        )
        logger.info(f"User {user.id} passed security key verification for password reset")
        return reset_session

    def verify_password_reset_recovery_code(
        self, reset_session: PasswordResetSession, user: User, recovery_code: str
    ) -> PasswordResetSession:
        self._require_reset_2fa_step(reset_session, user)
        if not recovery_code:
            raise ValidationError("Please enter your code")
        if not self.reset_two_factor_with_recovery_code(user.id, recovery_code):
            raise AuthenticationError("Invalid recovery code", code="invalid_recovery_code")

        self.password_resets.mark_two_factor_verified(reset_session.id)
        reset_session.two_factor_verified = True
        return reset_session

    def complete_password_reset(self, reset_session: PasswordResetSession, user: User, new_password: str) -> None:
        """
        Set the new password and sign the user out everywhere, including the
        reset session itself.

        Raises:
            AuthorizationError: Gates not passed, or the account email changed
                since the reset started (nothing is committed).
        """
        self.password_resets.require_completable(reset_session, user)
        if not new_password:
            raise ValidationError("Please enter your new password")
        verify_password_strength(new_password)

        self.db.update_password_with_email_verification(
            user.id, reset_session.email, hash_password(new_password)
        )


def create_auth_service(db: AuthDB, challenge_verifier, settings) -> AuthService:
    """
    Wire an AuthService from configuration.

    Args:
        db: Store shared by every manager.
        challenge_verifier: Callable that verifies and consumes a WebAuthn challenge.
        settings: keyward.config.Settings.
    """
    return AuthService(
        db=db,
        credentials=CredentialStore(db),
        sessions=SessionManager(db, session_days=settings.session_days),
        password_resets=PasswordResetSessionManager(db, expires_minutes=settings.password_reset_minutes),
        webauthn=WebAuthnVerifier(settings.rp_id, settings.origin, challenge_verifier),
    )
