"""
Tests for password-reset sessions and password cascades.

Covers:
- Reset session creation, validation and expiry
- Email code verification
- The 2FA gate and completion preconditions
- Password update cascades in AuthDB
"""
import pytest
from sqlalchemy import text

from keyward.auth.models import (
    ResetGateOutcome,
    SessionFlags,
    TwoFactorModality,
)
from keyward.auth.totp import generate_totp_key
from keyward.database.auth_db import hash_password, now_timestamp, verify_password
from keyward.errors import AuthorizationError


class TestResetSessions:
    """Test reset session lifecycle."""

    def test_create_and_validate(self, reset_manager, make_user):
        user = make_user(email="alice@example.com")

        reset_session = reset_manager.create_session(user.id, user.email)
        validated, validated_user = reset_manager.validate(reset_session.id)

        assert validated.email == "alice@example.com"
        assert len(validated.code) == 8
        assert not validated.email_verified
        assert not validated.two_factor_verified
        assert validated_user.id == user.id

    def test_new_reset_replaces_previous(self, reset_manager, make_user):
        user = make_user()
        first = reset_manager.create_session(user.id, user.email)
        second = reset_manager.create_session(user.id, user.email)

        assert reset_manager.validate(first.id) is None
        assert reset_manager.validate(second.id) is not None

    def test_expired_reset_session(self, auth_db, reset_manager, make_user):
        user = make_user()
        reset_session = reset_manager.create_session(user.id, user.email)
        with auth_db.get_session() as session:
            session.execute(
                text("UPDATE password_reset_sessions SET expires_at = :t WHERE id = :id"),
                {"t": now_timestamp() - 1, "id": reset_session.id}
            )

        assert reset_manager.validate(reset_session.id) is None

    def test_verify_email(self, reset_manager, make_user):
        user = make_user()
        reset_session = reset_manager.create_session(user.id, user.email)

        assert not reset_manager.verify_email(reset_session.id, "WRONGCOD")
        assert reset_manager.verify_email(reset_session.id, f" {reset_session.code.lower()} ")

        validated, _ = reset_manager.validate(reset_session.id)
        assert validated.email_verified


class TestTwoFactorGate:
    """Test gate decisions."""

    def test_no_second_factor(self, reset_manager, make_user):
        user = make_user()
        reset_session = reset_manager.create_session(user.id, user.email)

        decision = reset_manager.two_factor_gate(reset_session, user)

        assert decision.outcome is ResetGateOutcome.NO_TWO_FACTOR

    def test_already_verified(self, reset_manager, make_user):
        user = make_user()
        reset_session = reset_manager.create_session(user.id, user.email)
        reset_session.two_factor_verified = True

        decision = reset_manager.two_factor_gate(reset_session, user)

        assert decision.outcome is ResetGateOutcome.ALREADY_VERIFIED

    def test_modality_preference(self, auth_db, reset_manager, credential_store, session_manager, make_user, es256_authenticator):
        user = make_user()
        session = session_manager.create_session(user.id, SessionFlags())
        credential_store.add_or_replace_totp(session.id, user.id, generate_totp_key())
        reset_session = reset_manager.create_session(user.id, user.email)

        decision = reset_manager.two_factor_gate(reset_session, auth_db.get_user(user.id))
        assert decision.outcome is ResetGateOutcome.STEP_REQUIRED
        assert decision.modality is TwoFactorModality.TOTP

        credential_store.add_passkey_credential(es256_authenticator.credential(user.id))
        decision = reset_manager.two_factor_gate(reset_session, auth_db.get_user(user.id))
        assert decision.modality is TwoFactorModality.PASSKEY

    def test_completion_requires_email_verification(self, reset_manager, make_user):
        user = make_user()
        reset_session = reset_manager.create_session(user.id, user.email)

        with pytest.raises(AuthorizationError) as exc_info:
            reset_manager.require_completable(reset_session, user)
        assert exc_info.value.code == "email_unverified"

    def test_completion_requires_second_factor(self, auth_db, reset_manager, credential_store, make_user, es256_authenticator):
        user = make_user()
        credential_store.add_passkey_credential(es256_authenticator.credential(user.id))
        reset_session = reset_manager.create_session(user.id, user.email)
        reset_session.email_verified = True

        with pytest.raises(AuthorizationError) as exc_info:
            reset_manager.require_completable(reset_session, auth_db.get_user(user.id))
        assert exc_info.value.code == "two_factor_required"


class TestPasswordCascades:
    """Test AuthDB password updates."""

    def test_update_password_keeps_current_session(self, auth_db, session_manager, make_user):
        user = make_user()
        current = session_manager.create_session(user.id, SessionFlags())
        other = session_manager.create_session(user.id, SessionFlags())

        removed = auth_db.update_password(current.id, user.id, hash_password("new password 1"))

        assert removed == 1
        assert session_manager.get_session(current.id) is not None
        assert session_manager.get_session(other.id) is None
        assert verify_password("new password 1", auth_db.get_user_password_hash(user.id))

    def test_update_with_matching_email_logs_out_everywhere(self, auth_db, session_manager, reset_manager, make_user):
        user = make_user(email="alice@example.com")
        session = session_manager.create_session(user.id, SessionFlags())
        reset_session = reset_manager.create_session(user.id, user.email)

        auth_db.update_password_with_email_verification(user.id, "alice@example.com", hash_password("new password 1"))

        assert session_manager.get_session(session.id) is None
        assert reset_manager.validate(reset_session.id) is None
        assert verify_password("new password 1", auth_db.get_user_password_hash(user.id))

    def test_update_with_changed_email_commits_nothing(self, auth_db, session_manager, make_user):
        user = make_user(email="alice@example.com")
        session = session_manager.create_session(user.id, SessionFlags())
        old_hash = auth_db.get_user_password_hash(user.id)

        with pytest.raises(AuthorizationError):
            auth_db.update_password_with_email_verification(user.id, "mallory@example.com", hash_password("x" * 10))

        assert auth_db.get_user_password_hash(user.id) == old_hash
        assert session_manager.get_session(session.id) is not None
