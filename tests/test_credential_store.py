"""
Tests for second-factor credential storage.

Covers:
- Derived registration flags
- TOTP replacement and its session cascade
- Passkey / security-key CRUD
- Recovery code rotation and exactly-once consumption
- Rollback of every cascade on a store fault
"""
import threading

import pytest
from sqlalchemy import text

from keyward.auth.models import SessionFlags
from keyward.auth.totp import generate_totp_key
from keyward.database.auth_db import generate_recovery_code, hash_password
from keyward.errors import StoreError


class TestRegistrationFlags:
    """registered_* flags follow credential-table membership."""

    def test_new_user_has_no_second_factor(self, make_user):
        user = make_user()
        assert not user.registered_totp
        assert not user.registered_passkey
        assert not user.registered_security_key
        assert not user.registered_2fa

    def test_flags_track_credentials(self, auth_db, credential_store, session_manager, make_user, es256_authenticator, rs256_authenticator):
        user = make_user()
        session = session_manager.create_session(user.id, SessionFlags())

        credential_store.add_or_replace_totp(session.id, user.id, generate_totp_key())
        credential_store.add_passkey_credential(es256_authenticator.credential(user.id))
        credential_store.add_security_key_credential(rs256_authenticator.credential(user.id))

        user = auth_db.get_user(user.id)
        assert user.registered_totp
        assert user.registered_passkey
        assert user.registered_security_key

        credential_store.delete_totp(user.id)
        credential_store.delete_passkey_credential(user.id, es256_authenticator.credential_id)

        user = auth_db.get_user(user.id)
        assert not user.registered_totp
        assert not user.registered_passkey
        assert user.registered_security_key
        assert user.registered_2fa


class TestTOTPCredential:
    """Test TOTP replacement."""

    def test_add_or_replace_keeps_single_key(self, credential_store, session_manager, make_user):
        user = make_user()
        session = session_manager.create_session(user.id, SessionFlags())
        first, second = generate_totp_key(), generate_totp_key()

        credential_store.add_or_replace_totp(session.id, user.id, first)
        credential_store.add_or_replace_totp(session.id, user.id, second)

        assert credential_store.get_totp_key(user.id) == second

    def test_replacement_signs_out_other_sessions(self, credential_store, session_manager, make_user):
        user = make_user()
        current = session_manager.create_session(user.id, SessionFlags())
        other = session_manager.create_session(user.id, SessionFlags(two_factor_verified=True))

        credential_store.add_or_replace_totp(current.id, user.id, generate_totp_key())

        assert session_manager.get_session(other.id) is None
        assert session_manager.get_session(current.id).two_factor_verified

    def test_replacement_leaves_other_users_alone(self, credential_store, session_manager, make_user):
        alice, bob = make_user(), make_user()
        alice_session = session_manager.create_session(alice.id, SessionFlags())
        bob_session = session_manager.create_session(bob.id, SessionFlags())

        credential_store.add_or_replace_totp(alice_session.id, alice.id, generate_totp_key())

        assert session_manager.get_session(bob_session.id) is not None

    def test_delete_reports_whether_removed(self, credential_store, session_manager, make_user):
        user = make_user()
        session = session_manager.create_session(user.id, SessionFlags())

        assert not credential_store.delete_totp(user.id)
        credential_store.add_or_replace_totp(session.id, user.id, generate_totp_key())
        assert credential_store.delete_totp(user.id)
        assert credential_store.get_totp_key(user.id) is None


class TestWebAuthnCredentials:
    """Test passkey and security-key CRUD."""

    def test_passkey_lookup(self, credential_store, make_user, es256_authenticator):
        user = make_user()
        credential = es256_authenticator.credential(user.id, name="Laptop")
        credential_store.add_passkey_credential(credential)

        assert credential_store.get_passkey_credential(credential.id) == credential
        assert credential_store.get_user_passkey_credentials(user.id) == [credential]
        # Tables are separate
        assert credential_store.get_security_key_credential(credential.id) is None

    def test_security_key_lookup(self, credential_store, make_user, rs256_authenticator):
        user = make_user()
        credential = rs256_authenticator.credential(user.id, name="YubiKey")
        credential_store.add_security_key_credential(credential)

        assert credential_store.get_security_key_credential(credential.id) == credential

    def test_delete_requires_owner(self, credential_store, make_user, es256_authenticator):
        owner, other = make_user(), make_user()
        credential = es256_authenticator.credential(owner.id)
        credential_store.add_passkey_credential(credential)

        assert not credential_store.delete_passkey_credential(other.id, credential.id)
        assert credential_store.delete_passkey_credential(owner.id, credential.id)
        assert credential_store.get_passkey_credential(credential.id) is None


class TestRecoveryCode:
    """Test recovery code rotation and consumption."""

    def test_generated_code_format(self):
        code = generate_recovery_code()
        assert len(code) == 16
        assert code.isalnum() and code.upper() == code

    def test_new_user_has_recovery_code(self, credential_store, make_user):
        user = make_user()
        assert len(credential_store.get_recovery_code(user.id)) == 16

    def test_rotate_replaces_code(self, credential_store, make_user):
        user = make_user()
        old = credential_store.get_recovery_code(user.id)

        new = credential_store.rotate_recovery_code(user.id)

        assert new != old
        assert credential_store.get_recovery_code(user.id) == new
        assert not credential_store.consume_recovery_code(user.id, old)

    def test_wrong_code_changes_nothing(self, auth_db, credential_store, session_manager, make_user):
        user = make_user()
        session = session_manager.create_session(user.id, SessionFlags(two_factor_verified=True))
        credential_store.add_or_replace_totp(session.id, user.id, generate_totp_key())
        code = credential_store.get_recovery_code(user.id)

        assert not credential_store.consume_recovery_code(user.id, "AAAAAAAAAAAAAAAA")

        assert credential_store.get_recovery_code(user.id) == code
        assert auth_db.get_user(user.id).registered_totp
        assert session_manager.get_session(session.id).two_factor_verified

    def test_consume_resets_all_second_factors(
        self, auth_db, credential_store, session_manager, make_user, es256_authenticator, rs256_authenticator
    ):
        user = make_user()
        first = session_manager.create_session(user.id, SessionFlags(two_factor_verified=True))
        credential_store.add_or_replace_totp(first.id, user.id, generate_totp_key())
        # Created after the TOTP cascade so it survives to be checked
        second = session_manager.create_session(user.id, SessionFlags(two_factor_verified=True))
        credential_store.add_passkey_credential(es256_authenticator.credential(user.id))
        credential_store.add_security_key_credential(rs256_authenticator.credential(user.id))
        code = credential_store.get_recovery_code(user.id)

        assert credential_store.consume_recovery_code(user.id, code)

        user = auth_db.get_user(user.id)
        assert not user.registered_2fa
        assert not session_manager.get_session(first.id).two_factor_verified
        assert not session_manager.get_session(second.id).two_factor_verified
        assert credential_store.get_recovery_code(user.id) != code

    def test_code_is_single_use(self, credential_store, make_user):
        user = make_user()
        code = credential_store.get_recovery_code(user.id)

        assert credential_store.consume_recovery_code(user.id, code)
        assert not credential_store.consume_recovery_code(user.id, code)

    def test_code_bound_to_user(self, credential_store, make_user):
        alice, bob = make_user(), make_user()
        alice_code = credential_store.get_recovery_code(alice.id)

        assert not credential_store.consume_recovery_code(bob.id, alice_code)
        assert credential_store.consume_recovery_code(alice.id, alice_code)

    def test_concurrent_consumption_succeeds_once(self, credential_store, make_user):
        user = make_user()
        code = credential_store.get_recovery_code(user.id)
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        errors = []
        lock = threading.Lock()

        def consume():
            barrier.wait()
            try:
                ok = credential_store.consume_recovery_code(user.id, code)
            except Exception as e:  # surfaced below
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=consume) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert results.count(True) == 1
        assert results.count(False) == workers - 1

    def test_unknown_user(self, credential_store):
        with pytest.raises(ValueError):
            credential_store.get_recovery_code(999)


# ============================================
# Store Faults
# ============================================

@pytest.fixture
def inject_fault(auth_db):
    """
    Install a SQLite trigger that aborts the given statement kind on a table.
    Returns a function taking ("UPDATE" | "DELETE" | "INSERT", table).
    """
    installed = []

    def _inject(action, table):
        name = f"fail_{action.lower()}_{table}"
        with auth_db.get_session() as session:
            session.execute(text(
                f"CREATE TRIGGER {name} BEFORE {action} ON {table} "
                f"BEGIN SELECT RAISE(ABORT, 'injected store fault'); END"
            ))
        installed.append(name)

    yield _inject

    with auth_db.get_session() as session:
        for name in installed:
            session.execute(text(f"DROP TRIGGER IF EXISTS {name}"))


class TestCascadeRollback:
    """A store fault part-way through a cascade commits none of it."""

    def test_totp_replacement_rolls_back(self, auth_db, credential_store, session_manager, make_user, inject_fault):
        user = make_user()
        acting = session_manager.create_session(user.id, SessionFlags())
        old_key = generate_totp_key()
        credential_store.add_or_replace_totp(acting.id, user.id, old_key)
        other = session_manager.create_session(user.id, SessionFlags())
        # The last statement of the cascade fails
        inject_fault("UPDATE", "sessions")

        with pytest.raises(StoreError):
            credential_store.add_or_replace_totp(acting.id, user.id, generate_totp_key())

        assert credential_store.get_totp_key(user.id) == old_key
        assert session_manager.get_session(other.id) is not None

    def test_recovery_code_consumption_rolls_back(
        self, auth_db, credential_store, session_manager, make_user, es256_authenticator, inject_fault
    ):
        user = make_user()
        session = session_manager.create_session(user.id, SessionFlags(two_factor_verified=True))
        key = generate_totp_key()
        credential_store.add_or_replace_totp(session.id, user.id, key)
        credential_store.add_passkey_credential(es256_authenticator.credential(user.id))
        code = credential_store.get_recovery_code(user.id)
        inject_fault("UPDATE", "sessions")

        with pytest.raises(StoreError):
            credential_store.consume_recovery_code(user.id, code)

        user = auth_db.get_user(user.id)
        assert user.registered_totp
        assert user.registered_passkey
        assert credential_store.get_totp_key(user.id) == key
        assert credential_store.get_recovery_code(user.id) == code
        assert session_manager.get_session(session.id).two_factor_verified

    def test_code_still_usable_after_failed_consumption(self, auth_db, credential_store, session_manager, make_user, inject_fault):
        user = make_user()
        session_manager.create_session(user.id, SessionFlags(two_factor_verified=True))
        code = credential_store.get_recovery_code(user.id)
        inject_fault("UPDATE", "sessions")

        with pytest.raises(StoreError):
            credential_store.consume_recovery_code(user.id, code)

        with auth_db.get_session() as session:
            session.execute(text("DROP TRIGGER fail_update_sessions"))
        assert credential_store.consume_recovery_code(user.id, code)

    def test_password_update_rolls_back(self, auth_db, session_manager, make_user, inject_fault):
        user = make_user()
        acting = session_manager.create_session(user.id, SessionFlags())
        other = session_manager.create_session(user.id, SessionFlags())
        old_hash = auth_db.get_user_password_hash(user.id)
        inject_fault("DELETE", "sessions")

        with pytest.raises(StoreError):
            auth_db.update_password(acting.id, user.id, hash_password("a brand new password"))

        assert auth_db.get_user_password_hash(user.id) == old_hash
        assert session_manager.get_session(other.id) is not None

    def test_password_reset_completion_rolls_back(self, auth_db, session_manager, reset_manager, make_user, inject_fault):
        user = make_user(email="alice@example.com")
        session = session_manager.create_session(user.id, SessionFlags())
        reset_session = reset_manager.create_session(user.id, user.email)
        old_hash = auth_db.get_user_password_hash(user.id)
        inject_fault("DELETE", "password_reset_sessions")

        with pytest.raises(StoreError):
            auth_db.update_password_with_email_verification(
                user.id, user.email, hash_password("a brand new password")
            )

        assert auth_db.get_user_password_hash(user.id) == old_hash
        assert session_manager.get_session(session.id) is not None
        assert reset_manager.validate(reset_session.id) is not None
