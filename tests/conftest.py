"""
Pytest configuration and shared fixtures for KEYWARD tests.

This module provides common test fixtures for:
- A schema-initialized SQLite file database
- Stores, managers and the AuthService wired to it
- A software WebAuthn authenticator that signs ES256/RS256 assertions
"""
import os

# Cheap hashing and one step of TOTP skew so tests do not race the 30 s boundary.
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("KEYWARD_TOTP_WINDOW", "1")

import base64
import hashlib
import json
import secrets

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from keyward.auth.challenges import ChallengeStore
from keyward.auth.models import AssertionPayload, WebAuthnCredential
from keyward.auth.service import AuthService
from keyward.auth.webauthn import (
    CLIENT_DATA_TYPE_GET,
    FLAG_USER_PRESENT,
    FLAG_USER_VERIFIED,
    CoseAlgorithm,
    WebAuthnVerifier,
)
from keyward.database.auth_db import AuthDB, hash_password
from keyward.database.credential_store import CredentialStore
from keyward.database.password_reset_store import PasswordResetSessionManager
from keyward.database.session_store import SessionManager

RP_ID = "localhost"
ORIGIN = "http://localhost:4321"
DEFAULT_PASSWORD = "correct horse battery"


# ============================================
# Database Fixtures
# ============================================

@pytest.fixture
def auth_db(tmp_path):
    """
    Schema-initialized SQLite database in a temporary file.
    A file (not :memory:) so that every pooled connection sees the same data.
    """
    db = AuthDB(f"sqlite:///{tmp_path / 'keyward.db'}")
    db.init_schema()
    yield db
    db.engine.dispose()


@pytest.fixture
def credential_store(auth_db):
    return CredentialStore(auth_db)


@pytest.fixture
def session_manager(auth_db):
    return SessionManager(auth_db, session_days=30)


@pytest.fixture
def reset_manager(auth_db):
    return PasswordResetSessionManager(auth_db, expires_minutes=10)


@pytest.fixture
def make_user(auth_db):
    """
    Factory creating users. Verified email by default.
    """
    counter = {"n": 0}

    def _make_user(email=None, password=DEFAULT_PASSWORD, email_verified=True):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        user = auth_db.create_user(email, f"user{counter['n']}", hash_password(password))
        if email_verified:
            auth_db.verify_user_email(user.id, email)
        return auth_db.get_user(user.id)

    return _make_user


# ============================================
# WebAuthn Fixtures
# ============================================

class WebAuthnTestAuthenticator:
    """
    Software authenticator holding one key pair.

    Produces assertions the way a browser + authenticator would, with knobs
    for every field the verifier checks.
    """

    def __init__(self, algorithm: CoseAlgorithm = CoseAlgorithm.ES256):
        self.algorithm = algorithm
        self.credential_id = secrets.token_bytes(16)
        if algorithm is CoseAlgorithm.ES256:
            self.private_key = ec.generate_private_key(ec.SECP256R1())
            self.public_key = self.private_key.public_key().public_bytes(
                Encoding.X962, PublicFormat.UncompressedPoint
            )
        else:
            self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            self.public_key = self.private_key.public_key().public_bytes(
                Encoding.DER, PublicFormat.PKCS1
            )

    def credential(self, user_id: int, name: str = "Test key") -> WebAuthnCredential:
        return WebAuthnCredential(
            id=self.credential_id,
            user_id=user_id,
            name=name,
            algorithm_id=int(self.algorithm),
            public_key=self.public_key,
        )

    def sign(self, message: bytes) -> bytes:
        if self.algorithm is CoseAlgorithm.ES256:
            return self.private_key.sign(message, ec.ECDSA(hashes.SHA256()))
        return self.private_key.sign(message, padding.PKCS1v15(), hashes.SHA256())

    def assert_challenge(
        self,
        challenge: bytes,
        *,
        rp_id: str = RP_ID,
        origin: str = ORIGIN,
        client_type: str = CLIENT_DATA_TYPE_GET,
        flags: int = FLAG_USER_PRESENT | FLAG_USER_VERIFIED,
        cross_origin: bool = False,
        credential_id: bytes = None,
    ) -> AssertionPayload:
        authenticator_data = (
            hashlib.sha256(rp_id.encode("utf-8")).digest()
            + bytes([flags])
            + (1).to_bytes(4, "big")
        )
        client_data_json = json.dumps({
            "type": client_type,
            "challenge": base64.urlsafe_b64encode(challenge).decode("ascii").rstrip("="),
            "origin": origin,
            "crossOrigin": cross_origin,
        }).encode("utf-8")
        signature = self.sign(authenticator_data + hashlib.sha256(client_data_json).digest())

        return AssertionPayload(
            authenticator_data=base64.b64encode(authenticator_data).decode("ascii"),
            client_data_json=base64.b64encode(client_data_json).decode("ascii"),
            credential_id=base64.b64encode(credential_id or self.credential_id).decode("ascii"),
            signature=base64.b64encode(signature).decode("ascii"),
        )


@pytest.fixture
def es256_authenticator():
    return WebAuthnTestAuthenticator(CoseAlgorithm.ES256)


@pytest.fixture
def rs256_authenticator():
    return WebAuthnTestAuthenticator(CoseAlgorithm.RS256)


@pytest.fixture
def challenge_store():
    """In-memory challenge store (no Redis)."""
    return ChallengeStore(None, ttl_seconds=300)


@pytest.fixture
def verifier(challenge_store):
    return WebAuthnVerifier(RP_ID, ORIGIN, challenge_store.verify_and_consume)


# ============================================
# Service Fixtures
# ============================================

@pytest.fixture
def service(auth_db, credential_store, session_manager, reset_manager, verifier):
    return AuthService(
        db=auth_db,
        credentials=credential_store,
        sessions=session_manager,
        password_resets=reset_manager,
        webauthn=verifier,
    )
