"""
WebAuthn authentication assertion verification.

Validates the four base64 fields an authenticator returns for
``navigator.credentials.get()``: authenticator data, client data JSON,
credential id and signature. Every check is a hard rejection; the error class
tells callers which check failed:

- ValidationError: undecodable or structurally malformed input
- AssertionMismatchError: wrong relying party, flags, type, challenge or origin
- UnknownCredentialError: no stored credential with this id
- InvalidSignatureError: signature does not verify
- UnsupportedCredentialError: stored credential uses an algorithm we do not
  implement (a server-side defect, not a client error)
"""
import base64
import binascii
import enum
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import load_der_public_key

from .models import AssertionPayload, AssertionResult, WebAuthnCredential
from ..errors import (
    AssertionMismatchError,
    InvalidSignatureError,
    UnknownCredentialError,
    UnsupportedCredentialError,
    ValidationError,
)

logger = logging.getLogger(__name__)

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
CLIENT_DATA_TYPE_GET = "webauthn.get"

CredentialLookup = Callable[[bytes], Optional[WebAuthnCredential]]
ChallengeVerifier = Callable[[bytes], bool]


class CoseAlgorithm(enum.IntEnum):
    """COSE algorithm identifiers accepted for assertion signatures."""
    ES256 = -7
    RS256 = -257


@dataclass(frozen=True)
class AuthenticatorData:
    relying_party_id_hash: bytes
    flags: int
    sign_count: int

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)

    def verify_relying_party_id_hash(self, rp_id: str) -> bool:
        return self.relying_party_id_hash == hashlib.sha256(rp_id.encode("utf-8")).digest()


@dataclass(frozen=True)
class ClientData:
    type: str
    challenge: bytes
    origin: str
    cross_origin: bool


def _decode_base64(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise ValidationError(f"Invalid base64 in {field}", code="malformed_input")


def _decode_base64url(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    """Parse the fixed 37-byte prefix of authenticator data."""
    if len(data) < 37:
        raise ValidationError("Authenticator data too short", code="malformed_input")
    return AuthenticatorData(
        relying_party_id_hash=data[:32],
        flags=data[32],
        sign_count=int.from_bytes(data[33:37], "big"),
    )


def parse_client_data_json(data: bytes) -> ClientData:
    """Parse the collected client data the browser signed over."""
    try:
        parsed = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError):
        raise ValidationError("Invalid client data JSON", code="malformed_input")

    if not isinstance(parsed, dict):
        raise ValidationError("Invalid client data JSON", code="malformed_input")

    client_type = parsed.get("type")
    encoded_challenge = parsed.get("challenge")
    origin = parsed.get("origin")
    cross_origin = parsed.get("crossOrigin", False)
    if (
        not isinstance(client_type, str)
        or not isinstance(encoded_challenge, str)
        or not isinstance(origin, str)
        or not isinstance(cross_origin, (bool, type(None)))
    ):
        raise ValidationError("Missing client data fields", code="malformed_input")

    try:
        challenge = _decode_base64url(encoded_challenge)
    except (binascii.Error, ValueError):
        raise ValidationError("Invalid challenge encoding", code="malformed_input")

    return ClientData(
        type=client_type,
        challenge=challenge,
        origin=origin,
        cross_origin=bool(cross_origin),
    )


def create_assertion_signature_message(authenticator_data: bytes, client_data_json: bytes) -> bytes:
    """Bytes the authenticator signs: authenticator data || SHA-256(client data)."""
    return authenticator_data + hashlib.sha256(client_data_json).digest()


def verify_assertion_signature(credential: WebAuthnCredential, message: bytes, signature: bytes) -> bool:
    """
    Verify ``signature`` over ``message`` (hashed with SHA-256) with the
    credential's stored public key.

    Raises:
        UnsupportedCredentialError: Unknown algorithm id or undecodable key.
    """
    try:
        algorithm = CoseAlgorithm(credential.algorithm_id)
    except ValueError:
        raise UnsupportedCredentialError(
            f"Unsupported COSE algorithm {credential.algorithm_id}"
        )

    if algorithm is CoseAlgorithm.ES256:
        try:
            public_key = ec.EllipticCurvePublicKey.from_encoded_point(
                ec.SECP256R1(), credential.public_key
            )
        except ValueError:
            raise UnsupportedCredentialError("Stored ES256 key is not a SEC1 P-256 point")
        try:
            public_key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
        except (InvalidSignature, ValueError):
            return False
        return True

    elif algorithm is CoseAlgorithm.RS256:
        try:
            public_key = load_der_public_key(credential.public_key)
        except (ValueError, UnsupportedAlgorithm):
            raise UnsupportedCredentialError("Stored RS256 key is not a DER RSA key")
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise UnsupportedCredentialError("Stored RS256 key is not an RSA key")
        try:
            public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
        except (InvalidSignature, ValueError):
            return False
        return True

    raise UnsupportedCredentialError(f"Unsupported COSE algorithm {credential.algorithm_id}")


class WebAuthnVerifier:
    """
    Verifier bound to one relying party.

    Example usage:
        verifier = WebAuthnVerifier("example.com", "https://example.com",
                                    challenge_store.verify_and_consume)
        result = verifier.verify_assertion(payload, credential_store.get_passkey_credential)
    """

    def __init__(self, rp_id: str, origin: str, challenge_verifier: ChallengeVerifier):
        self.rp_id = rp_id
        self.origin = origin
        self.challenge_verifier = challenge_verifier

    def verify_assertion(
        self,
        assertion: AssertionPayload,
        lookup_credential: CredentialLookup,
    ) -> AssertionResult:
        """
        Run the full verification pipeline.

        Args:
            assertion: Base64 fields from the client.
            lookup_credential: Returns the stored credential for an id, or None.

        Returns:
            Owning user id and credential id.
        """
        authenticator_data_bytes = _decode_base64(assertion.authenticator_data, "authenticator_data")
        client_data_json = _decode_base64(assertion.client_data_json, "client_data_json")
        credential_id = _decode_base64(assertion.credential_id, "credential_id")
        signature = _decode_base64(assertion.signature, "signature")

        authenticator_data = parse_authenticator_data(authenticator_data_bytes)
        if not authenticator_data.verify_relying_party_id_hash(self.rp_id):
            raise AssertionMismatchError("Relying party id hash mismatch")
        if not authenticator_data.user_present or not authenticator_data.user_verified:
            raise AssertionMismatchError("User presence and verification are required")

        client_data = parse_client_data_json(client_data_json)
        if client_data.type != CLIENT_DATA_TYPE_GET:
            raise AssertionMismatchError("Client data is not an assertion")
        if not self.challenge_verifier(client_data.challenge):
            raise AssertionMismatchError("Unknown, expired or used challenge")
        if client_data.origin != self.origin:
            raise AssertionMismatchError("Origin mismatch")
        if client_data.cross_origin:
            raise AssertionMismatchError("Cross-origin assertions are not accepted")

        credential = lookup_credential(credential_id)
        if credential is None:
            logger.warning("Assertion for unknown credential")
            raise UnknownCredentialError("Invalid credential")

        message = create_assertion_signature_message(authenticator_data_bytes, client_data_json)
        if not verify_assertion_signature(credential, message, signature):
            logger.warning(f"Invalid assertion signature for user {credential.user_id}")
            raise InvalidSignatureError("Invalid signature")

        return AssertionResult(user_id=credential.user_id, credential_id=credential.id)
