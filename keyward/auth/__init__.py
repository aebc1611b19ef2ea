"""
Authentication and second-factor verification for KEYWARD.

This package provides:
- TOTP verification and enrollment helpers
- WebAuthn assertion verification and challenge storage
- Per-principal rate limiting
- The AuthService orchestrator (keyward.auth.service)
"""
from .totp import (
    generate_totp_key,
    encode_totp_key,
    decode_totp_key,
    verify_totp,
    get_totp_provisioning_uri,
    generate_qr_code_base64,
)
from .webauthn import CoseAlgorithm, WebAuthnVerifier
from .challenges import ChallengeStore
from .rate_limit import ExpiringTokenBucket, RefillingTokenBucket

__all__ = [
    "generate_totp_key",
    "encode_totp_key",
    "decode_totp_key",
    "verify_totp",
    "get_totp_provisioning_uri",
    "generate_qr_code_base64",
    "CoseAlgorithm",
    "WebAuthnVerifier",
    "ChallengeStore",
    "ExpiringTokenBucket",
    "RefillingTokenBucket",
]
