"""
Domain records shared by the stores, verifiers and the auth service.
"""
import enum
from dataclasses import dataclass
from typing import Optional


@dataclass
class User:
    """
    Account as seen by the authentication core.

    The ``registered_*`` flags are derived from credential-table membership at
    read time; they are never stored on the user row.
    """
    id: int
    email: str
    username: str
    email_verified: bool
    created_at: int
    registered_totp: bool = False
    registered_passkey: bool = False
    registered_security_key: bool = False

    @property
    def registered_2fa(self) -> bool:
        return self.registered_totp or self.registered_passkey or self.registered_security_key


@dataclass(frozen=True)
class SessionFlags:
    two_factor_verified: bool = False


@dataclass
class Session:
    id: str
    user_id: int
    created_at: int
    expires_at: int
    two_factor_verified: bool = False


@dataclass
class PasswordResetSession:
    id: str
    user_id: int
    email: str
    code: str
    expires_at: int
    email_verified: bool = False
    two_factor_verified: bool = False


@dataclass(frozen=True)
class WebAuthnCredential:
    """Passkey or security-key public key registered for a user."""
    id: bytes
    user_id: int
    name: str
    algorithm_id: int
    public_key: bytes


@dataclass(frozen=True)
class AssertionPayload:
    """Base64-encoded fields of a WebAuthn authentication assertion."""
    authenticator_data: str
    client_data_json: str
    credential_id: str
    signature: str


@dataclass(frozen=True)
class AssertionResult:
    user_id: int
    credential_id: bytes
    # A verified passkey/security-key assertion satisfies the second factor.
    two_factor_verified: bool = True


class TwoFactorModality(str, enum.Enum):
    PASSKEY = "passkey"
    SECURITY_KEY = "security_key"
    TOTP = "totp"


class ResetGateOutcome(str, enum.Enum):
    ALREADY_VERIFIED = "already_verified"
    NO_TWO_FACTOR = "no_two_factor"
    STEP_REQUIRED = "step_required"


@dataclass(frozen=True)
class ResetGateDecision:
    outcome: ResetGateOutcome
    modality: Optional[TwoFactorModality] = None


def preferred_modality(user: User) -> Optional[TwoFactorModality]:
    """Second factor a user should be sent to, strongest first."""
    if user.registered_passkey:
        return TwoFactorModality.PASSKEY
    if user.registered_security_key:
        return TwoFactorModality.SECURITY_KEY
    if user.registered_totp:
        return TwoFactorModality.TOTP
    return None
