"""
Pydantic Models for KEYWARD API.

Request and response models for all API endpoints.
"""
from datetime import datetime
from typing import Optional, Dict

from pydantic import BaseModel, EmailStr, Field, ConfigDict

from ..auth.models import AssertionPayload, ResetGateOutcome, TwoFactorModality


# ============================================
# Authentication Models
# ============================================

class UserLogin(BaseModel):
    """
    Password login request.

    A password login yields a session that still needs a second factor when
    the account has one registered.
    """
    email: EmailStr = Field(..., description="Registered email address")
    password: str = Field(..., description="Account password")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "user@example.com",
                "password": "securepassword123"
            }
        }
    )


class SessionResponse(BaseModel):
    """Session token response."""
    access_token: str
    token_type: str = "bearer"
    expires_at: int = Field(..., description="Expiry as Unix seconds")
    user_id: int
    two_factor_verified: bool
    two_factor_required: bool = Field(
        False, description="True if the session must pass a second factor before sensitive actions"
    )


class WebAuthnAssertion(BaseModel):
    """
    WebAuthn authentication assertion.

    All fields are standard base64 as returned by navigator.credentials.get().
    """
    authenticator_data: str
    client_data_json: str
    credential_id: str
    signature: str

    def to_payload(self) -> AssertionPayload:
        return AssertionPayload(
            authenticator_data=self.authenticator_data,
            client_data_json=self.client_data_json,
            credential_id=self.credential_id,
            signature=self.signature,
        )


class ChallengeResponse(BaseModel):
    """Freshly issued WebAuthn challenge (base64url, no padding)."""
    challenge: str


class TOTPCodeRequest(BaseModel):
    code: str = Field(..., max_length=16)


class RecoveryCodeRequest(BaseModel):
    recovery_code: str = Field(..., max_length=64)


# ============================================
# Account Models
# ============================================

class TOTPSetupResponse(BaseModel):
    """Fresh TOTP key with QR code for enrollment."""
    encoded_key: str = Field(..., description="Standard base64 of the 20-byte key")
    provisioning_uri: str
    qr_code_base64: str


class TOTPRegisterRequest(BaseModel):
    """Key from /user/totp/setup together with a code generated from it."""
    encoded_key: str
    code: str = Field(..., max_length=16)


class RecoveryCodeResponse(BaseModel):
    recovery_code: str


class WebAuthnCredentialResponse(BaseModel):
    """Registered passkey or security key. The id is base64url without padding."""
    credential_id: str
    name: str
    algorithm_id: int


class PasswordChangeRequest(BaseModel):
    """
    Password change request.

    Requires current password verification. All other sessions
    are invalidated after successful password change.
    """
    current_password: str = Field(..., description="Current account password")
    new_password: str = Field(..., description="New password (at least 8 characters, at most 72 bytes)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "current_password": "oldpassword123",
                "new_password": "newsecurepassword456"
            }
        }
    )


# ============================================
# Password Reset Models
# ============================================

class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetResponse(BaseModel):
    """
    Reset session token. The emailed code is never part of the response.
    """
    reset_token: str
    expires_at: int


class PasswordResetEmailRequest(BaseModel):
    code: str = Field(..., max_length=16)


class PasswordResetGateResponse(BaseModel):
    outcome: ResetGateOutcome
    modality: Optional[TwoFactorModality] = None


class PasswordResetCompleteRequest(BaseModel):
    new_password: str


class MessageResponse(BaseModel):
    message: str


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


class ErrorResponse(BaseModel):
    """
    Standard error response.

    All API errors return this format with an error message,
    optional detail, and error code for programmatic handling.
    """
    error: str = Field(..., description="Error type/summary")
    detail: Optional[str] = Field(None, description="Detailed error message")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Unauthorized",
                "detail": "Two-factor verification required",
                "code": "two_factor_required"
            }
        }
    )
