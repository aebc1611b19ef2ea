"""
Error taxonomy for KEYWARD.

Every rejection raised by the core carries a stable ``code`` so the HTTP layer
can map it to a response without inspecting messages. Server-side faults
(StoreError, UnsupportedCredentialError) are reported to clients generically.
"""
from typing import Optional


class KeywardError(Exception):
    """Base class for all errors raised by the authentication core."""

    code = "error"
    status_code = 400
    expose_detail = True

    def __init__(self, detail: Optional[str] = None, code: Optional[str] = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        if code is not None:
            self.code = code


class ValidationError(KeywardError):
    """Malformed or missing input. The caller may retry with corrected input."""

    code = "invalid_input"


class AuthenticationError(KeywardError):
    """Wrong credential, code or signature."""

    code = "authentication_failed"


class AssertionMismatchError(AuthenticationError):
    """WebAuthn assertion does not match the relying party, challenge or origin."""

    code = "invalid_assertion"


class UnknownCredentialError(AuthenticationError):
    """No stored credential matches the presented credential id."""

    code = "unknown_credential"


class InvalidSignatureError(AuthenticationError):
    """Assertion signature does not verify against the stored public key."""

    code = "invalid_signature"


class AuthorizationError(KeywardError):
    """Missing session, unverified email or insufficient two-factor state."""

    code = "unauthorized"
    status_code = 401


class RateLimitedError(KeywardError):
    """Too many attempts for this principal."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, detail: Optional[str] = None, retry_after: int = 60):
        super().__init__(detail or "Too many requests")
        self.retry_after = retry_after


class UnsupportedCredentialError(KeywardError):
    """A stored credential uses an algorithm or key encoding we cannot verify."""

    code = "unsupported_credential"
    status_code = 500
    expose_detail = False


class StoreError(KeywardError):
    """Storage or transaction fault. The transaction has been rolled back."""

    code = "store_error"
    status_code = 500
    expose_detail = False
