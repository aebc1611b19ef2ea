"""
KEYWARD - Authentication and multi-factor security core.

This package provides session management, second-factor credentials
(TOTP, WebAuthn passkeys and security keys, recovery codes), password
changes and password-reset flows for a user account service.
"""

__version__ = "0.1.0"
__author__ = "KEYWARD Team"
