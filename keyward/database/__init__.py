"""
Database access for KEYWARD.

This package provides:
- auth_db: connection management, users and password cascades
- credential_store: TOTP, passkey, security-key credentials and recovery codes
- session_store: login sessions
- password_reset_store: password-reset sessions
"""
