"""
TOTP (Time-based One-Time Password) utilities for KEYWARD.

Implements RFC 6238 codes over a raw 20-byte shared key, compatible with
Google Authenticator, Authy and other TOTP apps.

Verification is a pure function: no state, no I/O, and bad input yields
False rather than an exception.
"""
import base64
import binascii
import io
import secrets
from datetime import datetime
from typing import Optional, Union

import pyotp
import qrcode

from ..config import get_settings

TOTP_KEY_BYTES = 20
TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def generate_totp_key() -> bytes:
    """
    Generate a new TOTP key for enrollment.

    Returns:
        20 random bytes.
    """
    return secrets.token_bytes(TOTP_KEY_BYTES)


def encode_totp_key(key: bytes) -> str:
    """Encode a key for transport (standard base64, 28 characters for 20 bytes)."""
    return base64.b64encode(key).decode("ascii")


def decode_totp_key(encoded_key: str) -> Optional[bytes]:
    """
    Decode a transported key.

    Returns:
        The 20-byte key, or None if the encoding or length is wrong.
    """
    if len(encoded_key) != 28:
        return None
    try:
        key = base64.b64decode(encoded_key, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(key) != TOTP_KEY_BYTES:
        return None
    return key


def _totp(key: bytes, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS) -> pyotp.TOTP:
    secret = base64.b32encode(key).decode("ascii")
    return pyotp.TOTP(secret, digits=digits, interval=interval)


def verify_totp(
    key: bytes,
    code: str,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
    window: Optional[int] = None,
    for_time: Optional[Union[int, datetime]] = None,
) -> bool:
    """
    Verify a TOTP code against the key.

    Args:
        key: 20-byte shared key.
        code: Code entered by the user.
        interval: Step size in seconds.
        digits: Code length.
        window: Steps accepted on either side of the current step.
                Defaults to the configured KEYWARD_TOTP_WINDOW.
        for_time: Time to verify at (defaults to now).

    Returns:
        True if code is valid, False otherwise.
    """
    if not key or len(key) != TOTP_KEY_BYTES or not code:
        return False

    code = "".join(code.split())
    if len(code) != digits or not (code.isascii() and code.isdigit()):
        return False

    if window is None:
        window = get_settings().totp_window

    return _totp(key, interval, digits).verify(code, for_time=for_time, valid_window=window)


def get_current_totp(key: bytes, for_time: Optional[Union[int, datetime]] = None) -> str:
    """
    Get the TOTP code for a point in time (for testing/debugging).
    """
    totp = _totp(key)
    if for_time is None:
        return totp.now()
    return totp.at(for_time)


def get_totp_provisioning_uri(key: bytes, account: str, issuer: str = "KEYWARD") -> str:
    """
    Generate a provisioning URI for TOTP apps.

    This URI can be encoded as a QR code for easy scanning.

    Returns:
        otpauth:// URI string.
    """
    return _totp(key).provisioning_uri(name=account, issuer_name=issuer)


def generate_qr_code(uri: str) -> bytes:
    """
    Generate a QR code PNG for the provisioning URI.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)
    return buffer.read()


def generate_qr_code_base64(uri: str) -> str:
    """
    Generate a base64-encoded QR code for embedding in HTML.

    Returns:
        Base64-encoded PNG image string (data URI ready).
    """
    png_bytes = generate_qr_code(uri)
    b64 = base64.b64encode(png_bytes).decode('utf-8')
    return f"data:image/png;base64,{b64}"
