"""
Tests for TOTP helpers.

Covers:
- Key generation and transport encoding
- Code verification at fixed points in time, including step rollover
- Rejection of malformed codes and keys without raising
- Provisioning URI and QR code
"""
import base64

import pyotp
import pytest

from keyward.auth.totp import (
    TOTP_KEY_BYTES,
    decode_totp_key,
    encode_totp_key,
    generate_qr_code_base64,
    generate_totp_key,
    get_current_totp,
    get_totp_provisioning_uri,
    verify_totp,
)

# RFC 6238 appendix B SHA-1 seed.
RFC_KEY = b"12345678901234567890"


class TestKeyEncoding:
    """Test TOTP key generation and transport encoding."""

    def test_generated_key_length(self):
        assert len(generate_totp_key()) == TOTP_KEY_BYTES

    def test_generated_keys_differ(self):
        assert generate_totp_key() != generate_totp_key()

    def test_encoded_key_is_28_characters(self):
        encoded = encode_totp_key(generate_totp_key())
        assert len(encoded) == 28

    def test_decode_restores_key(self):
        key = generate_totp_key()
        assert decode_totp_key(encode_totp_key(key)) == key

    @pytest.mark.parametrize("encoded", [
        "",
        "short",
        base64.b64encode(b"x" * 19).decode(),
        base64.b64encode(b"x" * 21).decode(),
        "!" * 28,
    ])
    def test_decode_rejects_bad_input(self, encoded):
        assert decode_totp_key(encoded) is None


class TestVerifyTOTP:
    """Test code verification."""

    def test_rfc6238_vector(self):
        # RFC 6238: T = 59 s yields 94287082 with 8 digits; 6-digit truncation is 287082.
        assert verify_totp(RFC_KEY, "287082", window=0, for_time=59)

    def test_matches_pyotp(self):
        key = generate_totp_key()
        expected = pyotp.TOTP(base64.b32encode(key).decode()).at(1_700_000_000)
        assert get_current_totp(key, for_time=1_700_000_000) == expected
        assert verify_totp(key, expected, window=0, for_time=1_700_000_000)

    def test_code_valid_within_its_step(self):
        key = generate_totp_key()
        step_start = 1_700_000_010 - (1_700_000_010 % 30)
        code = get_current_totp(key, for_time=step_start)

        assert verify_totp(key, code, window=0, for_time=step_start + 29)

    def test_code_rejected_after_step_rollover(self):
        key = generate_totp_key()
        step_start = 1_700_000_010 - (1_700_000_010 % 30)
        code = get_current_totp(key, for_time=step_start)

        assert not verify_totp(key, code, window=0, for_time=step_start + 30)

    def test_window_accepts_adjacent_step(self):
        key = generate_totp_key()
        step_start = 1_700_000_010 - (1_700_000_010 % 30)
        code = get_current_totp(key, for_time=step_start)

        assert verify_totp(key, code, window=1, for_time=step_start + 30)
        assert not verify_totp(key, code, window=1, for_time=step_start + 60)

    def test_wrong_code_rejected(self):
        key = generate_totp_key()
        code = get_current_totp(key, for_time=1_700_000_000)
        wrong = f"{(int(code) + 1) % 1_000_000:06d}"

        assert not verify_totp(key, wrong, window=0, for_time=1_700_000_000)

    def test_surrounding_whitespace_ignored(self):
        key = generate_totp_key()
        code = get_current_totp(key, for_time=1_700_000_000)

        assert verify_totp(key, f" {code[:3]} {code[3:]} ", window=0, for_time=1_700_000_000)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456", "------"])
    def test_malformed_codes_return_false(self, code):
        assert not verify_totp(generate_totp_key(), code, window=0, for_time=1_700_000_000)

    @pytest.mark.parametrize("to_digit", [
        lambda d: chr(0xFF10 + int(d)),    # fullwidth
        lambda d: chr(0x0660 + int(d)),    # Arabic-Indic
    ])
    def test_non_ascii_digits_rejected(self, to_digit):
        key = generate_totp_key()
        code = get_current_totp(key, for_time=1_700_000_000)
        lookalike = "".join(to_digit(d) for d in code)

        assert lookalike.isdigit()
        assert not verify_totp(key, lookalike, window=0, for_time=1_700_000_000)

    def test_superscript_digits_rejected(self):
        assert not verify_totp(generate_totp_key(), "¹²³¹²³", window=0, for_time=1_700_000_000)

    @pytest.mark.parametrize("key", [b"", b"x" * 19, b"x" * 32])
    def test_wrong_key_length_returns_false(self, key):
        assert not verify_totp(key, "123456", window=0, for_time=1_700_000_000)

    def test_default_window_comes_from_configuration(self):
        key = generate_totp_key()
        step_start = 1_700_000_010 - (1_700_000_010 % 30)
        code = get_current_totp(key, for_time=step_start)

        # The test configuration sets KEYWARD_TOTP_WINDOW=1.
        assert verify_totp(key, code, for_time=step_start + 30)


class TestProvisioning:
    """Test provisioning URI and QR code."""

    def test_provisioning_uri(self):
        key = generate_totp_key()
        uri = get_totp_provisioning_uri(key, "alice@example.com")

        assert uri.startswith("otpauth://totp/")
        assert "KEYWARD" in uri
        assert base64.b32encode(key).decode().rstrip("=") in uri

    def test_qr_code_is_png_data_uri(self):
        data_uri = generate_qr_code_base64("otpauth://totp/KEYWARD:alice?secret=ABC")
        assert data_uri.startswith("data:image/png;base64,")
        png = base64.b64decode(data_uri.split(",", 1)[1])
        assert png.startswith(b"\x89PNG")
