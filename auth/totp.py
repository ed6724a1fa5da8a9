"""
auth/totp.py -- RFC 6238 TOTP codes and recovery-code helpers.

HMAC-SHA1, 6 digits, base32 secrets: the parameters every authenticator app
(Google Authenticator, Authy, 1Password) assumes when the otpauth URI does
not say otherwise.

verify_code() accepts the current step and `window` steps on either side to
absorb clock skew. Comparison is constant-time.

Pure functions only -- no storage, no clock of its own (callers pass `at`).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
import struct
from datetime import datetime
from urllib.parse import quote, urlencode

DIGITS = 6

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def generate_secret(num_bytes: int = 20) -> str:
    """Return a base32 secret without padding (160 bits by default, per RFC 4226)."""
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> bytes | None:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return None


def generate_code(secret: str, at: datetime, step: int = 30, digits: int = DIGITS) -> str:
    """Return the TOTP code for the time step containing `at`. Empty string if the secret is invalid."""
    key = _decode_secret(secret)
    if not key:
        return ""
    counter = int(at.timestamp()) // step
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    value = (struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF) % (10**digits)
    return str(value).zfill(digits)


def verify_code(secret: str, code: str, at: datetime, step: int = 30, window: int = 1) -> bool:
    code = (code or "").strip().replace(" ", "")
    if len(code) != DIGITS or not code.isdigit():
        return False
    base = at.timestamp()
    for offset in range(-window, window + 1):
        expected = generate_code(secret, datetime.fromtimestamp(base + offset * step, tz=at.tzinfo), step)
        if expected and hmac.compare_digest(expected, code):
            return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str, step: int = 30) -> str:
    """Build the otpauth:// URI an authenticator app imports (usually via QR code)."""
    label = quote(f"{issuer}:{account}")
    params = {"secret": secret, "issuer": issuer, "algorithm": "SHA1", "digits": DIGITS, "period": step}
    return f"otpauth://totp/{label}?{urlencode(params)}"


# ---------------------------------------------------------------------------
# Recovery codes
# ---------------------------------------------------------------------------


def generate_recovery_codes(count: int) -> list[str]:
    """Return `count` codes shaped XXXX-XXXX-XX from 40 random bits of uppercase hex."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(5).upper()
        codes.append(f"{raw[:4]}-{raw[4:8]}-{raw[8:]}")
    return codes


def normalize_recovery_code(code: str) -> str:
    """Uppercase and drop separators, so 'abcd-1234-ef' and 'ABCD1234EF' match."""
    return _NON_ALNUM.sub("", (code or "").upper())


def looks_like_totp(code: str) -> bool:
    cleaned = (code or "").strip().replace(" ", "")
    return len(cleaned) == DIGITS and cleaned.isdigit()
