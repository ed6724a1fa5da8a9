"""
auth/tokens.py -- Password hashing, opaque token, OAuth state, and cookie utilities.

Security design decisions:
  Passwords: bcrypt used directly. Its cost factor makes brute-force of
       low-entropy secrets expensive. dummy_hash() enables timing
       equalization: login always runs one bcrypt comparison, whether or not
       the account exists or has a password [C1].

  Opaque tokens (sessions and every single-use token): secrets.token_urlsafe(32)
       gives 256 bits of entropy. We store HMAC-SHA256(SECRET_KEY, raw) so
       lookup is O(1) by unique index and a leaked database does not yield
       usable tokens. bcrypt's slowness is unnecessary for random tokens.

  OAuth state: a python-jose HS256 JWT carrying provider, callback URL, and a
       nonce, with exp set to the configured state TTL. The callback trusts
       only what the signature covers.

  Cookie: HttpOnly, SameSite=Strict, Secure when SECURE_COOKIES=true. The
       cookie expiry equals the session's expires_at, so both die together.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import bcrypt
from jose import JWTError, jwt

logger = logging.getLogger("simpleauth.tokens")

SESSION_COOKIE = "simpleauth_session"

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext.

    bcrypt rejects input longer than 72 bytes. Callers validate first
    (auth.service.validate_password).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=8)
def dummy_hash(rounds: int) -> str:
    """Timing equalization hash [C1], one per work factor.

    Cached so only the first miss per cost pays an extra hash. The cost must
    match the real hashes or the dummy comparison would be measurably faster.
    """
    return hash_password("simpleauth_timing_dummy", rounds)


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def hash_token(raw: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as hex. Deterministic, so it can be indexed."""
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# OAuth state (signed JWT)
# ---------------------------------------------------------------------------


def encode_state(claims: dict, secret_key: str, ttl_seconds: int, now: datetime | None = None) -> str:
    issued = now or datetime.now(timezone.utc)
    payload = {
        **claims,
        "nonce": secrets.token_urlsafe(16),
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def decode_state(state: str, secret_key: str, now: datetime | None = None) -> dict | None:
    """Verify signature and expiry of an OAuth state value. None on any failure.

    Expiry is checked against `now` (the caller's clock) rather than by jose,
    so services with an injected clock agree with themselves.
    """
    try:
        claims = jwt.decode(state, secret_key, algorithms=[_ALGORITHM], options={"verify_exp": False})
    except JWTError:
        return None
    current = (now or datetime.now(timezone.utc)).timestamp()
    if not isinstance(claims.get("exp"), int) or current >= claims["exp"]:
        return None
    return claims


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, expires_at: datetime, secure: bool = False) -> None:
    """Write the session token as an httpOnly cookie on the response.

    samesite="strict": the cookie is never sent on cross-site requests,
        including top-level navigations -- CSRF mitigation for every method.
    expires: absolute expiry equal to the server-side session expiry.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=secure,
        expires=expires_at,
        path="/",
    )


def clear_session_cookie(response, secure: bool = False) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/", httponly=True, samesite="strict", secure=secure)
