"""
auth/ledger.py -- Single-use token ledger shared by every token-based flow.

State machine per token:

    Issued --redeem--> Redeemed      (terminal)
    Issued --time----> Expired       (terminal)
    Issued --issue again for same (purpose, subject)--> deleted

One table serves every flow; purpose tells them apart:
  password_reset       subject = user id
  magic_link           subject = normalized email
  email_verification   subject = user id
  two_factor_challenge subject = user id
  passkey_challenge    subject = user id, or "anonymous" for username-less login

Atomicity:
  Every method takes the caller's Connection. Flows open store.transaction(),
  redeem, then perform the authorized action on the same connection. If the
  action fails the transaction rolls back and the token stays unconsumed;
  if it commits, the token is consumed exactly once.

  consume() is a conditional UPDATE (... WHERE consumed_at IS NULL), so of two
  concurrent redemptions exactly one sees rowcount 1. The loser gets
  ALREADY_USED even though its earlier check() passed.

Check order is not found -> already used -> expired. A consumed token keeps
reporting ALREADY_USED after its TTL passes, until purge_expired() drops it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import and_
from sqlalchemy.engine import Connection

from auth.errors import AuthError, ErrorCode
from auth.models import LedgerToken
from auth.schema import single_use_tokens
from auth.store import AuthStore, from_iso, to_iso, utcnow
from auth.tokens import generate_token, hash_token

logger = logging.getLogger("simpleauth.ledger")

PASSWORD_RESET = "password_reset"
MAGIC_LINK = "magic_link"
EMAIL_VERIFICATION = "email_verification"
TWO_FACTOR_CHALLENGE = "two_factor_challenge"
PASSKEY_CHALLENGE = "passkey_challenge"

ANONYMOUS_SUBJECT = "anonymous"

_INVALID_MESSAGE = "Invalid or expired token."


class TokenLedger:
    def __init__(self, store: AuthStore, secret_key: str, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._secret_key = secret_key
        self._clock = clock

    def issue(
        self,
        conn: Connection,
        purpose: str,
        subject: str,
        ttl: timedelta,
        payload: dict | None = None,
        *,
        supersede: bool = True,
        token: str | None = None,
    ) -> str:
        """Store a new token and return its raw value.

        supersede=True deletes every unconsumed token for (purpose, subject)
        first, so at most one live token exists per subject per purpose.
        token lets a caller supply its own random value (WebAuthn challenges).
        """
        raw = token or generate_token()
        now = self._clock()
        if supersede:
            result = conn.execute(
                single_use_tokens.delete().where(
                    and_(
                        single_use_tokens.c.purpose == purpose,
                        single_use_tokens.c.subject == subject,
                        single_use_tokens.c.consumed_at.is_(None),
                    )
                )
            )
            if result.rowcount:
                logger.info("Superseded %d %s token(s) for subject %s", result.rowcount, purpose, _safe(subject))
        conn.execute(
            single_use_tokens.insert().values(
                purpose=purpose,
                subject=subject,
                token_hash=hash_token(raw, self._secret_key),
                expires_at=to_iso(now + ttl),
                created_at=to_iso(now),
                payload=payload,
            )
        )
        logger.info("Issued %s token for subject %s", purpose, _safe(subject))
        return raw

    def check(self, conn: Connection, purpose: str, subject: str, token: str) -> LedgerToken:
        """Validate without consuming. Raises AuthError on any failure."""
        if not token:
            raise AuthError(ErrorCode.NOT_FOUND, _INVALID_MESSAGE)
        row = conn.execute(
            single_use_tokens.select().where(
                and_(
                    single_use_tokens.c.token_hash == hash_token(token, self._secret_key),
                    single_use_tokens.c.purpose == purpose,
                )
            )
        ).fetchone()
        # A token presented with the wrong subject is indistinguishable from an unknown one.
        if row is None or row.subject != subject:
            raise AuthError(ErrorCode.NOT_FOUND, _INVALID_MESSAGE)
        entry = _row_to_token(row)
        if entry.consumed_at is not None:
            raise AuthError(ErrorCode.ALREADY_USED, "This token has already been used.")
        if self._clock() >= entry.expires_at:
            raise AuthError(ErrorCode.EXPIRED, "This token has expired.")
        return entry

    def consume(self, conn: Connection, entry: LedgerToken) -> None:
        result = conn.execute(
            single_use_tokens.update()
            .where(and_(single_use_tokens.c.id == entry.id, single_use_tokens.c.consumed_at.is_(None)))
            .values(consumed_at=to_iso(self._clock()))
        )
        if result.rowcount == 0:
            raise AuthError(ErrorCode.ALREADY_USED, "This token has already been used.")
        entry.consumed_at = self._clock()
        logger.info("Consumed %s token %s", entry.purpose, entry.id)

    def redeem(self, conn: Connection, purpose: str, subject: str, token: str) -> LedgerToken:
        entry = self.check(conn, purpose, subject, token)
        self.consume(conn, entry)
        return entry

    def purge_expired(self, conn: Connection | None = None) -> int:
        """Delete every token past its expiry, consumed or not."""
        with self._store.connection(conn) as c:
            result = c.execute(single_use_tokens.delete().where(single_use_tokens.c.expires_at <= to_iso(self._clock())))
        logger.info("Purged %d expired token(s)", result.rowcount)
        return result.rowcount


def _safe(subject: str) -> str:
    """Mask email subjects in logs; user ids and 'anonymous' pass through."""
    if "@" not in subject:
        return subject
    local, _, domain = subject.partition("@")
    return f"{local[:1]}***@{domain}"


def _row_to_token(row) -> LedgerToken:
    return LedgerToken(
        id=row.id,
        purpose=row.purpose,
        subject=row.subject,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        consumed_at=from_iso(row.consumed_at),
        payload=row.payload,
    )
