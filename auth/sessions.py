"""
auth/sessions.py -- Session issuance, resolution, and revocation.

A session is an opaque bearer token tied to a user with an absolute expiry.
Only HMAC(token) is stored; the raw token lives in the client's cookie or
Authorization header.

Expiry is lazy: resolve() deletes an expired row when it meets one and
reports no session. Rows that are never read again are removed by
purge_expired(), driven by `python main.py purge-sessions`.

Validity is monotonic. Once now >= expires_at the session is never valid
again: nothing in this module extends expires_at.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.engine import Connection

from auth.models import Session, SessionInfo
from auth.store import AuthStore, utcnow
from auth.tokens import generate_token, hash_token

logger = logging.getLogger("simpleauth.sessions")


class SessionManager:
    def __init__(
        self,
        store: AuthStore,
        secret_key: str,
        expiry_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._secret_key = secret_key
        self._ttl = timedelta(days=expiry_days)
        self._clock = clock

    def create(
        self,
        user_id: int,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        conn: Connection | None = None,
    ) -> Session:
        """Mint a session for user_id. The returned Session carries the raw token."""
        now = self._clock()
        token = generate_token()
        session = Session(
            user_id=user_id,
            expires_at=now + self._ttl,
            created_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            token=token,
        )
        session.id = self._store.insert_session(session, hash_token(token, self._secret_key), conn=conn)
        logger.info("Session %s created for user %s", session.id, user_id)
        return session

    def resolve(self, token: str | None) -> SessionInfo | None:
        """Return the session and its user, or None if absent or expired."""
        if not token:
            return None
        token_hash = hash_token(token, self._secret_key)
        with self._store.transaction() as conn:
            session = self._store.get_session_by_hash(token_hash, conn=conn)
            if session is None:
                return None
            if self._clock() >= session.expires_at:
                self._store.delete_session(session.id, conn=conn)
                logger.info("Session %s expired; deleted on read", session.id)
                return None
            user = self._store.get_user_by_id(session.user_id, conn=conn)
        if user is None:
            return None
        return SessionInfo(session=session, user=user)

    def revoke(self, token: str | None) -> int | None:
        """Delete the session for token. Idempotent.

        Returns the owning user id when a row was deleted, else None.
        """
        if not token:
            return None
        token_hash = hash_token(token, self._secret_key)
        with self._store.transaction() as conn:
            session = self._store.get_session_by_hash(token_hash, conn=conn)
            if session is None:
                return None
            self._store.delete_session(session.id, conn=conn)
        logger.info("Session %s revoked", session.id)
        return session.user_id

    def revoke_by_id(self, user_id: int, session_id: int) -> bool:
        """Delete one of user_id's sessions by id. The owner check prevents IDOR."""
        with self._store.transaction() as conn:
            owned = [s for s in self._store.list_sessions(user_id, conn=conn) if s.id == session_id]
            if not owned:
                return False
            self._store.delete_session(session_id, conn=conn)
        logger.info("Session %s revoked by owner %s", session_id, user_id)
        return True

    def revoke_all(self, user_id: int, conn: Connection | None = None) -> int:
        count = self._store.delete_sessions_for_user(user_id, conn=conn)
        if count:
            logger.info("Revoked %d session(s) for user %s", count, user_id)
        return count

    def list_for_user(self, user_id: int) -> list[Session]:
        now = self._clock()
        return [s for s in self._store.list_sessions(user_id) if s.expires_at > now]

    def purge_expired(self) -> int:
        count = self._store.delete_expired_sessions(self._clock())
        logger.info("Purged %d expired session(s)", count)
        return count
