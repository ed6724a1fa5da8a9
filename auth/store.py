"""
auth/store.py -- SQLAlchemy Core persistence for users and sessions.

Pattern: Repository + Data Mapper. AuthStore owns the engine and is the
repository for the two core entities (User, Session); _row_to_user /
_row_to_session are the mappers. Feature services (ledger, two_factor, rbac,
audit, social, passkeys) keep their own queries next to their logic but run
them on connections handed out by this store.

Transactions:
  Every repository method takes an optional conn. Passing one runs the
  statement inside the caller's transaction; omitting it runs the statement
  in its own short transaction. Multi-step flows (redeem a token, then change
  a password, then revoke sessions) open store.transaction() once and pass
  the connection down, so the whole flow commits or rolls back together.

  Never open a second connection while holding a transaction on SQLite: the
  second writer waits on the first one's lock.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Session tokens are stored as HMAC-SHA256 hashes only (auth/tokens.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine, event, func, select, text
from sqlalchemy.engine import Connection, Engine

from auth.models import Session, User
from auth.schema import metadata, sessions, users

logger = logging.getLogger("simpleauth.store")

# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601 (always with microseconds).

    datetime.isoformat() drops the fractional part when it is zero, which
    breaks lexical ordering of stored timestamps. strftime does not.
    """
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# SQLite connection pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journaling and foreign-key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes the
    ON DELETE CASCADE clauses in auth/schema.py take effect.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Engine owner and repository for User and Session entities.

    Usage:
        store = AuthStore("sqlite:///simpleauth.db")
        with store.transaction() as conn:
            user = store.create_user("alice@example.com", hashed, conn=conn)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside BEGIN ... COMMIT (ROLLBACK on exception)."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def connection(self, conn: Connection | None = None) -> Iterator[Connection]:
        """Reuse the caller's connection, or open a short transaction of our own."""
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as own:
                yield own

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.exception("Database health check failed")
            return False

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        hashed_password: str | None = None,
        *,
        name: str | None = None,
        verified_at: datetime | None = None,
        verification_method: str | None = None,
        now: datetime | None = None,
        conn: Connection | None = None,
    ) -> User:
        """Insert a user and return it with its assigned ID.

        email must already be normalized. Raises sqlalchemy.exc.IntegrityError
        when the email exists; callers map that to DUPLICATE_USER [M1].
        """
        stamp = to_iso(now or utcnow())
        with self.connection(conn) as c:
            result = c.execute(
                users.insert().values(
                    email=email,
                    hashed_password=hashed_password,
                    name=name,
                    email_verified_at=to_iso(verified_at) if verified_at else None,
                    verification_method=verification_method,
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
            row = c.execute(users.select().where(users.c.id == result.inserted_primary_key[0])).fetchone()
        return _row_to_user(row)

    def get_user_by_email(self, email: str, conn: Connection | None = None) -> User | None:
        """Look up a user by normalized email. Returns None if not found."""
        with self.connection(conn) as c:
            row = c.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        with self.connection(conn) as c:
            row = c.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(
        self, user_id: int, new_hash: str, now: datetime | None = None, conn: Connection | None = None
    ) -> bool:
        """Unconditionally overwrite a user's password hash.

        The caller must already have authorized the change (a redeemed reset
        token). Returns True if a row was updated.
        """
        with self.connection(conn) as c:
            result = c.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(hashed_password=new_hash, updated_at=to_iso(now or utcnow()))
            )
        return result.rowcount > 0

    def mark_verified(self, user_id: int, method: str, at: datetime, conn: Connection | None = None) -> bool:
        with self.connection(conn) as c:
            result = c.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(email_verified_at=to_iso(at), verification_method=method, updated_at=to_iso(at))
            )
        return result.rowcount > 0

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(users)).scalar() or 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session: Session, token_hash: str, conn: Connection | None = None) -> int:
        with self.connection(conn) as c:
            result = c.execute(
                sessions.insert().values(
                    user_id=session.user_id,
                    token_hash=token_hash,
                    expires_at=to_iso(session.expires_at),
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    created_at=to_iso(session.created_at or utcnow()),
                )
            )
        return result.inserted_primary_key[0]

    def get_session_by_hash(self, token_hash: str, conn: Connection | None = None) -> Session | None:
        with self.connection(conn) as c:
            row = c.execute(sessions.select().where(sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, session_id: int, conn: Connection | None = None) -> bool:
        with self.connection(conn) as c:
            result = c.execute(sessions.delete().where(sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_session_by_hash(self, token_hash: str, conn: Connection | None = None) -> bool:
        with self.connection(conn) as c:
            result = c.execute(sessions.delete().where(sessions.c.token_hash == token_hash))
        return result.rowcount > 0

    def delete_sessions_for_user(self, user_id: int, conn: Connection | None = None) -> int:
        with self.connection(conn) as c:
            result = c.execute(sessions.delete().where(sessions.c.user_id == user_id))
        return result.rowcount

    def list_sessions(self, user_id: int, conn: Connection | None = None) -> list[Session]:
        """Return a user's sessions, newest first."""
        with self.connection(conn) as c:
            rows = c.execute(
                sessions.select().where(sessions.c.user_id == user_id).order_by(sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_expired_sessions(self, now: datetime, conn: Connection | None = None) -> int:
        with self.connection(conn) as c:
            result = c.execute(sessions.delete().where(sessions.c.expires_at <= to_iso(now)))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        name=row.name,
        email_verified_at=from_iso(row.email_verified_at),
        verification_method=row.verification_method,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )
