"""
auth/service.py -- Primary credential flows: register, login, logout, 2FA completion.

Every public method returns a structured result (auth/models.py) and never
raises for expected failures; see auth/errors.py.

Security:
  [C1] Timing equalization. register() hashes the password before the
       duplicate check, and login() always runs exactly one bcrypt
       comparison (against dummy_hash() for unknown or password-less users),
       so neither response time nor error shape reveals whether an email is
       registered through these paths.

  [M1] The users.email UNIQUE constraint is the authoritative duplicate
       guard. The read-before-insert check only produces the friendly error
       earlier; a concurrent insert surfaces as IntegrityError, mapped to
       DUPLICATE_USER here.

  Login with two-factor enabled returns challenge_required plus a
  two_factor_challenge ledger token instead of a session. The session is
  only minted by complete_two_factor_login().

begin_session() is the single exit point for every login path (password,
magic link, social) so the two-factor rule applies to all of them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth import ledger as ledger_mod
from auth.audit import FAILURE, AuditSink
from auth.errors import AuthError, ErrorCode, feature_disabled, returns_result
from auth.ledger import TokenLedger
from auth.models import AuthResult, Result, SessionInfo, User
from auth.rbac import RbacService
from auth.sessions import SessionManager
from auth.store import AuthStore, normalize_email, utcnow
from auth.tokens import dummy_hash, hash_password, verify_password
from auth.two_factor import TwoFactorService
from core.config import Settings

logger = logging.getLogger("simpleauth.auth")

_BAD_CREDENTIALS = "Invalid email or password."

MAX_PASSWORD_BYTES = 72


def validate_email(email: str | None) -> str:
    """Return the normalized email or raise INVALID_INPUT."""
    normalized = normalize_email(email or "")
    if "@" not in normalized or len(normalized) < 5:
        raise AuthError(ErrorCode.INVALID_INPUT, "A valid email address is required.")
    return normalized


def validate_password(password: str | None, min_length: int) -> str:
    """Return the password unchanged or raise INVALID_INPUT.

    bcrypt refuses input longer than 72 bytes, so the cap is on the UTF-8
    encoding, not the character count.
    """
    if not password or len(password) < min_length:
        raise AuthError(ErrorCode.INVALID_INPUT, f"Password must be at least {min_length} characters.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise AuthError(ErrorCode.INVALID_INPUT, f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return password


class AuthService:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        sessions: SessionManager,
        ledger: TokenLedger,
        two_factor: TwoFactorService,
        rbac: RbacService,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._sessions = sessions
        self._ledger = ledger
        self._two_factor = two_factor
        self._rbac = rbac
        self._audit = audit_sink
        self._clock = clock

    @property
    def _rounds(self) -> int:
        return self._settings.security.bcrypt_work_factor

    def _verification_required(self) -> bool:
        v = self._settings.verification
        return v.enabled and v.require_verification

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @returns_result(AuthResult)
    def register(
        self,
        email: str,
        password: str,
        *,
        name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        email = validate_email(email)
        validate_password(password, self._settings.security.min_password_length)
        hashed = hash_password(password, self._rounds)

        issue_session = not self._verification_required()
        session = None
        try:
            with self._store.transaction() as conn:
                if self._store.get_user_by_email(email, conn=conn) is not None:
                    raise AuthError(ErrorCode.DUPLICATE_USER, "An account with this email already exists.")
                user = self._store.create_user(email, hashed, name=name, now=self._clock(), conn=conn)
                self._rbac.assign_default_role(user.id, conn=conn)
                if issue_session:
                    session = self._sessions.create(
                        user.id, ip_address=ip_address, user_agent=user_agent, conn=conn
                    )
        except IntegrityError as exc:
            self._audit.record("register.failure", FAILURE, details={"reason": "duplicate"}, ip_address=ip_address)
            raise AuthError(ErrorCode.DUPLICATE_USER, "An account with this email already exists.") from exc
        except AuthError as exc:
            self._audit.record("register.failure", FAILURE, details={"reason": exc.code.value}, ip_address=ip_address)
            raise

        self._audit.record("register.success", user_id=user.id, ip_address=ip_address, user_agent=user_agent)
        logger.info("User %s registered", user.id)
        if session is None:
            return AuthResult(user=user, message="Account created. Verify your email address to sign in.")
        return AuthResult(user=user, session=session)

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    @returns_result(AuthResult)
    def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        normalized = normalize_email(email or "")
        if "@" not in normalized or not password:
            raise AuthError(ErrorCode.INVALID_INPUT, "Email and password are required.")

        user = self._store.get_user_by_email(normalized)
        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(password, dummy_hash(self._rounds))
            self._fail_login(None, "invalid_credentials", ip_address, user_agent)
        elif not verify_password(password, user.hashed_password):
            self._fail_login(user.id, "invalid_credentials", ip_address, user_agent)

        if self._verification_required() and not user.is_verified:
            self._audit.record(
                "login.failure", FAILURE, user_id=user.id, details={"reason": "unverified"}, ip_address=ip_address
            )
            raise AuthError(ErrorCode.UNVERIFIED, "Verify your email address before signing in.")

        with self._store.transaction() as conn:
            result = self.begin_session(conn, user, ip_address=ip_address, user_agent=user_agent)

        action = "login.challenge" if result.challenge_required else "login.success"
        self._audit.record(action, user_id=user.id, ip_address=ip_address, user_agent=user_agent)
        return result

    def _fail_login(self, user_id: int | None, reason: str, ip_address: str | None, user_agent: str | None) -> None:
        self._audit.record(
            "login.failure",
            FAILURE,
            user_id=user_id,
            details={"reason": reason},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise AuthError(ErrorCode.INVALID_CREDENTIALS, _BAD_CREDENTIALS)

    def begin_session(
        self,
        conn: Connection,
        user: User,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        allow_challenge: bool = True,
    ) -> AuthResult:
        """Mint a session, or a two-factor challenge when the user has 2FA enabled.

        Runs on the caller's transaction so it commits with whatever
        authorized the login (a redeemed magic link, a linked social account).
        """
        if allow_challenge and self._two_factor.is_enabled(user.id, conn=conn):
            ttl = timedelta(minutes=self._settings.two_factor.challenge_expiry_minutes)
            token = self._ledger.issue(conn, ledger_mod.TWO_FACTOR_CHALLENGE, str(user.id), ttl)
            return AuthResult(user=user, challenge_required=True, challenge_token=token)
        session = self._sessions.create(user.id, ip_address=ip_address, user_agent=user_agent, conn=conn)
        return AuthResult(user=user, session=session)

    @returns_result(Result)
    def logout(self, session_token: str | None) -> Result:
        user_id = self._sessions.revoke(session_token)
        if user_id is not None:
            self._audit.record("session.logout", user_id=user_id)
        return Result(message="Logged out.")

    def resolve_session(self, token: str | None) -> SessionInfo | None:
        return self._sessions.resolve(token)

    def update_password(self, user_id: int, new_hash: str, conn: Connection | None = None) -> bool:
        """Unconditional overwrite; the caller must already hold the authorization (a redeemed token)."""
        return self._store.update_password(user_id, new_hash, now=self._clock(), conn=conn)

    # ------------------------------------------------------------------
    # Two-factor login completion
    # ------------------------------------------------------------------

    @returns_result(AuthResult)
    def complete_two_factor_login(
        self,
        user_id: int,
        challenge_token: str,
        code: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Finish a challenged login with a TOTP or recovery code.

        A wrong code leaves the challenge live (the user may retry until it
        expires). The challenge consume, the recovery-code burn, and the
        session insert commit together.
        """
        if not self._two_factor.enabled:
            raise feature_disabled("Two-factor authentication")
        try:
            with self._store.transaction() as conn:
                entry = self._ledger.check(conn, ledger_mod.TWO_FACTOR_CHALLENGE, str(user_id), challenge_token)
                match = self._two_factor.match_code(conn, user_id, code)
                if match is None:
                    raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Invalid verification code.")
                self._ledger.consume(conn, entry)
                if match.kind == "recovery":
                    self._two_factor.mark_recovery_used(conn, match.recovery_code_id)
                user = self._store.get_user_by_id(user_id, conn=conn)
                if user is None:
                    raise AuthError(ErrorCode.NOT_FOUND, "User not found.")
                session = self._sessions.create(user_id, ip_address=ip_address, user_agent=user_agent, conn=conn)
        except AuthError as exc:
            self._audit.record(
                "login.two_factor",
                FAILURE,
                user_id=user_id,
                details={"reason": exc.code.value},
                ip_address=ip_address,
            )
            raise

        self._audit.record(
            "login.two_factor",
            user_id=user_id,
            details={"method": match.kind},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return AuthResult(user=user, session=session)
