"""
auth/password_reset.py -- Request / verify / complete password reset.

Token subject is the user id; TTL is password_reset.token_expiry_minutes.
Requesting again supersedes the previous link.

No enumeration: request_password_reset() answers {success, email_sent} for
every well-formed email, whether or not an account exists or the mailer
worked. Only the server log tells the cases apart.

complete_password_reset() redeems the token, writes the new hash, and (by
default) revokes every session of the user in one transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth import ledger as ledger_mod
from auth.audit import FAILURE, AuditSink
from auth.errors import AuthError, ErrorCode, feature_disabled, returns_result
from auth.ledger import TokenLedger
from auth.mailer import Mailer, build_link, log_mailer, pick_link_base, render_email, send_email
from auth.models import EmailResult, Result, TokenCheckResult
from auth.service import validate_email, validate_password
from auth.sessions import SessionManager
from auth.store import AuthStore, utcnow
from auth.tokens import hash_password
from core.config import Settings

logger = logging.getLogger("simpleauth.password_reset")

_SENT = "If an account exists for that email, a reset link has been sent."
_INVALID = "Invalid or expired token."


class PasswordResetService:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        ledger: TokenLedger,
        sessions: SessionManager,
        audit_sink: AuditSink,
        mailer: Mailer = log_mailer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._cfg = settings.password_reset
        self._ledger = ledger
        self._sessions = sessions
        self._audit = audit_sink
        self._mailer = mailer
        self._clock = clock

    def _require_enabled(self) -> None:
        if not self._cfg.enabled:
            raise feature_disabled("Password reset")

    @returns_result(EmailResult)
    def request_password_reset(
        self,
        email: str,
        redirect_url: str | None = None,
        *,
        ip_address: str | None = None,
    ) -> EmailResult:
        self._require_enabled()
        email = validate_email(email)
        user = self._store.get_user_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            self._audit.record(
                "password.reset.request", FAILURE, details={"reason": "unknown_email"}, ip_address=ip_address
            )
            return EmailResult(email_sent=True, message=_SENT)

        with self._store.transaction() as conn:
            token = self._ledger.issue(
                conn,
                ledger_mod.PASSWORD_RESET,
                str(user.id),
                timedelta(minutes=self._cfg.token_expiry_minutes),
            )

        base = pick_link_base(
            redirect_url, self._cfg.redirect_url, f"{self._settings.base_url.rstrip('/')}/reset-password"
        )
        link = build_link(base, token=token, email=email)
        html = render_email(
            "password_reset.html",
            subject=self._cfg.email_subject,
            email=email,
            link=link,
            expires_minutes=self._cfg.token_expiry_minutes,
        )
        send_email(self._mailer, email, self._cfg.email_subject, html)
        self._audit.record("password.reset.request", user_id=user.id, ip_address=ip_address)
        return EmailResult(email_sent=True, message=_SENT)

    @returns_result(TokenCheckResult)
    def verify_password_reset_token(self, token: str, email: str) -> TokenCheckResult:
        """Peek at a reset token (for rendering the 'choose a password' form). Does not consume it."""
        self._require_enabled()
        email = validate_email(email)
        with self._store.connection() as conn:
            user = self._store.get_user_by_email(email, conn=conn)
            if user is None:
                raise AuthError(ErrorCode.NOT_FOUND, _INVALID)
            self._ledger.check(conn, ledger_mod.PASSWORD_RESET, str(user.id), token)
        return TokenCheckResult(valid=True)

    @returns_result(Result)
    def complete_password_reset(
        self,
        token: str,
        email: str,
        new_password: str,
        *,
        ip_address: str | None = None,
    ) -> Result:
        self._require_enabled()
        email = validate_email(email)
        validate_password(new_password, self._settings.security.min_password_length)
        new_hash = hash_password(new_password, self._settings.security.bcrypt_work_factor)

        try:
            with self._store.transaction() as conn:
                user = self._store.get_user_by_email(email, conn=conn)
                if user is None:
                    raise AuthError(ErrorCode.NOT_FOUND, _INVALID)
                self._ledger.redeem(conn, ledger_mod.PASSWORD_RESET, str(user.id), token)
                self._store.update_password(user.id, new_hash, now=self._clock(), conn=conn)
                revoked = self._sessions.revoke_all(user.id, conn=conn) if self._cfg.revoke_sessions else 0
        except AuthError as exc:
            self._audit.record(
                "password.reset.complete", FAILURE, details={"reason": exc.code.value}, ip_address=ip_address
            )
            raise

        self._audit.record(
            "password.reset.complete",
            user_id=user.id,
            details={"sessions_revoked": revoked},
            ip_address=ip_address,
        )
        logger.info("Password reset completed for user %s", user.id)
        return Result(message="Password has been reset.")
