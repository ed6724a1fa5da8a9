"""
auth/verification.py -- Email address verification.

Token subject is the user id. Requests for unknown or already-verified
addresses answer exactly like real ones (no enumeration) but issue nothing.

When verification.require_verification is set, AuthService.login refuses
unverified users with UNVERIFIED and register() withholds the session.
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
from auth.models import EmailResult, Result, TokenCheckResult, VerificationStatus
from auth.service import validate_email
from auth.store import AuthStore, utcnow
from core.config import Settings

logger = logging.getLogger("simpleauth.verification")

_SENT = "If the account needs verification, an email has been sent."
_INVALID = "Invalid or expired token."


class VerificationService:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        ledger: TokenLedger,
        audit_sink: AuditSink,
        mailer: Mailer = log_mailer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._cfg = settings.verification
        self._ledger = ledger
        self._audit = audit_sink
        self._mailer = mailer
        self._clock = clock

    def _require_enabled(self) -> None:
        if not self._cfg.enabled:
            raise feature_disabled("Email verification")

    def is_verification_required(self) -> bool:
        return self._cfg.enabled and self._cfg.require_verification

    @returns_result(EmailResult)
    def request_verification(
        self,
        email: str,
        redirect_url: str | None = None,
        *,
        ip_address: str | None = None,
    ) -> EmailResult:
        self._require_enabled()
        email = validate_email(email)
        user = self._store.get_user_by_email(email)
        if user is None or user.is_verified:
            logger.info("Verification requested for unknown or already verified email")
            return EmailResult(email_sent=True, message=_SENT)

        with self._store.transaction() as conn:
            token = self._ledger.issue(
                conn,
                ledger_mod.EMAIL_VERIFICATION,
                str(user.id),
                timedelta(minutes=self._cfg.token_expiry_minutes),
            )

        base = pick_link_base(
            redirect_url, self._cfg.redirect_url, f"{self._settings.base_url.rstrip('/')}/verify-email"
        )
        html = render_email(
            "verification.html",
            subject=self._cfg.email_subject,
            email=email,
            link=build_link(base, token=token, email=email),
            expires_minutes=self._cfg.token_expiry_minutes,
        )
        send_email(self._mailer, email, self._cfg.email_subject, html)
        self._audit.record("verification.request", user_id=user.id, ip_address=ip_address)
        return EmailResult(email_sent=True, message=_SENT)

    @returns_result(TokenCheckResult)
    def verify_verification_token(self, token: str, email: str) -> TokenCheckResult:
        self._require_enabled()
        email = validate_email(email)
        with self._store.connection() as conn:
            user = self._store.get_user_by_email(email, conn=conn)
            if user is None:
                raise AuthError(ErrorCode.NOT_FOUND, _INVALID)
            self._ledger.check(conn, ledger_mod.EMAIL_VERIFICATION, str(user.id), token)
        return TokenCheckResult(valid=True)

    @returns_result(Result)
    def complete_verification(self, token: str, email: str, *, ip_address: str | None = None) -> Result:
        self._require_enabled()
        email = validate_email(email)
        try:
            with self._store.transaction() as conn:
                user = self._store.get_user_by_email(email, conn=conn)
                if user is None:
                    raise AuthError(ErrorCode.NOT_FOUND, _INVALID)
                self._ledger.redeem(conn, ledger_mod.EMAIL_VERIFICATION, str(user.id), token)
                self._store.mark_verified(user.id, "email", self._clock(), conn=conn)
        except AuthError as exc:
            self._audit.record("verification.complete", FAILURE, details={"reason": exc.code.value}, ip_address=ip_address)
            raise
        self._audit.record("verification.complete", user_id=user.id, ip_address=ip_address)
        logger.info("User %s verified email", user.id)
        return Result(message="Email address verified.")

    def get_verification_status(self, user_id: int) -> VerificationStatus:
        user = self._store.get_user_by_id(user_id)
        if user is None:
            return VerificationStatus()
        return VerificationStatus(
            verified=user.is_verified,
            verified_at=user.email_verified_at,
            method=user.verification_method,
        )

    @returns_result(Result)
    def mark_user_verified(self, user_id: int, method: str = "manual", *, actor_id: int | None = None) -> Result:
        if not self._store.mark_verified(user_id, method, self._clock()):
            raise AuthError(ErrorCode.NOT_FOUND, "User not found.")
        self._audit.record(
            "verification.manual", user_id=actor_id, resource="user", resource_id=str(user_id), details={"method": method}
        )
        return Result(message="User marked as verified.")
