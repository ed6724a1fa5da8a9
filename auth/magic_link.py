"""
auth/magic_link.py -- Passwordless email login.

Token subject is the normalized email (the account may not exist yet). A
redeemed link proves control of the mailbox, so it also marks the address
verified. With magic_link.create_users the first login creates the account
(no password hash).

Redeem, user creation, and session issue share one transaction: if creating
the user loses a race on the email UNIQUE constraint, the token is not burned
and the link still works on retry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth import ledger as ledger_mod
from auth.audit import FAILURE, AuditSink
from auth.errors import AuthError, ErrorCode, feature_disabled, returns_result
from auth.ledger import TokenLedger
from auth.mailer import Mailer, build_link, log_mailer, pick_link_base, render_email, send_email
from auth.models import AuthResult, EmailResult, TokenCheckResult
from auth.rbac import RbacService
from auth.service import AuthService, validate_email
from auth.store import AuthStore, utcnow
from core.config import Settings

logger = logging.getLogger("simpleauth.magic_link")

_SENT = "If that email can sign in, a login link has been sent."


class MagicLinkService:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        ledger: TokenLedger,
        auth: AuthService,
        rbac: RbacService,
        audit_sink: AuditSink,
        mailer: Mailer = log_mailer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._cfg = settings.magic_link
        self._ledger = ledger
        self._auth = auth
        self._rbac = rbac
        self._audit = audit_sink
        self._mailer = mailer
        self._clock = clock

    def _require_enabled(self) -> None:
        if not self._cfg.enabled:
            raise feature_disabled("Magic link login")

    @returns_result(EmailResult)
    def request_magic_link(
        self,
        email: str,
        callback_url: str | None = None,
        *,
        ip_address: str | None = None,
    ) -> EmailResult:
        self._require_enabled()
        email = validate_email(email)
        if not self._cfg.create_users and self._store.get_user_by_email(email) is None:
            logger.info("Magic link requested for unknown email with user creation disabled")
            return EmailResult(email_sent=True, message=_SENT)

        with self._store.transaction() as conn:
            token = self._ledger.issue(
                conn, ledger_mod.MAGIC_LINK, email, timedelta(minutes=self._cfg.token_expiry_minutes)
            )

        base = pick_link_base(callback_url, "", f"{self._settings.base_url.rstrip('/')}/auth/magic-link")
        html = render_email(
            "magic_link.html",
            subject=self._cfg.email_subject,
            email=email,
            link=build_link(base, token=token, email=email),
            expires_minutes=self._cfg.token_expiry_minutes,
        )
        send_email(self._mailer, email, self._cfg.email_subject, html)
        self._audit.record("login.magic_link.request", ip_address=ip_address, details={"domain": email.split("@")[1]})
        return EmailResult(email_sent=True, message=_SENT)

    @returns_result(TokenCheckResult)
    def verify_magic_link_token(self, token: str, email: str) -> TokenCheckResult:
        self._require_enabled()
        email = validate_email(email)
        with self._store.connection() as conn:
            self._ledger.check(conn, ledger_mod.MAGIC_LINK, email, token)
        return TokenCheckResult(valid=True)

    @returns_result(AuthResult)
    def complete_magic_link(
        self,
        token: str,
        email: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        self._require_enabled()
        email = validate_email(email)
        now = self._clock()
        is_new = False
        try:
            with self._store.transaction() as conn:
                self._ledger.redeem(conn, ledger_mod.MAGIC_LINK, email, token)
                user = self._store.get_user_by_email(email, conn=conn)
                if user is None:
                    if not self._cfg.create_users:
                        raise AuthError(ErrorCode.NOT_FOUND, "No account exists for this email.")
                    user = self._store.create_user(
                        email, None, verified_at=now, verification_method="magic_link", now=now, conn=conn
                    )
                    self._rbac.assign_default_role(user.id, conn=conn)
                    is_new = True
                elif not user.is_verified:
                    self._store.mark_verified(user.id, "magic_link", now, conn=conn)
                    user.email_verified_at = now
                    user.verification_method = "magic_link"
                result = self._auth.begin_session(conn, user, ip_address=ip_address, user_agent=user_agent)
        except IntegrityError as exc:
            raise AuthError(ErrorCode.DUPLICATE_USER, "Account creation raced with another request; try again.") from exc
        except AuthError as exc:
            self._audit.record("login.magic_link", FAILURE, details={"reason": exc.code.value}, ip_address=ip_address)
            raise

        result.is_new_user = is_new
        if is_new:
            self._audit.record("register.success", user_id=user.id, details={"method": "magic_link"})
        self._audit.record("login.magic_link", user_id=user.id, ip_address=ip_address, user_agent=user_agent)
        return result
