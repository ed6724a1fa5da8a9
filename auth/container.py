"""
auth/container.py -- Build every auth service from one Settings instance.

The API lifespan, the operations CLI, and the tests all go through
build_services(), so wiring lives in exactly one place. Collaborators that
tests replace (mailer, clock, OAuth gateway) are parameters.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from auth.audit import AuditSink
from auth.ledger import TokenLedger
from auth.magic_link import MagicLinkService
from auth.mailer import Mailer, log_mailer
from auth.oauth import OAuthGateway
from auth.passkeys import PasskeyService
from auth.password_reset import PasswordResetService
from auth.rbac import RbacService
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.social import SocialLoginService
from auth.store import AuthStore, utcnow
from auth.two_factor import TwoFactorService
from auth.verification import VerificationService
from core.config import Settings

logger = logging.getLogger("simpleauth.container")


@dataclass
class AuthServices:
    settings: Settings
    store: AuthStore
    sessions: SessionManager
    ledger: TokenLedger
    audit: AuditSink
    rbac: RbacService
    two_factor: TwoFactorService
    auth: AuthService
    password_reset: PasswordResetService
    magic_link: MagicLinkService
    verification: VerificationService
    social: SocialLoginService
    passkeys: PasskeyService

    def close(self) -> None:
        self.store.close()


def build_services(
    settings: Settings,
    *,
    store: AuthStore | None = None,
    mailer: Mailer = log_mailer,
    clock: Callable[[], datetime] = utcnow,
    gateway: OAuthGateway | None = None,
) -> AuthServices:
    store = store or AuthStore(settings.database_url)
    secret = settings.secret_key

    sessions = SessionManager(store, secret, settings.security.session_expiry_days, clock)
    ledger = TokenLedger(store, secret, clock)
    audit_sink = AuditSink(store, settings.audit, clock)
    rbac = RbacService(store, settings.rbac, audit_sink, clock)
    two_factor = TwoFactorService(store, settings.two_factor, clock)
    auth = AuthService(store, settings, sessions, ledger, two_factor, rbac, audit_sink, clock)

    services = AuthServices(
        settings=settings,
        store=store,
        sessions=sessions,
        ledger=ledger,
        audit=audit_sink,
        rbac=rbac,
        two_factor=two_factor,
        auth=auth,
        password_reset=PasswordResetService(store, settings, ledger, sessions, audit_sink, mailer, clock),
        magic_link=MagicLinkService(store, settings, ledger, auth, rbac, audit_sink, mailer, clock),
        verification=VerificationService(store, settings, ledger, audit_sink, mailer, clock),
        social=SocialLoginService(
            store, settings, gateway or OAuthGateway(settings.social), auth, rbac, audit_sink, clock
        ),
        passkeys=PasskeyService(store, settings, ledger, auth, audit_sink, clock),
    )

    if settings.rbac.enabled:
        rbac.initialize_default_roles()

    enabled = [
        name
        for name in ("password_reset", "magic_link", "verification", "two_factor", "rbac", "audit", "social", "passkeys")
        if getattr(settings, name).enabled
    ]
    logger.info("Auth services ready (features: %s)", ", ".join(enabled) or "none")
    return services
