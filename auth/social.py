"""
auth/social.py -- Social (OAuth) login on top of auth/oauth.py.

Callback resolution order:
  1. (provider, provider_account_id) already linked -> refresh its tokens and
     profile snapshot, log in as its user.
  2. A user with the provider's email exists -> link, but only when the
     provider reports the email verified [H1]. An unverified match is refused
     with DUPLICATE_USER; the owner must sign in another way first.
  3. Otherwise create a password-less user (verified when the provider says
     so) and link.

Everything from the account lookup to the session insert is one transaction.
The (provider, provider_account_id) UNIQUE constraint decides concurrent
first logins; the loser gets DUPLICATE_ACCOUNT.

CSRF: the state parameter is a signed JWT (auth/tokens.py) binding the
provider and redirect_uri, valid for social.state_ttl_seconds.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.audit import FAILURE, AuditSink
from auth.errors import AuthError, ErrorCode, feature_disabled, returns_result
from auth.mailer import pick_link_base
from auth.models import AuthorizationUrlResult, AuthResult, Result, SocialAccount
from auth.oauth import OAuthGateway, OAuthProfile, OAuthProviderError
from auth.rbac import RbacService
from auth.schema import passkey_credentials, social_accounts
from auth.service import AuthService
from auth.store import AuthStore, from_iso, normalize_email, to_iso, utcnow
from auth.tokens import decode_state, encode_state
from core.config import Settings

logger = logging.getLogger("simpleauth.social")

_BAD_STATE = "Invalid or expired OAuth state."


class SocialLoginService:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        gateway: OAuthGateway,
        auth: AuthService,
        rbac: RbacService,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._cfg = settings.social
        self._gateway = gateway
        self._auth = auth
        self._rbac = rbac
        self._audit = audit_sink
        self._clock = clock

    def _require_provider(self, provider: str) -> None:
        if not self._cfg.enabled:
            raise feature_disabled("Social login")
        if provider not in {spec.name for spec in self._gateway.enabled_providers()}:
            raise AuthError(ErrorCode.NOT_FOUND, f"Unknown or unconfigured provider '{provider}'.")

    def list_providers(self) -> list[dict]:
        """[{name, label}] for every configured provider; empty when the feature is off."""
        if not self._cfg.enabled:
            return []
        return [{"name": spec.name, "label": spec.label} for spec in self._gateway.enabled_providers()]

    def _redirect_uri(self, provider: str) -> str:
        cfg = self._cfg.provider(provider)
        if cfg is not None and cfg.redirect_uri:
            return cfg.redirect_uri
        return f"{self._settings.base_url.rstrip('/')}/api/v1/auth/social/{provider}/callback"

    @returns_result(AuthorizationUrlResult)
    def get_authorization_url(self, provider: str, callback_url: str | None = None) -> AuthorizationUrlResult:
        """Build the provider redirect. callback_url is where the browser lands after login."""
        self._require_provider(provider)
        redirect_uri = self._redirect_uri(provider)
        claims = {"provider": provider, "redirect_uri": redirect_uri}
        if callback_url:
            # Same-origin only; the callback route redirects the browser here.
            claims["callback_url"] = pick_link_base(callback_url, "", self._settings.base_url)
        state = encode_state(claims, self._settings.secret_key, self._cfg.state_ttl_seconds, self._clock())
        url = self._gateway.get_authorization_url(provider, state, redirect_uri)
        return AuthorizationUrlResult(url=url, state=state)

    def read_state(self, state: str) -> dict | None:
        return decode_state(state, self._settings.secret_key, self._clock())

    @returns_result(AuthResult)
    def handle_callback(
        self,
        provider: str,
        code: str,
        state: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        self._require_provider(provider)
        claims = self.read_state(state) if state else None
        if claims is None or claims.get("provider") != provider:
            self._audit.record("login.social", FAILURE, details={"provider": provider, "reason": "state"}, ip_address=ip_address)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS, _BAD_STATE)
        if not code:
            raise AuthError(ErrorCode.INVALID_INPUT, "Missing authorization code.")

        try:
            token = self._gateway.exchange_code(provider, code, claims["redirect_uri"])
            profile = self._gateway.fetch_profile(provider, token)
        except OAuthProviderError as exc:
            self._audit.record("login.social", FAILURE, details={"provider": provider, "reason": "provider"}, ip_address=ip_address)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS, f"Sign-in with {provider} failed.") from exc

        try:
            with self._store.transaction() as conn:
                user, is_new = self._resolve_user(conn, profile, token)
                result = self._auth.begin_session(conn, user, ip_address=ip_address, user_agent=user_agent)
        except IntegrityError as exc:
            raise AuthError(ErrorCode.DUPLICATE_ACCOUNT, "This provider account is already linked.") from exc
        except AuthError as exc:
            self._audit.record(
                "login.social", FAILURE, details={"provider": provider, "reason": exc.code.value}, ip_address=ip_address
            )
            raise

        result.is_new_user = is_new
        if is_new:
            self._audit.record("register.success", user_id=user.id, details={"method": provider})
        self._audit.record(
            "login.social", user_id=user.id, details={"provider": provider}, ip_address=ip_address, user_agent=user_agent
        )
        return result

    def _resolve_user(self, conn: Connection, profile: OAuthProfile, token: dict):
        now = self._clock()
        account = self._find_account(conn, profile.provider, profile.provider_account_id)
        if account is not None:
            values = _token_values(token, now)
            if values["refresh_token"] is None:
                # Providers only send a refresh token on some grants; keep the stored one.
                del values["refresh_token"]
            conn.execute(
                social_accounts.update()
                .where(social_accounts.c.id == account.id)
                .values(**values, profile=profile.raw, updated_at=to_iso(now))
            )
            user = self._store.get_user_by_id(account.user_id, conn=conn)
            if user is None:
                raise AuthError(ErrorCode.NOT_FOUND, "Linked user no longer exists.")
            return user, False

        if not profile.email:
            raise AuthError(ErrorCode.INVALID_INPUT, f"{profile.provider} did not provide an email address.")
        email = normalize_email(profile.email)
        user = self._store.get_user_by_email(email, conn=conn)
        is_new = False
        if user is not None:
            if not profile.email_verified:
                raise AuthError(
                    ErrorCode.DUPLICATE_USER,
                    "An account with this email already exists. Sign in to it first to link this provider.",
                )
        else:
            user = self._store.create_user(
                email,
                None,
                name=profile.name,
                verified_at=now if profile.email_verified else None,
                verification_method=f"oauth:{profile.provider}" if profile.email_verified else None,
                now=now,
                conn=conn,
            )
            self._rbac.assign_default_role(user.id, conn=conn)
            is_new = True

        conn.execute(
            social_accounts.insert().values(
                user_id=user.id,
                provider=profile.provider,
                provider_account_id=profile.provider_account_id,
                profile=profile.raw,
                created_at=to_iso(now),
                updated_at=to_iso(now),
                **_token_values(token, now),
            )
        )
        logger.info("Linked %s account to user %s", profile.provider, user.id)
        return user, is_new

    # ------------------------------------------------------------------
    # Linked accounts
    # ------------------------------------------------------------------

    def list_accounts(self, user_id: int) -> list[SocialAccount]:
        with self._store.connection() as conn:
            rows = conn.execute(
                social_accounts.select().where(social_accounts.c.user_id == user_id).order_by(social_accounts.c.provider)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    @returns_result(Result)
    def unlink(self, user_id: int, provider: str) -> Result:
        """Remove a linked provider unless it is the user's last way to sign in."""
        if not self._cfg.enabled:
            raise feature_disabled("Social login")
        with self._store.transaction() as conn:
            user = self._store.get_user_by_id(user_id, conn=conn)
            if user is None:
                raise AuthError(ErrorCode.NOT_FOUND, "User not found.")
            linked = conn.execute(
                select(func.count()).select_from(social_accounts).where(social_accounts.c.user_id == user_id)
            ).scalar()
            passkeys = conn.execute(
                select(func.count()).select_from(passkey_credentials).where(passkey_credentials.c.user_id == user_id)
            ).scalar()
            has_alternative = (
                user.hashed_password is not None
                or (linked or 0) > 1
                or (passkeys or 0) > 0
                or self._settings.magic_link.enabled
            )
            if not has_alternative:
                raise AuthError(ErrorCode.INVALID_INPUT, "Cannot unlink the only sign-in method on this account.")
            result = conn.execute(
                social_accounts.delete().where(
                    and_(social_accounts.c.user_id == user_id, social_accounts.c.provider == provider)
                )
            )
            if result.rowcount == 0:
                raise AuthError(ErrorCode.NOT_FOUND, f"No {provider} account is linked.")
        self._audit.record("credential.social.unlink", user_id=user_id, details={"provider": provider})
        return Result(message=f"{provider} account unlinked.")

    @staticmethod
    def _find_account(conn: Connection, provider: str, provider_account_id: str) -> SocialAccount | None:
        row = conn.execute(
            social_accounts.select().where(
                and_(
                    social_accounts.c.provider == provider,
                    social_accounts.c.provider_account_id == provider_account_id,
                )
            )
        ).fetchone()
        return _row_to_account(row) if row is not None else None


def _token_values(token: dict, now: datetime) -> dict:
    expires_at = None
    if token.get("expires_at"):
        expires_at = to_iso(datetime.fromtimestamp(int(token["expires_at"]), tz=now.tzinfo))
    elif token.get("expires_in"):
        expires_at = to_iso(now + timedelta(seconds=int(token["expires_in"])))
    return {
        "access_token": token.get("access_token"),
        "refresh_token": token.get("refresh_token"),
        "expires_at": expires_at,
    }


def _row_to_account(row) -> SocialAccount:
    return SocialAccount(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=from_iso(row.expires_at),
        profile=row.profile,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
