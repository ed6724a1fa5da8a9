"""
auth/oauth.py -- OAuth 2.0 provider gateway (GitHub, Google, Apple).

Providers are data, not subclasses: each ProviderSpec holds endpoints, the
default scope, and a profile parser. OAuthGateway picks the spec by name and
drives authlib's requests-based OAuth2Session through the three calls the
social login flow needs:

    get_authorization_url(provider, state, redirect_uri) -> str
    exchange_code(provider, code, redirect_uri)          -> token dict
    fetch_profile(provider, token)                        -> OAuthProfile

Any transport or protocol failure is raised as OAuthProviderError so the
caller handles one exception type.

Security notes:
  [H1] email_verified is reported exactly as the provider states it. GitHub
       addresses count as verified only when /user/emails marks the primary
       address verified. The social flow links to an existing account by
       email only when the address is verified.

  Apple: profile claims come from the id_token returned by Apple's token
       endpoint. That token arrives over TLS in direct response to our
       client-authenticated request, so its signature is not re-checked
       (OIDC Core 3.1.3.7). APPLE__CLIENT_SECRET must be the pre-generated
       ES256 client-secret JWT Apple requires.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session
from jose import JWTError, jwt

from core.config import OAuthProviderSettings, SocialSettings

logger = logging.getLogger("simpleauth.oauth")

_TIMEOUT = 10


class OAuthProviderError(Exception):
    """The provider refused the request or returned something unusable."""


@dataclass
class OAuthProfile:
    provider: str
    provider_account_id: str
    email: str | None
    email_verified: bool
    name: str | None = None
    avatar_url: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ProviderSpec:
    name: str
    label: str
    authorize_url: str
    token_url: str
    profile_url: str | None
    default_scope: str
    parse_profile: Callable[[OAuth2Session, dict, str], OAuthProfile]
    token_auth_method: str = "client_secret_basic"
    authorize_params: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Profile parsers
# ---------------------------------------------------------------------------


def _github_profile(client: OAuth2Session, token: dict, profile_url: str) -> OAuthProfile:
    """GitHub keeps the email out of the profile: read /user, then /user/emails [H1]."""
    resp = client.get(profile_url, timeout=_TIMEOUT)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = client.get("https://api.github.com/user/emails", timeout=_TIMEOUT)
    emails_resp.raise_for_status()
    email, verified = None, False
    for entry in emails_resp.json():
        if entry.get("primary"):
            email, verified = entry.get("email"), bool(entry.get("verified"))
            break
    if email is None:
        email = profile.get("email")

    return OAuthProfile(
        provider="github",
        provider_account_id=str(profile["id"]),
        email=email,
        email_verified=verified,
        name=profile.get("name") or profile.get("login"),
        avatar_url=profile.get("avatar_url"),
        raw=profile,
    )


def _google_profile(client: OAuth2Session, token: dict, profile_url: str) -> OAuthProfile:
    resp = client.get(profile_url, timeout=_TIMEOUT)
    resp.raise_for_status()
    info = resp.json()
    return OAuthProfile(
        provider="google",
        provider_account_id=str(info["sub"]),
        email=info.get("email"),
        email_verified=bool(info.get("email_verified", False)),
        name=info.get("name"),
        avatar_url=info.get("picture"),
        raw=info,
    )


def _apple_profile(client: OAuth2Session, token: dict, profile_url: str) -> OAuthProfile:
    id_token = token.get("id_token")
    if not id_token:
        raise OAuthProviderError("apple: token response has no id_token")
    try:
        claims = jwt.get_unverified_claims(id_token)
    except JWTError as exc:
        raise OAuthProviderError("apple: malformed id_token") from exc
    # Apple sends email_verified as the string "true" in some responses.
    verified = claims.get("email_verified") in (True, "true")
    return OAuthProfile(
        provider="apple",
        provider_account_id=str(claims["sub"]),
        email=claims.get("email"),
        email_verified=verified,
        raw=claims,
    )


PROVIDERS: dict[str, ProviderSpec] = {
    "github": ProviderSpec(
        name="github",
        label="GitHub",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        profile_url="https://api.github.com/user",
        default_scope="read:user user:email",
        parse_profile=_github_profile,
        token_auth_method="client_secret_post",
    ),
    "google": ProviderSpec(
        name="google",
        label="Google",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",  # noqa: S106
        profile_url="https://openidconnect.googleapis.com/v1/userinfo",
        default_scope="openid email profile",
        parse_profile=_google_profile,
        authorize_params={"access_type": "offline", "prompt": "select_account"},
    ),
    "apple": ProviderSpec(
        name="apple",
        label="Apple",
        authorize_url="https://appleid.apple.com/auth/authorize",
        token_url="https://appleid.apple.com/auth/token",  # noqa: S106
        profile_url=None,
        default_scope="name email",
        parse_profile=_apple_profile,
        token_auth_method="client_secret_post",
        # Apple requires form_post whenever name or email scope is requested.
        authorize_params={"response_mode": "form_post"},
    ),
}


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class OAuthGateway:
    def __init__(self, settings: SocialSettings) -> None:
        self._settings = settings

    def enabled_providers(self) -> list[ProviderSpec]:
        """Specs for every provider with a client id and secret configured."""
        return [spec for name, spec in PROVIDERS.items() if self._config(name) is not None]

    def _config(self, provider: str) -> OAuthProviderSettings | None:
        cfg = self._settings.provider(provider)
        return cfg if cfg is not None and cfg.configured else None

    def _resolve(self, provider: str) -> tuple[ProviderSpec, OAuthProviderSettings]:
        spec = PROVIDERS.get(provider)
        cfg = self._config(provider)
        if spec is None or cfg is None:
            raise OAuthProviderError(f"provider {provider!r} is not configured")
        return spec, cfg

    def _session(
        self,
        spec: ProviderSpec,
        cfg: OAuthProviderSettings,
        redirect_uri: str | None = None,
        token: dict | None = None,
    ) -> OAuth2Session:
        return OAuth2Session(
            client_id=cfg.client_id,
            client_secret=cfg.client_secret,
            scope=cfg.scope or spec.default_scope,
            redirect_uri=redirect_uri,
            token=token,
            token_endpoint_auth_method=spec.token_auth_method,
        )

    def get_authorization_url(self, provider: str, state: str, redirect_uri: str) -> str:
        spec, cfg = self._resolve(provider)
        client = self._session(spec, cfg, redirect_uri=redirect_uri)
        url, _ = client.create_authorization_url(
            cfg.authorize_url or spec.authorize_url, state=state, **spec.authorize_params
        )
        return url

    def exchange_code(self, provider: str, code: str, redirect_uri: str) -> dict:
        spec, cfg = self._resolve(provider)
        client = self._session(spec, cfg, redirect_uri=redirect_uri)
        try:
            token = client.fetch_token(cfg.token_url or spec.token_url, code=code, timeout=_TIMEOUT)
        except (OAuthError, requests.RequestException) as exc:
            logger.warning("%s code exchange failed: %s", provider, exc.__class__.__name__)
            raise OAuthProviderError(f"{provider}: code exchange failed") from exc
        return dict(token)

    def fetch_profile(self, provider: str, token: dict) -> OAuthProfile:
        spec, cfg = self._resolve(provider)
        client = self._session(spec, cfg, token=token)
        try:
            return spec.parse_profile(client, token, cfg.profile_url or spec.profile_url)
        except (OAuthError, requests.RequestException, KeyError, ValueError) as exc:
            logger.warning("%s profile fetch failed: %s", provider, exc.__class__.__name__)
            raise OAuthProviderError(f"{provider}: profile fetch failed") from exc
