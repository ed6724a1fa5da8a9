"""
auth/passkeys.py -- WebAuthn passkey registration and login (py_webauthn).

Attestation and assertion signatures are verified by the webauthn library
against the relying party id, origin, and the stored COSE public key. The
signature counter is stored and updated on each login.

Challenges are single-use ledger tokens (purpose passkey_challenge): 32
random bytes, stored under their base64url form, which is exactly what the
browser echoes back in clientDataJSON.challenge. The server looks the
challenge up from the response itself, so the client does not have to carry
it separately.

  registration: subject = user id (a new request supersedes the old one)
  login:        subject = user id, or "anonymous" for username-less
                (discoverable credential) login; anonymous challenges are
                not superseded, several browsers may be mid-login at once.

Passkey login skips the two-factor challenge: the authenticator already
provides possession plus (usually) user verification.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidJSONStructure,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from auth import ledger as ledger_mod
from auth.audit import FAILURE, AuditSink
from auth.errors import AuthError, ErrorCode, feature_disabled, returns_result
from auth.ledger import TokenLedger
from auth.models import AuthResult, PasskeyCredential, PasskeyOptionsResult, PasskeyResult, Result
from auth.schema import passkey_credentials
from auth.service import AuthService
from auth.store import AuthStore, from_iso, to_iso, utcnow
from core.config import Settings

logger = logging.getLogger("simpleauth.passkeys")

_VERIFY_ERRORS = (
    InvalidRegistrationResponse,
    InvalidAuthenticationResponse,
    InvalidJSONStructure,
    ValueError,
    KeyError,
    TypeError,
)


class PasskeyService:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        ledger: TokenLedger,
        auth: AuthService,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cfg = settings.passkeys
        self._ledger = ledger
        self._auth = auth
        self._audit = audit_sink
        self._clock = clock

    def _require_enabled(self) -> None:
        if not self._cfg.enabled:
            raise feature_disabled("Passkeys")

    @property
    def _ttl(self) -> timedelta:
        return timedelta(seconds=self._cfg.challenge_timeout_seconds)

    @property
    def _uv(self) -> UserVerificationRequirement:
        if self._cfg.require_user_verification:
            return UserVerificationRequirement.REQUIRED
        return UserVerificationRequirement.PREFERRED

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @returns_result(PasskeyOptionsResult)
    def registration_options(self, user_id: int) -> PasskeyOptionsResult:
        self._require_enabled()
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise AuthError(ErrorCode.NOT_FOUND, "User not found.")
        existing = self.list_credentials(user_id)

        challenge = secrets.token_bytes(32)
        with self._store.transaction() as conn:
            self._ledger.issue(
                conn, ledger_mod.PASSKEY_CHALLENGE, str(user_id), self._ttl, token=bytes_to_base64url(challenge)
            )

        options = generate_registration_options(
            rp_id=self._cfg.rp_id,
            rp_name=self._cfg.rp_name,
            user_id=str(user_id).encode(),
            user_name=user.email,
            user_display_name=user.name or user.email,
            challenge=challenge,
            timeout=self._cfg.challenge_timeout_seconds * 1000,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=self._uv,
            ),
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(c.credential_id)) for c in existing
            ],
        )
        return PasskeyOptionsResult(options=json.loads(options_to_json(options)))

    @returns_result(PasskeyResult)
    def verify_registration(self, user_id: int, credential: dict, name: str | None = None) -> PasskeyResult:
        self._require_enabled()
        challenge = _client_challenge(credential)
        try:
            with self._store.transaction() as conn:
                entry = self._ledger.check(conn, ledger_mod.PASSKEY_CHALLENGE, str(user_id), challenge)
                try:
                    verified = verify_registration_response(
                        credential=credential,
                        expected_challenge=base64url_to_bytes(challenge),
                        expected_rp_id=self._cfg.rp_id,
                        expected_origin=self._cfg.origin,
                        require_user_verification=self._cfg.require_user_verification,
                    )
                except _VERIFY_ERRORS as exc:
                    logger.warning("Passkey registration rejected for user %s: %s", user_id, exc)
                    raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Passkey registration could not be verified.") from exc
                self._ledger.consume(conn, entry)
                stored = self._insert(conn, user_id, verified, credential, name)
        except IntegrityError as exc:
            raise AuthError(ErrorCode.DUPLICATE_ACCOUNT, "This passkey is already registered.") from exc
        self._audit.record(
            "credential.passkey.register", user_id=user_id, resource="passkey", resource_id=stored.credential_id
        )
        logger.info("Passkey %s registered for user %s", stored.id, user_id)
        return PasskeyResult(credential=stored)

    def _insert(self, conn: Connection, user_id: int, verified, credential: dict, name: str | None) -> PasskeyCredential:
        transports = (credential.get("response") or {}).get("transports") or []
        device_type = getattr(verified.credential_device_type, "value", verified.credential_device_type)
        row_values = dict(
            user_id=user_id,
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=verified.credential_public_key,
            sign_count=verified.sign_count,
            name=name,
            transports=list(transports),
            device_type=str(device_type) if device_type is not None else None,
            backed_up=1 if verified.credential_backed_up else 0,
            created_at=to_iso(self._clock()),
        )
        result = conn.execute(passkey_credentials.insert().values(**row_values))
        row = conn.execute(
            passkey_credentials.select().where(passkey_credentials.c.id == result.inserted_primary_key[0])
        ).fetchone()
        return _row_to_credential(row)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    @returns_result(PasskeyOptionsResult)
    def authentication_options(self, user_id: int | None = None) -> PasskeyOptionsResult:
        self._require_enabled()
        allow = []
        if user_id is not None:
            allow = [
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(c.credential_id))
                for c in self.list_credentials(user_id)
            ]
        subject = str(user_id) if user_id is not None else ledger_mod.ANONYMOUS_SUBJECT
        challenge = secrets.token_bytes(32)
        with self._store.transaction() as conn:
            self._ledger.issue(
                conn,
                ledger_mod.PASSKEY_CHALLENGE,
                subject,
                self._ttl,
                token=bytes_to_base64url(challenge),
                supersede=user_id is not None,
            )
        options = generate_authentication_options(
            rp_id=self._cfg.rp_id,
            challenge=challenge,
            timeout=self._cfg.challenge_timeout_seconds * 1000,
            allow_credentials=allow,
            user_verification=self._uv,
        )
        return PasskeyOptionsResult(options=json.loads(options_to_json(options)))

    @returns_result(AuthResult)
    def verify_authentication(
        self,
        credential: dict,
        user_id: int | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        self._require_enabled()
        challenge = _client_challenge(credential)
        credential_id = _canonical_id(credential.get("rawId") or credential.get("id"))
        subject = str(user_id) if user_id is not None else ledger_mod.ANONYMOUS_SUBJECT
        try:
            with self._store.transaction() as conn:
                entry = self._ledger.check(conn, ledger_mod.PASSKEY_CHALLENGE, subject, challenge)
                stored = self._find(conn, credential_id)
                if stored is None or (user_id is not None and stored.user_id != user_id):
                    raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Passkey not recognised.")
                try:
                    verified = verify_authentication_response(
                        credential=credential,
                        expected_challenge=base64url_to_bytes(challenge),
                        expected_rp_id=self._cfg.rp_id,
                        expected_origin=self._cfg.origin,
                        credential_public_key=stored.public_key,
                        credential_current_sign_count=stored.sign_count,
                        require_user_verification=self._cfg.require_user_verification,
                    )
                except _VERIFY_ERRORS as exc:
                    logger.warning("Passkey assertion rejected for credential %s: %s", stored.id, exc)
                    raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Passkey could not be verified.") from exc
                self._ledger.consume(conn, entry)
                conn.execute(
                    passkey_credentials.update()
                    .where(passkey_credentials.c.id == stored.id)
                    .values(sign_count=verified.new_sign_count, last_used_at=to_iso(self._clock()))
                )
                user = self._store.get_user_by_id(stored.user_id, conn=conn)
                result = self._auth.begin_session(
                    conn, user, ip_address=ip_address, user_agent=user_agent, allow_challenge=False
                )
        except AuthError as exc:
            self._audit.record("login.passkey", FAILURE, user_id=user_id, details={"reason": exc.code.value}, ip_address=ip_address)
            raise
        self._audit.record("login.passkey", user_id=user.id, ip_address=ip_address, user_agent=user_agent)
        return result

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def list_credentials(self, user_id: int) -> list[PasskeyCredential]:
        with self._store.connection() as conn:
            rows = conn.execute(
                passkey_credentials.select()
                .where(passkey_credentials.c.user_id == user_id)
                .order_by(passkey_credentials.c.created_at)
            ).fetchall()
        return [_row_to_credential(r) for r in rows]

    @returns_result(Result)
    def delete_credential(self, user_id: int, credential_id: str) -> Result:
        """Delete one of user_id's passkeys. The owner check prevents IDOR."""
        self._require_enabled()
        with self._store.transaction() as conn:
            result = conn.execute(
                passkey_credentials.delete().where(
                    (passkey_credentials.c.user_id == user_id)
                    & (passkey_credentials.c.credential_id == _canonical_id(credential_id))
                )
            )
        if result.rowcount == 0:
            raise AuthError(ErrorCode.NOT_FOUND, "Passkey not found.")
        self._audit.record("credential.passkey.delete", user_id=user_id, resource="passkey", resource_id=credential_id)
        return Result(message="Passkey deleted.")

    @staticmethod
    def _find(conn: Connection, credential_id: str) -> PasskeyCredential | None:
        row = conn.execute(
            passkey_credentials.select().where(passkey_credentials.c.credential_id == credential_id)
        ).fetchone()
        return _row_to_credential(row) if row is not None else None


def _client_challenge(credential: dict) -> str:
    """Pull the base64url challenge out of response.clientDataJSON."""
    try:
        client_data = (credential.get("response") or {}).get("clientDataJSON", "")
        decoded = json.loads(base64url_to_bytes(client_data))
        challenge = decoded["challenge"]
    except (AttributeError, KeyError, TypeError, ValueError, binascii.Error) as exc:
        raise AuthError(ErrorCode.INVALID_INPUT, "Malformed WebAuthn response.") from exc
    if not isinstance(challenge, str) or not challenge:
        raise AuthError(ErrorCode.INVALID_INPUT, "Malformed WebAuthn response.")
    return challenge


def _canonical_id(raw: str | None) -> str:
    """Normalize a base64url credential id (padding, standard alphabet) to the stored form."""
    if not raw:
        raise AuthError(ErrorCode.INVALID_INPUT, "Missing credential id.")
    try:
        body = raw.rstrip("=").replace("+", "-").replace("/", "_")
        padded = body + "=" * (-len(body) % 4)
        return bytes_to_base64url(base64.urlsafe_b64decode(padded))
    except (binascii.Error, ValueError) as exc:
        raise AuthError(ErrorCode.INVALID_INPUT, "Invalid credential id.") from exc


def _row_to_credential(row) -> PasskeyCredential:
    return PasskeyCredential(
        id=row.id,
        user_id=row.user_id,
        credential_id=row.credential_id,
        public_key=row.public_key,
        sign_count=row.sign_count,
        name=row.name,
        transports=list(row.transports or []),
        device_type=row.device_type,
        backed_up=bool(row.backed_up),
        created_at=from_iso(row.created_at),
        last_used_at=from_iso(row.last_used_at),
    )
