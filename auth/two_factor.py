"""
auth/two_factor.py -- TOTP enrollment and recovery codes.

Enrollment state machine:

    Unset --setup()--> Pending (secret stored, enabled=0)
    Pending --verify_and_enable(correct code)--> Enabled
    Pending/Enabled --disable()--> Unset (row deleted, recovery codes cascade)

Calling setup() again while Pending replaces the secret and the codes, so a
half-finished enrollment can be restarted. Calling it while Enabled fails:
the user must disable first.

Recovery codes are stored one row per code as bcrypt hashes of the
normalized form. A matched code gets used_at stamped (not deleted) so the
audit trail keeps it; the conditional UPDATE makes a concurrent second use
fail.

Secrets and plaintext recovery codes are returned once by setup() /
regenerate_recovery_codes() and never logged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Connection

from auth import totp
from auth.errors import AuthError, ErrorCode, feature_disabled, returns_result
from auth.models import Result, TwoFactorSetupResult, TwoFactorStatus
from auth.schema import two_factor_enrollments, two_factor_recovery_codes
from auth.store import AuthStore, from_iso, to_iso, utcnow
from auth.tokens import hash_password, verify_password
from core.config import TwoFactorSettings

logger = logging.getLogger("simpleauth.two_factor")


@dataclass
class CodeMatch:
    kind: str  # "totp" or "recovery"
    recovery_code_id: int | None = None


class TwoFactorService:
    def __init__(
        self,
        store: AuthStore,
        settings: TwoFactorSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    def _require_enabled(self) -> None:
        if not self._settings.enabled:
            raise feature_disabled("Two-factor authentication")

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    @returns_result(TwoFactorSetupResult)
    def setup(self, user_id: int) -> TwoFactorSetupResult:
        self._require_enabled()
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise AuthError(ErrorCode.NOT_FOUND, "User not found.")

        secret = totp.generate_secret()
        codes = totp.generate_recovery_codes(self._settings.recovery_codes_count)
        hashes = self._hash_codes(codes)
        now = to_iso(self._clock())

        with self._store.transaction() as conn:
            existing = self._get_enrollment(conn, user_id)
            if existing is not None and existing.enabled:
                raise AuthError(ErrorCode.INVALID_INPUT, "Two-factor authentication is already enabled.")
            if existing is not None:
                conn.execute(two_factor_enrollments.delete().where(two_factor_enrollments.c.user_id == user_id))
            conn.execute(two_factor_recovery_codes.delete().where(two_factor_recovery_codes.c.user_id == user_id))
            conn.execute(two_factor_enrollments.insert().values(user_id=user_id, secret=secret, enabled=0, created_at=now))
            self._insert_codes(conn, user_id, hashes, now)

        logger.info("Two-factor setup started for user %s", user_id)
        return TwoFactorSetupResult(
            secret=secret,
            otpauth_uri=totp.provisioning_uri(
                secret, user.email, self._settings.issuer, self._settings.code_validity_seconds
            ),
            recovery_codes=codes,
        )

    @returns_result(Result)
    def verify_and_enable(self, user_id: int, code: str) -> Result:
        self._require_enabled()
        with self._store.transaction() as conn:
            enrollment = self._get_enrollment(conn, user_id)
            if enrollment is None:
                raise AuthError(ErrorCode.NOT_FOUND, "Two-factor authentication has not been set up.")
            if enrollment.enabled:
                raise AuthError(ErrorCode.INVALID_INPUT, "Two-factor authentication is already enabled.")
            if not self._check_totp(enrollment.secret, code):
                raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Invalid verification code.")
            conn.execute(
                two_factor_enrollments.update()
                .where(two_factor_enrollments.c.user_id == user_id)
                .values(enabled=1, verified_at=to_iso(self._clock()))
            )
        logger.info("Two-factor enabled for user %s", user_id)
        return Result(message="Two-factor authentication enabled.")

    @returns_result(Result)
    def verify_code(self, user_id: int, code: str) -> Result:
        """Check a TOTP or recovery code for an enabled user (step-up checks, disable)."""
        self._require_enabled()
        with self._store.transaction() as conn:
            match = self.match_code(conn, user_id, code)
            if match is None:
                raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Invalid verification code.")
            if match.kind == "recovery":
                self.mark_recovery_used(conn, match.recovery_code_id)
        return Result()

    @returns_result(Result)
    def disable(self, user_id: int) -> Result:
        """Delete the enrollment. The caller is responsible for re-authenticating the user."""
        self._require_enabled()
        with self._store.transaction() as conn:
            result = conn.execute(two_factor_enrollments.delete().where(two_factor_enrollments.c.user_id == user_id))
            conn.execute(two_factor_recovery_codes.delete().where(two_factor_recovery_codes.c.user_id == user_id))
        if result.rowcount == 0:
            raise AuthError(ErrorCode.NOT_FOUND, "Two-factor authentication is not set up.")
        logger.info("Two-factor disabled for user %s", user_id)
        return Result(message="Two-factor authentication disabled.")

    @returns_result(TwoFactorSetupResult)
    def regenerate_recovery_codes(self, user_id: int, code: str) -> TwoFactorSetupResult:
        """Replace every recovery code. Requires a current TOTP code (not a recovery code)."""
        self._require_enabled()
        codes = totp.generate_recovery_codes(self._settings.recovery_codes_count)
        hashes = self._hash_codes(codes)
        with self._store.transaction() as conn:
            enrollment = self._get_enrollment(conn, user_id)
            if enrollment is None or not enrollment.enabled:
                raise AuthError(ErrorCode.NOT_FOUND, "Two-factor authentication is not enabled.")
            if not self._check_totp(enrollment.secret, code):
                raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Invalid verification code.")
            conn.execute(two_factor_recovery_codes.delete().where(two_factor_recovery_codes.c.user_id == user_id))
            self._insert_codes(conn, user_id, hashes, to_iso(self._clock()))
        logger.info("Recovery codes regenerated for user %s", user_id)
        return TwoFactorSetupResult(recovery_codes=codes)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_status(self, user_id: int) -> TwoFactorStatus:
        with self._store.connection() as conn:
            enrollment = self._get_enrollment(conn, user_id)
            if enrollment is None:
                return TwoFactorStatus()
            remaining = conn.execute(
                select(func.count())
                .select_from(two_factor_recovery_codes)
                .where(
                    and_(
                        two_factor_recovery_codes.c.user_id == user_id,
                        two_factor_recovery_codes.c.used_at.is_(None),
                    )
                )
            ).scalar()
        return TwoFactorStatus(
            enabled=bool(enrollment.enabled),
            pending=not enrollment.enabled,
            verified_at=from_iso(enrollment.verified_at),
            recovery_codes_remaining=remaining or 0,
        )

    def is_enabled(self, user_id: int, conn: Connection | None = None) -> bool:
        """True when the feature is on and this user has a verified enrollment."""
        if not self._settings.enabled:
            return False
        with self._store.connection(conn) as c:
            enrollment = self._get_enrollment(c, user_id)
        return enrollment is not None and bool(enrollment.enabled)

    # ------------------------------------------------------------------
    # Login integration (run on the caller's transaction)
    # ------------------------------------------------------------------

    def match_code(self, conn: Connection, user_id: int, code: str) -> CodeMatch | None:
        """Return which credential `code` matches for an enabled user, or None.

        Does not consume anything; a recovery match must be followed by
        mark_recovery_used() on the same connection.
        """
        enrollment = self._get_enrollment(conn, user_id)
        if enrollment is None or not enrollment.enabled:
            return None
        if totp.looks_like_totp(code):
            return CodeMatch("totp") if self._check_totp(enrollment.secret, code) else None
        normalized = totp.normalize_recovery_code(code)
        if not normalized:
            return None
        rows = conn.execute(
            two_factor_recovery_codes.select().where(
                and_(
                    two_factor_recovery_codes.c.user_id == user_id,
                    two_factor_recovery_codes.c.used_at.is_(None),
                )
            )
        ).fetchall()
        # Linear scan: codes are individually salted, so there is nothing to index on.
        for row in rows:
            if verify_password(normalized, row.code_hash):
                return CodeMatch("recovery", row.id)
        return None

    def mark_recovery_used(self, conn: Connection, code_id: int) -> None:
        result = conn.execute(
            two_factor_recovery_codes.update()
            .where(and_(two_factor_recovery_codes.c.id == code_id, two_factor_recovery_codes.c.used_at.is_(None)))
            .values(used_at=to_iso(self._clock()))
        )
        if result.rowcount == 0:
            raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Invalid verification code.")
        logger.info("Recovery code %s used", code_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_totp(self, secret: str, code: str) -> bool:
        return totp.verify_code(
            secret,
            code,
            self._clock(),
            step=self._settings.code_validity_seconds,
            window=self._settings.window_size,
        )

    def _hash_codes(self, codes: list[str]) -> list[str]:
        rounds = self._settings.recovery_code_work_factor
        return [hash_password(totp.normalize_recovery_code(c), rounds) for c in codes]

    @staticmethod
    def _insert_codes(conn: Connection, user_id: int, hashes: list[str], now: str) -> None:
        conn.execute(
            two_factor_recovery_codes.insert(),
            [{"user_id": user_id, "code_hash": h, "created_at": now} for h in hashes],
        )

    @staticmethod
    def _get_enrollment(conn: Connection, user_id: int):
        return conn.execute(
            two_factor_enrollments.select().where(two_factor_enrollments.c.user_id == user_id)
        ).fetchone()
