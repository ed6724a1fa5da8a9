"""
auth/errors.py -- Error taxonomy and the result boundary for auth operations.

Domain code raises AuthError with an ErrorCode. Public service methods are
wrapped with @returns_result(SomeResult), which turns that exception into a
failed result object. Callers (the API layer, scripts) branch on
result.success instead of catching exceptions.

Only expected failures travel as AuthError. A SQLAlchemyError escaping a
service method is logged with its traceback and reported as INTERNAL with a
generic message [C2] -- storage details never reach the caller.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("simpleauth.errors")


class ErrorCode(str, Enum):
    INVALID_INPUT = "invalid_input"
    INVALID_CREDENTIALS = "invalid_credentials"
    DUPLICATE_USER = "duplicate_user"
    DUPLICATE_ACCOUNT = "duplicate_account"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    FEATURE_DISABLED = "feature_disabled"
    UNAUTHORIZED = "unauthorized"
    UNVERIFIED = "unverified"
    INTERNAL = "internal_error"


class AuthError(Exception):
    """An expected auth failure carrying a taxonomy code and a user-safe message."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def feature_disabled(feature: str) -> AuthError:
    return AuthError(ErrorCode.FEATURE_DISABLED, f"{feature} is not enabled.")


def returns_result(result_cls):
    """Decorator: convert AuthError / SQLAlchemyError into a failed result_cls.

    The wrapped function returns a successful result_cls instance itself.
    Anything else that escapes (programming errors) propagates unchanged so
    it surfaces in tests and in the API's catch-all handler.
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except AuthError as exc:
                return result_cls(success=False, error=exc.code, message=exc.message)
            except SQLAlchemyError:
                logger.exception("Storage failure in %s", fn.__qualname__)
                return result_cls(
                    success=False,
                    error=ErrorCode.INTERNAL,
                    message="An internal error occurred. Please try again later.",
                )

        return wrapper

    return decorator
