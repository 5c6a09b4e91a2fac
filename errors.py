"""
Error taxonomy shared by every store.

Each error carries the HTTP status the API answers with, so route handlers
never translate by hand: they raise, and the handlers in ``main`` render the
``{"success": false, "message": ...}`` envelope.
"""

import functools
import logging
from typing import List, Optional

from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)


class CRMError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[str]] = None):
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)


# 400
class ValidationError(CRMError):
    status_code = 400
    default_message = "Validation failed"


class WeakPassword(ValidationError):
    default_message = "Password must be at least 6 characters"


class LastAddress(ValidationError):
    default_message = "Cannot delete the last address. Add another address first."


class InvalidReminder(ValidationError):
    default_message = "Reminder date must be before due date"


class QueryTooShort(ValidationError):
    default_message = "Search query must be at least 2 characters long"


class DuplicateError(CRMError):
    status_code = 400
    default_message = "Duplicate record"


class DuplicateEmail(DuplicateError):
    default_message = "Email already exists"


# 401 / 403
class AuthError(CRMError):
    status_code = 401
    default_message = "Not authorized"


class MissingCredential(AuthError):
    default_message = "Not authorized, token missing"


class InvalidCredential(AuthError):
    default_message = "Invalid token"


class UnknownSubject(AuthError):
    default_message = "User not found, please login again"


class InvalidCredentials(AuthError):
    default_message = "Invalid credentials"


class AccountDisabled(AuthError):
    status_code = 403
    default_message = "Account is deactivated"


class ForbiddenError(CRMError):
    status_code = 403
    default_message = "Admin access only"


class SelfModificationForbidden(ForbiddenError):
    default_message = "You cannot modify your own account here"


# 404
class NotFoundError(CRMError):
    status_code = 404
    default_message = "Resource not found"


# 500
class InternalError(CRMError):
    status_code = 500


def translate_storage_errors(func):
    """Re-raise pymongo/bson failures as taxonomy errors."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CRMError:
            raise
        except DuplicateKeyError as exc:
            logger.info("Duplicate key in %s: %s", func.__qualname__, exc)
            raise DuplicateError("Record already exists") from exc
        except InvalidId as exc:
            raise ValidationError("Invalid ID format") from exc
        except PyMongoError as exc:
            logger.exception("Storage failure in %s", func.__qualname__)
            raise InternalError("Database error") from exc

    return wrapper
