"""
Credential service: password hashing, bearer tokens and caller resolution.

Tokens are stateless HS256 JWTs carrying the user id as ``sub``; the only way
to revoke them early is to rotate ``JWT_SECRET``.
"""

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
from pymongo.database import Database

from config import settings
from database import is_object_id, to_object_id
from errors import (
    AccountDisabled,
    ForbiddenError,
    InvalidCredential,
    MissingCredential,
    UnknownSubject,
)


def _hash_password(password: str, salt: str, iterations: Optional[int] = None) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        iterations or settings.PASSWORD_HASH_ITERATIONS,
    ).hex()


def hash_password(password: str) -> Tuple[str, str]:
    """Return ``(salt, hash)`` for a raw password."""
    salt = secrets.token_hex(16)
    return salt, _hash_password(password, salt)


def verify_password(password: str, salt: Optional[str], expected_hash: Optional[str]) -> bool:
    if not salt or not expected_hash:
        return False
    return hmac.compare_digest(_hash_password(password, salt), expected_hash)


def create_access_token(user_id: Any, expires_in: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + (expires_in or timedelta(days=settings.JWT_EXPIRE_DAYS)),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> str:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise InvalidCredential("Token expired, please login again")
    except jwt.InvalidTokenError:
        raise InvalidCredential()
    subject = payload.get("sub")
    if not is_object_id(subject):
        raise InvalidCredential()
    return subject


def bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """
    Expect Authorization: Bearer <token>
    """
    if not auth_header:
        return None
    try:
        scheme, token = auth_header.split(" ", 1)
    except ValueError:
        return None
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class CredentialService:
    def __init__(self, db: Database):
        self.users = db["users"]

    def resolve(self, auth_header: Optional[str]) -> Dict[str, Any]:
        token = bearer_token(auth_header)
        if token is None:
            raise MissingCredential()
        subject = decode_access_token(token)
        user = self.users.find_one(
            {"_id": to_object_id(subject)}, {"password_hash": 0, "password_salt": 0}
        )
        if not user:
            raise UnknownSubject()
        if not user.get("is_active", True):
            raise AccountDisabled()
        return user


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"


def require_admin(user: Dict[str, Any]) -> Dict[str, Any]:
    if not is_admin(user):
        raise ForbiddenError()
    return user
