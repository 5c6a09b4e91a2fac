from datetime import datetime, timedelta, timezone

import jwt
import pytest

from config import settings
from errors import AccountDisabled, ForbiddenError, InvalidCredential, MissingCredential, UnknownSubject
from security import (
    CredentialService,
    bearer_token,
    create_access_token,
    decode_access_token,
    hash_password,
    require_admin,
    verify_password,
)


def test_hash_password_is_salted_and_verifiable():
    salt_a, hash_a = hash_password("secret123")
    salt_b, hash_b = hash_password("secret123")

    assert salt_a != salt_b
    assert hash_a != hash_b
    assert verify_password("secret123", salt_a, hash_a)
    assert not verify_password("wrong-pass", salt_a, hash_a)


def test_verify_password_without_stored_hash():
    assert not verify_password("secret123", None, None)


def test_access_token_round_trip():
    token = create_access_token("64b7f0c2a1b2c3d4e5f60718")

    assert decode_access_token(token) == "64b7f0c2a1b2c3d4e5f60718"


def test_expired_token_rejected():
    token = create_access_token("64b7f0c2a1b2c3d4e5f60718", expires_in=timedelta(seconds=-5))

    with pytest.raises(InvalidCredential) as exc:
        decode_access_token(token)
    assert "expired" in exc.value.message


def test_token_signed_with_other_secret_rejected():
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {"sub": "64b7f0c2a1b2c3d4e5f60718", "exp": now + timedelta(days=1)},
        "not-the-secret",
        algorithm="HS256",
    )

    with pytest.raises(InvalidCredential):
        decode_access_token(token)


def test_token_with_malformed_subject_rejected():
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {"sub": "not-an-object-id", "exp": now + timedelta(days=1)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )

    with pytest.raises(InvalidCredential):
        decode_access_token(token)


@pytest.mark.parametrize(
    "header, expected",
    [
        (None, None),
        ("", None),
        ("Token abc", None),
        ("Bearer", None),
        ("Bearer   ", None),
        ("Bearer abc.def", "abc.def"),
        ("bearer abc", "abc"),
    ],
)
def test_bearer_token_parsing(header, expected):
    assert bearer_token(header) == expected


def test_resolve_returns_user_without_password_fields(db, user):
    resolved = CredentialService(db).resolve(f"Bearer {create_access_token(user['id'])}")

    assert str(resolved["_id"]) == user["id"]
    assert "password_hash" not in resolved
    assert "password_salt" not in resolved


def test_resolve_missing_header(db):
    with pytest.raises(MissingCredential):
        CredentialService(db).resolve(None)


def test_resolve_unknown_subject(db):
    token = create_access_token("64b7f0c2a1b2c3d4e5f60718")

    with pytest.raises(UnknownSubject):
        CredentialService(db).resolve(f"Bearer {token}")


def test_resolve_disabled_account(db, users, user):
    users.update_user(user["id"], {"is_active": False})

    with pytest.raises(AccountDisabled) as exc:
        CredentialService(db).resolve(f"Bearer {create_access_token(user['id'])}")
    assert exc.value.status_code == 403


def test_require_admin():
    assert require_admin({"role": "admin"}) == {"role": "admin"}
    with pytest.raises(ForbiddenError):
        require_admin({"role": "user"})
