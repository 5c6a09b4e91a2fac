import pytest

from errors import (
    AccountDisabled,
    DuplicateEmail,
    InvalidCredentials,
    LastAddress,
    NotFoundError,
    SelfModificationForbidden,
    ValidationError,
    WeakPassword,
)
from user_store import AddressBook


def _defaults(addresses):
    return [a for a in addresses if a["is_default"]]


def test_register_normalizes_and_hides_password(users):
    user = users.register({"name": " Asha ", "email": " Asha@Example.COM "}, "secret123")

    assert user["name"] == "Asha"
    assert user["email"] == "asha@example.com"
    assert user["role"] == "user"
    assert user["is_active"] is True
    assert "password_hash" not in user
    assert "password_salt" not in user


def test_register_ignores_role_unless_override_allowed(users):
    plain = users.register({"name": "Eve", "email": "eve@example.com", "role": "admin"}, "secret123")
    promoted = users.register(
        {"name": "Root", "email": "root@example.com", "role": "admin"}, "secret123", allow_role_override=True
    )

    assert plain["role"] == "user"
    assert promoted["role"] == "admin"


def test_register_rejects_duplicate_email(users, user):
    with pytest.raises(DuplicateEmail):
        users.register({"name": "Copy", "email": "ASHA@example.com"}, "secret123")


def test_register_rejects_short_password(users):
    with pytest.raises(WeakPassword):
        users.register({"name": "Short", "email": "short@example.com"}, "12345")


def test_register_requires_name(users):
    with pytest.raises(ValidationError):
        users.register({"email": "noname@example.com"}, "secret123")


def test_register_normalizes_addresses(users):
    user = users.register(
        {
            "name": "Addr",
            "email": "addr@example.com",
            "addresses": [
                {"city": "Pune", "is_default": True},
                {"city": "Goa", "is_default": True},
                {"city": "Delhi", "address_type": "work"},
            ],
        },
        "secret123",
    )
    addresses = user["addresses"]

    assert [a["address_type"] for a in addresses] == ["home", "other", "work"]
    assert [a["is_default"] for a in addresses] == [True, False, False]
    assert all(a["country"] == "India" for a in addresses)


def test_register_without_default_promotes_first():
    book = AddressBook.from_registration([{"city": "Pune"}, {"city": "Goa"}])

    assert [a["is_default"] for a in book.items] == [True, False]


def test_authenticate_success_refreshes_last_login(users, user):
    logged_in, token = users.authenticate("ASHA@example.com", "secret123")

    assert logged_in["id"] == user["id"]
    assert token
    assert logged_in["last_login"] is not None


def test_authenticate_same_error_for_unknown_and_wrong(users, user):
    with pytest.raises(InvalidCredentials) as wrong:
        users.authenticate("asha@example.com", "bad-password")
    with pytest.raises(InvalidCredentials) as unknown:
        users.authenticate("nobody@example.com", "secret123")

    assert wrong.value.message == unknown.value.message


def test_authenticate_disabled_account(users, user):
    users.update_user(user["id"], {"is_active": False})

    with pytest.raises(AccountDisabled):
        users.authenticate("asha@example.com", "secret123")


def test_update_profile_uses_allow_list(users, user):
    updated = users.update_profile(
        user["id"], {"name": "Asha R", "theme": "dark", "role": "admin", "email": "x@example.com"}
    )

    assert updated["name"] == "Asha R"
    assert updated["theme"] == "dark"
    assert updated["role"] == "user"
    assert updated["email"] == "asha@example.com"


def test_update_profile_rejects_unknown_theme(users, user):
    with pytest.raises(ValidationError):
        users.update_profile(user["id"], {"theme": "purple"})


def test_change_password(users, user):
    with pytest.raises(InvalidCredentials):
        users.change_password(user["id"], "wrong-current", "newsecret")
    with pytest.raises(WeakPassword):
        users.change_password(user["id"], "secret123", "123")

    users.change_password(user["id"], "secret123", "newsecret")

    users.authenticate("asha@example.com", "newsecret")
    with pytest.raises(InvalidCredentials):
        users.authenticate("asha@example.com", "secret123")


def test_delete_account(users, user):
    users.delete_account(user["id"])

    with pytest.raises(NotFoundError):
        users.get_profile(user["id"])


# ---------------------- addresses ----------------------

def test_first_address_becomes_default(users, user):
    addresses = users.add_address(user["id"], {"city": "Pune"})

    assert len(addresses) == 1
    assert addresses[0]["is_default"] is True
    assert addresses[0]["address_type"] == "home"


def test_add_address_requires_city(users, user):
    with pytest.raises(ValidationError):
        users.add_address(user["id"], {"street": "MG Road"})


def test_default_moves_then_falls_back_on_delete(users, user):
    a = users.add_address(user["id"], {"city": "Pune"})[0]
    b = users.add_address(user["id"], {"city": "Goa"})[1]

    addresses = users.set_default_address(user["id"], b["id"])
    assert [x["id"] for x in _defaults(addresses)] == [b["id"]]

    addresses = users.delete_address(user["id"], b["id"])
    assert len(addresses) == 1
    assert addresses[0]["id"] == a["id"]
    assert addresses[0]["is_default"] is True


def test_adding_default_address_clears_previous(users, user):
    users.add_address(user["id"], {"city": "Pune"})
    addresses = users.add_address(user["id"], {"city": "Goa", "is_default": True})

    assert [x["city"] for x in _defaults(addresses)] == ["Goa"]


def test_update_clearing_only_default_reelects_first(users, user):
    users.add_address(user["id"], {"city": "Pune"})
    second = users.add_address(user["id"], {"city": "Goa", "is_default": True})[1]

    addresses = users.update_address(user["id"], second["id"], {"is_default": False, "city": "Panaji"})

    assert len(_defaults(addresses)) == 1
    assert addresses[0]["is_default"] is True
    assert addresses[1]["city"] == "Panaji"


def test_cannot_delete_last_address(users, user):
    only = users.add_address(user["id"], {"city": "Pune"})[0]

    with pytest.raises(LastAddress):
        users.delete_address(user["id"], only["id"])

    addresses = users.list_addresses(user["id"])
    assert [x["id"] for x in addresses] == [only["id"]]
    assert addresses[0]["is_default"] is True


def test_unknown_address_not_found(users, user):
    users.add_address(user["id"], {"city": "Pune"})

    with pytest.raises(NotFoundError):
        users.set_default_address(user["id"], "64b7f0c2a1b2c3d4e5f60718")


def test_single_default_after_mixed_sequence(users, user):
    ids = [users.add_address(user["id"], {"city": city})[-1]["id"] for city in ("Pune", "Goa", "Delhi", "Agra")]

    users.set_default_address(user["id"], ids[2])
    users.delete_address(user["id"], ids[2])
    users.update_address(user["id"], ids[3], {"is_default": True})
    users.delete_address(user["id"], ids[0])
    addresses = users.update_address(user["id"], ids[3], {"is_default": False})

    assert len(_defaults(addresses)) == 1


# ---------------------- admin ----------------------

def test_update_user_never_touches_email_or_password(users, user):
    updated = users.update_user(
        user["id"], {"email": "new@example.com", "password": "hijack", "role": "admin", "name": "Promoted"}
    )

    assert updated["email"] == "asha@example.com"
    assert updated["role"] == "admin"
    assert updated["name"] == "Promoted"
    users.authenticate("asha@example.com", "secret123")


def test_admin_cannot_delete_or_deactivate_self(users, admin):
    with pytest.raises(SelfModificationForbidden):
        users.delete_user(admin["id"], admin["id"])
    with pytest.raises(SelfModificationForbidden):
        users.toggle_active(admin["id"], admin["id"])


def test_admin_update_cannot_demote_or_deactivate_self(users, admin):
    with pytest.raises(SelfModificationForbidden):
        users.update_user(admin["id"], {"is_active": False}, caller_id=admin["id"])
    with pytest.raises(SelfModificationForbidden):
        users.update_user(admin["id"], {"role": "user"}, caller_id=admin["id"])

    assert users.get_user(admin["id"])["is_active"] is True
    assert users.get_user(admin["id"])["role"] == "admin"
    assert users.update_user(admin["id"], {"name": "Head Admin"}, caller_id=admin["id"])["name"] == "Head Admin"


def test_toggle_active_flips_flag(users, admin, user):
    assert users.toggle_active(admin["id"], user["id"])["is_active"] is False
    assert users.toggle_active(admin["id"], user["id"])["is_active"] is True


def test_user_stats(users, admin, user, other_user):
    users.toggle_active(admin["id"], other_user["id"])

    stats = users.stats()

    assert stats["total_users"] == 3
    assert stats["total_admins"] == 1
    assert stats["total_active_users"] == 2
    assert stats["new_users_today"] == 3
