"""
User accounts: registration, login, profile self-service, the embedded
address book and the admin-only surface.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, serialize, start_of_day, to_object_id, utcnow
from errors import (
    AccountDisabled,
    DuplicateEmail,
    InvalidCredentials,
    LastAddress,
    NotFoundError,
    SelfModificationForbidden,
    ValidationError,
    WeakPassword,
    translate_storage_errors,
)
from security import create_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6

ROLES = ("user", "admin")
THEMES = ("light", "dark")
ADDRESS_TYPES = ("home", "work", "other")
DEFAULT_COUNTRY = "India"

PROFILE_FIELDS = ("name", "phone", "profile_image", "theme", "newsletter_subscription")
# password and email are never admin-editable
ADMIN_UPDATE_FIELDS = (
    "name",
    "phone",
    "profile_image",
    "theme",
    "role",
    "is_active",
    "email_verified",
    "newsletter_subscription",
)
ADDRESS_UPDATE_FIELDS = ("street", "city", "state", "country", "zip_code", "address_type", "is_default")


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ("" if value is None else str(value))


def _check_choice(field: str, value: Any, choices: Iterable[str]) -> None:
    if value not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(choices)}")


class AddressBook:
    """
    Ordered address list with exactly one default entry while non-empty.

    All mutation goes through this class; callers persist ``items``
    afterwards.
    """

    def __init__(self, addresses: Optional[List[Dict[str, Any]]] = None):
        self._items = [dict(addr) for addr in (addresses or [])]

    @property
    def items(self) -> List[Dict[str, Any]]:
        return [dict(addr) for addr in self._items]

    def __len__(self) -> int:
        return len(self._items)

    @staticmethod
    def build(data: Dict[str, Any], default_type: str = "home") -> Dict[str, Any]:
        address_type = data.get("address_type") or default_type
        _check_choice("address_type", address_type, ADDRESS_TYPES)
        return {
            "_id": ObjectId(),
            "street": _clean(data.get("street")),
            "city": _clean(data.get("city")),
            "state": _clean(data.get("state")),
            "country": _clean(data.get("country")) or DEFAULT_COUNTRY,
            "zip_code": _clean(data.get("zip_code")),
            "address_type": address_type,
            "is_default": bool(data.get("is_default", False)),
        }

    @classmethod
    def from_registration(cls, entries: Optional[List[Dict[str, Any]]]) -> "AddressBook":
        book = cls()
        for index, entry in enumerate(entries or []):
            book._items.append(cls.build(entry, "home" if index == 0 else "other"))
        book._ensure_single_default()
        return book

    def _index(self, address_id: Any) -> int:
        target = str(address_id)
        for index, addr in enumerate(self._items):
            if str(addr.get("_id")) == target:
                return index
        raise NotFoundError("Address not found")

    def _clear_defaults(self) -> None:
        for addr in self._items:
            addr["is_default"] = False

    def _ensure_single_default(self) -> None:
        if not self._items:
            return
        seen = False
        for addr in self._items:
            if addr.get("is_default") and not seen:
                seen = True
            else:
                addr["is_default"] = False
        if not seen:
            self._items[0]["is_default"] = True

    def add(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not _clean(data.get("city")):
            raise ValidationError("Please provide a city for the address")
        address = self.build(data)
        if address["is_default"]:
            self._clear_defaults()
        self._items.append(address)
        self._ensure_single_default()
        return address

    def update(self, address_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
        index = self._index(address_id)
        changes = {k: v for k, v in data.items() if k in ADDRESS_UPDATE_FIELDS}
        if "address_type" in changes:
            _check_choice("address_type", changes["address_type"], ADDRESS_TYPES)
        for key, value in changes.items():
            if key == "is_default":
                continue
            self._items[index][key] = _clean(value) if isinstance(value, str) else value
        if changes.get("is_default"):
            self._clear_defaults()
            self._items[index]["is_default"] = True
        elif "is_default" in changes:
            self._items[index]["is_default"] = False
        self._ensure_single_default()
        return self._items[index]

    def remove(self, address_id: Any) -> None:
        index = self._index(address_id)
        if len(self._items) == 1:
            raise LastAddress()
        removed = self._items.pop(index)
        if removed.get("is_default"):
            self._clear_defaults()
            self._items[0]["is_default"] = True
        self._ensure_single_default()

    def set_default(self, address_id: Any) -> None:
        index = self._index(address_id)
        self._clear_defaults()
        self._items[index]["is_default"] = True


class UserStore:
    def __init__(self, db: Database):
        self.users = db["users"]

    def _get_raw(self, user_id: Any) -> Dict[str, Any]:
        user = self.users.find_one({"_id": to_object_id(user_id, "user ID")})
        if not user:
            raise NotFoundError("User not found")
        return user

    # ---------------------- SELF SERVICE ----------------------

    @translate_storage_errors
    def register(
        self,
        profile: Dict[str, Any],
        raw_password: str,
        allow_role_override: bool = False,
    ) -> Dict[str, Any]:
        name = _clean(profile.get("name"))
        email = _clean(profile.get("email")).lower()
        if not name or not email or not raw_password:
            raise ValidationError("Please provide all fields: name, email, password")
        if not EMAIL_RE.match(email):
            raise ValidationError("Please enter a valid email address")
        if len(raw_password) < MIN_PASSWORD_LENGTH:
            raise WeakPassword()

        role = "user"
        requested = profile.get("role")
        if allow_role_override and requested in ROLES:
            role = requested

        if self.users.find_one({"email": email}):
            raise DuplicateEmail("User already exists")

        salt, pwd_hash = hash_password(raw_password)
        now = utcnow()
        user_doc = {
            "name": name,
            "email": email,
            "password_salt": salt,
            "password_hash": pwd_hash,
            "phone": _clean(profile.get("phone")),
            "profile_image": "",
            "theme": "light",
            "role": role,
            "addresses": AddressBook.from_registration(profile.get("addresses")).items,
            "last_sync": now,
            "last_login": now,
            "email_verified": False,
            "is_active": True,
            "newsletter_subscription": True,
        }
        user = create_document(self.users, user_doc)
        logger.info("Registered user %s (%s)", user["_id"], role)
        return serialize(user)

    @translate_storage_errors
    def authenticate(self, email: str, raw_password: str) -> Tuple[Dict[str, Any], str]:
        if not email or not raw_password:
            raise ValidationError("Please provide email and password")
        user = self.users.find_one({"email": _clean(email).lower()})
        # same error for unknown email and wrong password
        if not user or not verify_password(raw_password, user.get("password_salt"), user.get("password_hash")):
            raise InvalidCredentials()
        if not user.get("is_active", True):
            raise AccountDisabled()
        now = utcnow()
        self.users.update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
        user["last_login"] = now
        return serialize(user), create_access_token(user["_id"])

    @translate_storage_errors
    def get_profile(self, user_id: Any) -> Dict[str, Any]:
        return serialize(self._get_raw(user_id))

    @translate_storage_errors
    def update_profile(self, user_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in payload.items() if k in PROFILE_FIELDS}
        if "theme" in changes:
            _check_choice("theme", changes["theme"], THEMES)
        if "name" in changes and not _clean(changes["name"]):
            raise ValidationError("Name cannot be empty")
        return self._apply(user_id, changes)

    @translate_storage_errors
    def change_password(self, user_id: Any, current_password: str, new_password: str) -> None:
        if not current_password or not new_password:
            raise ValidationError("Please provide current and new password")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise WeakPassword("New password must be at least 6 characters")
        user = self._get_raw(user_id)
        if not verify_password(current_password, user.get("password_salt"), user.get("password_hash")):
            raise InvalidCredentials("Current password is incorrect")
        salt, pwd_hash = hash_password(new_password)
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password_salt": salt, "password_hash": pwd_hash, "updated_at": utcnow()}},
        )

    @translate_storage_errors
    def delete_account(self, user_id: Any) -> None:
        result = self.users.delete_one({"_id": to_object_id(user_id, "user ID")})
        if result.deleted_count == 0:
            raise NotFoundError("User not found")
        logger.info("User %s deleted their account", user_id)

    @translate_storage_errors
    def touch_last_sync(self, user_id: Any) -> Dict[str, Any]:
        return self._apply(user_id, {"last_sync": utcnow()})

    def _apply(self, user_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        changes = dict(changes, updated_at=utcnow())
        user = self.users.find_one_and_update(
            {"_id": to_object_id(user_id, "user ID")},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if not user:
            raise NotFoundError("User not found")
        return serialize(user)

    # ---------------------- ADDRESSES ----------------------

    @translate_storage_errors
    def list_addresses(self, user_id: Any) -> List[Dict[str, Any]]:
        return serialize(self._get_raw(user_id).get("addresses", []))

    def _mutate_addresses(self, user_id: Any, mutate) -> List[Dict[str, Any]]:
        user = self._get_raw(user_id)
        book = AddressBook(user.get("addresses"))
        mutate(book)
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"addresses": book.items, "updated_at": utcnow()}},
        )
        return serialize(book.items)

    @translate_storage_errors
    def add_address(self, user_id: Any, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._mutate_addresses(user_id, lambda book: book.add(data))

    @translate_storage_errors
    def update_address(self, user_id: Any, address_id: Any, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._mutate_addresses(user_id, lambda book: book.update(address_id, data))

    @translate_storage_errors
    def delete_address(self, user_id: Any, address_id: Any) -> List[Dict[str, Any]]:
        return self._mutate_addresses(user_id, lambda book: book.remove(address_id))

    @translate_storage_errors
    def set_default_address(self, user_id: Any, address_id: Any) -> List[Dict[str, Any]]:
        return self._mutate_addresses(user_id, lambda book: book.set_default(address_id))

    # ---------------------- ADMIN ----------------------

    @translate_storage_errors
    def list_users(self) -> List[Dict[str, Any]]:
        return [serialize(u) for u in self.users.find().sort("created_at", -1)]

    @translate_storage_errors
    def get_user(self, user_id: Any) -> Dict[str, Any]:
        return serialize(self._get_raw(user_id))

    @translate_storage_errors
    def update_user(self, user_id: Any, payload: Dict[str, Any], caller_id: Any = None) -> Dict[str, Any]:
        changes = {k: v for k, v in payload.items() if k in ADMIN_UPDATE_FIELDS}
        if caller_id is not None and str(caller_id) == str(user_id):
            if changes.get("is_active") is False:
                raise SelfModificationForbidden("You cannot deactivate your own account")
            if changes.get("role", "admin") != "admin":
                raise SelfModificationForbidden("You cannot change your own role")
        if "role" in changes:
            _check_choice("role", changes["role"], ROLES)
        if "theme" in changes:
            _check_choice("theme", changes["theme"], THEMES)
        return self._apply(user_id, changes)

    @translate_storage_errors
    def delete_user(self, caller_id: Any, user_id: Any) -> None:
        if str(caller_id) == str(user_id):
            raise SelfModificationForbidden("You cannot delete your own account")
        result = self.users.delete_one({"_id": to_object_id(user_id, "user ID")})
        if result.deleted_count == 0:
            raise NotFoundError("User not found")
        logger.info("Admin %s deleted user %s", caller_id, user_id)

    @translate_storage_errors
    def toggle_active(self, caller_id: Any, user_id: Any) -> Dict[str, Any]:
        if str(caller_id) == str(user_id):
            raise SelfModificationForbidden("You cannot deactivate your own account")
        user = self._get_raw(user_id)
        return self._apply(user["_id"], {"is_active": not user.get("is_active", True)})

    @translate_storage_errors
    def stats(self) -> Dict[str, int]:
        return {
            "total_users": self.users.count_documents({}),
            "total_admins": self.users.count_documents({"role": "admin"}),
            "total_active_users": self.users.count_documents({"is_active": True}),
            "new_users_today": self.users.count_documents({"created_at": {"$gte": start_of_day()}}),
        }
