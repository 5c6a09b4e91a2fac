"""
Contacts owned by a single user.

Contacts are soft-deleted: ``deleted`` is flipped and the document stays in
the collection, but every read here filters it out.
"""

import logging
import math
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, is_object_id, parse_datetime, serialize, to_object_id, utcnow
from errors import CRMError, DuplicateEmail, NotFoundError, ValidationError, translate_storage_errors

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[\d\s\-\+\(\)]{10,20}$")

SOURCES = ("website", "referral", "social", "event", "other")
SORT_FIELDS = ("first_name", "last_name", "email", "company", "created_at", "last_modified")
UPDATE_FIELDS = (
    "first_name",
    "last_name",
    "company",
    "job_title",
    "email",
    "phone",
    "address",
    "tags",
    "notes",
    "last_contacted",
    "is_favorite",
    "source",
)
TEXT_FIELDS = ("first_name", "last_name", "company", "job_title", "phone", "notes")
ADDRESS_FIELDS = ("street", "city", "state", "country", "zip_code")

MAX_LIMIT = 100
MAX_BATCH = 100
MAX_NOTES = 2000


def clamp_pagination(page: Any, limit: Any, default_limit: int = 20):
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = default_limit
    return max(page, 1), min(max(limit, 1), MAX_LIMIT)


def parse_sort(sort: Optional[str], allowed=SORT_FIELDS):
    """``-field`` sorts descending; unknown fields fall back to newest first."""
    sort = (sort or "").strip()
    field = sort.lstrip("-")
    if field not in allowed:
        return "created_at", -1
    return field, -1 if sort.startswith("-") else 1


def normalize_tags(tags: Any) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = [tags]
    out: List[str] = []
    for tag in tags:
        tag = tag.strip() if isinstance(tag, str) else str(tag).strip()
        if tag and tag not in out:
            out.append(tag)
    return out


def _normalize_address(address: Any) -> Optional[Dict[str, str]]:
    if not isinstance(address, dict):
        return None
    cleaned = {}
    for key in ADDRESS_FIELDS:
        value = address.get(key)
        if isinstance(value, str) and value.strip():
            cleaned[key] = value.strip()
    return cleaned or None


def _validate_first_name(value: Any) -> str:
    first_name = value.strip() if isinstance(value, str) else ""
    if not first_name:
        raise ValidationError("First name is required")
    if len(first_name) < 2:
        raise ValidationError("First name must be at least 2 characters")
    return first_name


def _validate_email(value: Any) -> Optional[str]:
    if value is None:
        return None
    email = str(value).strip().lower()
    if not email:
        return None
    if not EMAIL_RE.match(email):
        raise ValidationError("Please include a valid email")
    return email


def _validate_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Trim and check every field present in ``fields``."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if key == "first_name":
            out[key] = _validate_first_name(value)
        elif key == "email":
            out[key] = _validate_email(value)
        elif key == "tags":
            out[key] = normalize_tags(value)
        elif key == "address":
            out[key] = _normalize_address(value)
        elif key == "source":
            source = value or "other"
            if source not in SOURCES:
                raise ValidationError(f"source must be one of: {', '.join(SOURCES)}")
            out[key] = source
        elif key == "last_contacted":
            out[key] = parse_datetime(value, "last_contacted")
        elif key == "is_favorite":
            out[key] = bool(value)
        elif key in TEXT_FIELDS:
            out[key] = value.strip() if isinstance(value, str) else ("" if value is None else str(value))
        else:
            out[key] = value
    if out.get("phone") and not PHONE_RE.match(out["phone"]):
        raise ValidationError("Please enter a valid phone number (10-20 digits)")
    if len(out.get("notes") or "") > MAX_NOTES:
        raise ValidationError("Notes cannot exceed 2000 characters")
    return out


class ContactStore:
    def __init__(self, db: Database):
        self.contacts = db["contacts"]

    def _scope(self, owner_id: Any, **extra) -> Dict[str, Any]:
        query = {"owner_id": to_object_id(owner_id, "owner ID"), "deleted": False}
        query.update(extra)
        return query

    def _email_taken(self, owner_id: Any, email: Optional[str], exclude_id: Optional[ObjectId] = None) -> bool:
        if not email:
            return False
        query = self._scope(owner_id, email=email)
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        return self.contacts.find_one(query, {"_id": 1}) is not None

    # ---------------------- READS ----------------------

    @translate_storage_errors
    def list(
        self,
        owner_id: Any,
        search: Optional[str] = None,
        company: Optional[str] = None,
        tag: Optional[str] = None,
        is_favorite: Optional[bool] = None,
        source: Optional[str] = None,
        page: Any = 1,
        limit: Any = 20,
        sort: Optional[str] = "-created_at",
    ) -> Dict[str, Any]:
        page, limit = clamp_pagination(page, limit)
        sort_field, sort_order = parse_sort(sort)

        query = self._scope(owner_id)
        if search and search.strip():
            pattern = re.escape(search.strip())
            query["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}}
                for field in ("first_name", "last_name", "email", "company", "tags")
            ]
        if company and company.strip():
            query["company"] = {"$regex": f"^{re.escape(company.strip())}$", "$options": "i"}
        if tag and tag.strip():
            query["tags"] = tag.strip()
        if is_favorite is not None:
            query["is_favorite"] = is_favorite
        if source and source.strip():
            query["source"] = source.strip()

        total = self.contacts.count_documents(query)
        cursor = (
            self.contacts.find(query)
            .sort(sort_field, sort_order)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        items = [serialize(doc) for doc in cursor]
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
            "has_more": page * limit < total,
        }

    @translate_storage_errors
    def get(self, owner_id: Any, contact_id: Any) -> Dict[str, Any]:
        contact = self.contacts.find_one(self._scope(owner_id, _id=to_object_id(contact_id, "contact ID")))
        if not contact:
            raise NotFoundError("Contact not found")
        return serialize(contact)

    @translate_storage_errors
    def stats(self, owner_id: Any) -> Dict[str, Any]:
        now = utcnow()
        by_source = self.contacts.aggregate(
            [
                {"$match": self._scope(owner_id, source={"$exists": True, "$ne": None})},
                {"$group": {"_id": "$source", "count": {"$sum": 1}}},
                {"$project": {"source": "$_id", "count": 1, "_id": 0}},
            ]
        )
        return {
            "total": self.contacts.count_documents(self._scope(owner_id)),
            "recent_week": self.contacts.count_documents(
                self._scope(owner_id, created_at={"$gte": now - timedelta(days=7)})
            ),
            "recent_month": self.contacts.count_documents(
                self._scope(owner_id, created_at={"$gte": now - timedelta(days=30)})
            ),
            "favorites": self.contacts.count_documents(self._scope(owner_id, is_favorite=True)),
            "by_source": list(by_source),
        }

    @translate_storage_errors
    def tag_stats(self, owner_id: Any, limit: int = 20) -> List[Dict[str, Any]]:
        pipeline = [
            {"$match": self._scope(owner_id, tags={"$exists": True, "$ne": []})},
            {"$unwind": "$tags"},
            {"$group": {"_id": "$tags", "count": {"$sum": 1}}},
            {"$project": {"tag": "$_id", "count": 1, "_id": 0}},
            {"$sort": {"count": -1, "tag": 1}},
            {"$limit": limit},
        ]
        return list(self.contacts.aggregate(pipeline))

    @translate_storage_errors
    def companies(self, owner_id: Any) -> List[str]:
        return sorted(c for c in self.contacts.distinct("company", self._scope(owner_id)) if c)

    @translate_storage_errors
    def tags(self, owner_id: Any) -> List[str]:
        return sorted(t for t in self.contacts.distinct("tags", self._scope(owner_id)) if t)

    # ---------------------- WRITES ----------------------

    def _insert(self, owner_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        if "first_name" not in payload:
            raise ValidationError("First name is required")
        fields = _validate_fields({k: v for k, v in payload.items() if k in UPDATE_FIELDS})
        if self._email_taken(owner_id, fields.get("email")):
            raise DuplicateEmail("Contact with this email already exists")

        now = utcnow()
        contact = {
            "owner_id": to_object_id(owner_id, "owner ID"),
            "first_name": fields["first_name"],
            "last_name": fields.get("last_name", ""),
            "email": fields.get("email"),
            "phone": fields.get("phone", ""),
            "company": fields.get("company", ""),
            "job_title": fields.get("job_title", ""),
            "notes": fields.get("notes", ""),
            "tags": fields.get("tags", []),
            "source": fields.get("source", "other"),
            "last_contacted": fields.get("last_contacted"),
            "is_favorite": fields.get("is_favorite", False),
            "deleted": False,
            "last_modified": now,
        }
        if fields.get("address"):
            contact["address"] = fields["address"]
        return create_document(self.contacts, contact)

    @translate_storage_errors
    def create(self, owner_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        contact = self._insert(owner_id, payload)
        logger.info("Contact %s created for user %s", contact["_id"], owner_id)
        return serialize(contact)

    def _apply_update(
        self, owner_id: Any, object_id: ObjectId, payload: Dict[str, Any], include_deleted: bool = False
    ) -> Optional[Dict[str, Any]]:
        fields = _validate_fields({k: v for k, v in payload.items() if k in UPDATE_FIELDS})
        query: Dict[str, Any] = {"_id": object_id, "owner_id": to_object_id(owner_id, "owner ID")}
        email = fields.get("email")
        if include_deleted:
            existing = self.contacts.find_one(query, {"email": 1})
            if not existing:
                return None
            # a revived record keeps its stored email unless the payload replaces it
            email = fields["email"] if "email" in fields else existing.get("email")
        if self._email_taken(owner_id, email, exclude_id=object_id):
            raise DuplicateEmail("Another contact with this email already exists")
        now = utcnow()
        fields.update(last_modified=now, updated_at=now)

        if include_deleted:
            # a synced record is live again
            fields["deleted"] = False
        else:
            query["deleted"] = False
        return self.contacts.find_one_and_update(
            query, {"$set": fields}, return_document=ReturnDocument.AFTER
        )

    @translate_storage_errors
    def update(self, owner_id: Any, contact_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        contact = self._apply_update(owner_id, to_object_id(contact_id, "contact ID"), payload)
        if not contact:
            raise NotFoundError("Contact not found")
        return serialize(contact)

    @translate_storage_errors
    def toggle_favorite(self, owner_id: Any, contact_id: Any) -> Dict[str, Any]:
        query = self._scope(owner_id, _id=to_object_id(contact_id, "contact ID"))
        contact = self.contacts.find_one(query)
        if not contact:
            raise NotFoundError("Contact not found")
        now = utcnow()
        contact = self.contacts.find_one_and_update(
            query,
            {"$set": {"is_favorite": not contact.get("is_favorite", False), "last_modified": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(contact)

    @translate_storage_errors
    def soft_delete(self, owner_id: Any, contact_id: Any) -> str:
        now = utcnow()
        contact = self.contacts.find_one_and_update(
            self._scope(owner_id, _id=to_object_id(contact_id, "contact ID")),
            {"$set": {"deleted": True, "last_modified": now, "updated_at": now}},
        )
        if not contact:
            raise NotFoundError("Contact not found")
        logger.info("Contact %s soft-deleted by user %s", contact["_id"], owner_id)
        return str(contact["_id"])

    @translate_storage_errors
    def batch_sync(self, owner_id: Any, contacts: Any) -> Dict[str, Any]:
        """
        Upsert a batch of client-side contacts, one at a time.

        Items carrying an ``id`` are updated in place, or created when no such
        contact exists for the owner; items without one are created. Failures
        are collected per item and never stop the batch.
        """
        if not isinstance(contacts, list):
            raise ValidationError("Contacts must be an array")
        if len(contacts) > MAX_BATCH:
            raise ValidationError(f"Cannot process more than {MAX_BATCH} contacts at once")

        results: Dict[str, List[Any]] = {"created": [], "updated": [], "errors": []}
        for item in contacts:
            try:
                if not isinstance(item, dict):
                    raise ValidationError("Contact must be an object")
                data = dict(item)
                raw_id = data.pop("id", None) or data.pop("_id", None)
                if raw_id is not None:
                    if not is_object_id(raw_id):
                        raise ValidationError("Invalid contact ID format")
                    _validate_first_name(data.get("first_name"))
                    contact = self._apply_update(owner_id, ObjectId(str(raw_id)), data, include_deleted=True)
                    if contact:
                        results["updated"].append(str(contact["_id"]))
                        continue
                results["created"].append(str(self._insert(owner_id, data)["_id"]))
            except CRMError as exc:
                results["errors"].append(self._batch_error(item, exc.message))
            except PyMongoError:
                logger.exception("Batch sync item failed for user %s", owner_id)
                results["errors"].append(self._batch_error(item, "Database error"))

        logger.info(
            "Batch sync for user %s: %d created, %d updated, %d failed",
            owner_id,
            len(results["created"]),
            len(results["updated"]),
            len(results["errors"]),
        )
        results["summary"] = {
            "total_processed": len(contacts),
            "successful": len(results["created"]) + len(results["updated"]),
            "failed": len(results["errors"]),
        }
        return results

    @staticmethod
    def _batch_error(item: Any, message: str) -> Dict[str, str]:
        label = "Unknown contact"
        if isinstance(item, dict):
            label = item.get("email") or item.get("first_name") or label
        return {"contact": str(label), "error": message}
