"""
Sales pipeline leads.

Leads are shared across the team: any authenticated user can read and work
them, and an email address identifies at most one lead in the whole
collection.
"""

import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from contact_store import EMAIL_RE, clamp_pagination
from database import create_document, parse_datetime, serialize, to_object_id, utcnow
from errors import DuplicateEmail, NotFoundError, ValidationError, translate_storage_errors

logger = logging.getLogger(__name__)

STATUSES = ("new", "contacted", "qualified", "proposal", "negotiation", "closed_won", "closed_lost")
CLOSED_STATUSES = ("closed_won", "closed_lost")
HOT_STATUSES = ("new", "contacted", "qualified")
SOURCES = ("website", "referral", "social_media", "advertisement", "event", "other")
PRIORITIES = ("low", "medium", "high", "urgent")
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}

UPDATE_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "job_title",
    "source",
    "status",
    "value",
    "budget",
    "priority",
    "assigned_to",
    "next_follow_up",
    "custom_fields",
)
BULK_FIELDS = ("status", "assigned_to", "priority", "source")
SORT_FIELDS = (
    "created_at",
    "updated_at",
    "first_name",
    "last_name",
    "company",
    "status",
    "priority",
    "value",
    "budget",
    "last_contacted",
)
SEARCH_FIELDS = ("first_name", "last_name", "email", "company", "job_title")
STATS_MONTHS = 6


def _choice(field: str, value: Any, choices) -> str:
    if value not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(choices)}")
    return value


def _amount(field: str, value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    return amount


def _validate_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if key == "first_name":
            first_name = value.strip() if isinstance(value, str) else ""
            if not first_name:
                raise ValidationError("First name is required")
            out[key] = first_name
        elif key == "email":
            email = value.strip().lower() if isinstance(value, str) else ""
            if not email:
                raise ValidationError("Email is required")
            if not EMAIL_RE.match(email):
                raise ValidationError("Please enter a valid email")
            out[key] = email
        elif key == "status":
            out[key] = _choice("status", value, STATUSES)
        elif key == "source":
            out[key] = _choice("source", value, SOURCES)
        elif key == "priority":
            out[key] = _choice("priority", value, PRIORITIES)
        elif key in ("value", "budget"):
            out[key] = _amount(key, value)
        elif key == "assigned_to":
            out[key] = to_object_id(value, "assignee ID") if value else None
        elif key == "next_follow_up":
            out[key] = parse_datetime(value, "next_follow_up")
        elif key == "custom_fields":
            if value is not None and not isinstance(value, dict):
                raise ValidationError("custom_fields must be an object")
            out[key] = value or {}
        else:
            out[key] = value.strip() if isinstance(value, str) else value
    return out


def _month_window_start(now: datetime, months: int) -> datetime:
    year, month = now.year, now.month - (months - 1)
    while month <= 0:
        month += 12
        year -= 1
    return datetime(year, month, 1)


def _counts(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    return {str(row["_id"]): row["count"] for row in rows if row.get("_id") is not None}


def conversion_rate(won: int, total: int) -> str:
    return f"{won / total * 100:.2f}" if total else "0.00"


class LeadStore:
    def __init__(self, db: Database):
        self.leads = db["leads"]

    def _get_raw(self, lead_id: Any) -> Dict[str, Any]:
        lead = self.leads.find_one({"_id": to_object_id(lead_id, "lead ID")})
        if not lead:
            raise NotFoundError("Lead not found")
        return lead

    def _email_taken(self, email: str, exclude_id: Optional[ObjectId] = None) -> bool:
        query: Dict[str, Any] = {"email": email}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        return self.leads.find_one(query, {"_id": 1}) is not None

    @translate_storage_errors
    def create(self, creator_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        for required in ("first_name", "email"):
            if required not in payload:
                raise ValidationError(f"{required} is required")
        fields = _validate_fields({k: v for k, v in payload.items() if k in UPDATE_FIELDS})
        if self._email_taken(fields["email"]):
            raise DuplicateEmail("Lead with this email already exists")

        lead = {
            "first_name": fields["first_name"],
            "last_name": fields.get("last_name") or "",
            "email": fields["email"],
            "phone": fields.get("phone") or "",
            "company": fields.get("company") or "",
            "job_title": fields.get("job_title") or "",
            "source": fields.get("source") or "website",
            "status": fields.get("status") or "new",
            "priority": fields.get("priority") or "medium",
            "value": fields.get("value") or 0.0,
            "budget": fields.get("budget"),
            "assigned_to": fields.get("assigned_to"),
            "next_follow_up": fields.get("next_follow_up"),
            "custom_fields": fields.get("custom_fields") or {},
            "notes": [],
            "last_contacted": None,
            "created_by": to_object_id(creator_id, "user ID"),
        }
        lead = create_document(self.leads, lead)
        logger.info("Lead %s created by %s", lead["_id"], creator_id)
        return serialize(lead)

    @translate_storage_errors
    def list(
        self,
        status: Optional[str] = None,
        source: Optional[str] = None,
        priority: Optional[str] = None,
        assigned_to: Optional[str] = None,
        search: Optional[str] = None,
        start_date: Any = None,
        end_date: Any = None,
        page: Any = 1,
        limit: Any = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        page, limit = clamp_pagination(page, limit, default_limit=10)
        if sort_by not in SORT_FIELDS:
            sort_by = "created_at"
        direction = 1 if sort_order == "asc" else -1

        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if source:
            query["source"] = source
        if priority:
            query["priority"] = priority
        if assigned_to:
            query["assigned_to"] = to_object_id(assigned_to, "assignee ID")
        start = parse_datetime(start_date, "start_date")
        end = parse_datetime(end_date, "end_date")
        if start or end:
            query["created_at"] = {}
            if start:
                query["created_at"]["$gte"] = start
            if end:
                query["created_at"]["$lte"] = end
        if search and search.strip():
            pattern = re.escape(search.strip())
            query["$or"] = [{field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS]

        total = self.leads.count_documents(query)
        cursor = self.leads.find(query).sort(sort_by, direction).skip((page - 1) * limit).limit(limit)
        items = [serialize(doc) for doc in cursor]

        # filter options come from the whole collection, not the filtered page
        by_status = self.leads.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
        return {
            "items": items,
            "pagination": {
                "current_page": page,
                "total_pages": math.ceil(total / limit) if total else 0,
                "total_items": total,
                "items_per_page": limit,
                "has_more": page * limit < total,
            },
            "stats": _counts(list(by_status)),
            "filters": {
                "status": sorted(v for v in self.leads.distinct("status") if v),
                "source": sorted(v for v in self.leads.distinct("source") if v),
                "priority": sorted(v for v in self.leads.distinct("priority") if v),
            },
        }

    @translate_storage_errors
    def get(self, lead_id: Any) -> Dict[str, Any]:
        return serialize(self._get_raw(lead_id))

    @translate_storage_errors
    def assigned_to(self, user_id: Any) -> List[Dict[str, Any]]:
        docs = list(self.leads.find({"assigned_to": to_object_id(user_id, "user ID")}).sort("created_at", -1))
        docs.sort(key=lambda d: PRIORITY_RANK.get(d.get("priority"), 0), reverse=True)
        return [serialize(doc) for doc in docs]

    @translate_storage_errors
    def update(self, lead_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        lead = self._get_raw(lead_id)
        fields = _validate_fields({k: v for k, v in payload.items() if k in UPDATE_FIELDS})
        if "email" in fields and fields["email"] != lead.get("email"):
            if self._email_taken(fields["email"], exclude_id=lead["_id"]):
                raise DuplicateEmail("Another lead with this email already exists")
        fields["updated_at"] = utcnow()
        lead = self.leads.find_one_and_update(
            {"_id": lead["_id"]}, {"$set": fields}, return_document=ReturnDocument.AFTER
        )
        return serialize(lead)

    @translate_storage_errors
    def delete(self, lead_id: Any) -> None:
        result = self.leads.delete_one({"_id": to_object_id(lead_id, "lead ID")})
        if result.deleted_count == 0:
            raise NotFoundError("Lead not found")
        logger.info("Lead %s deleted", lead_id)

    def _push_note(self, lead_id: ObjectId, content: str, author_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        note = {
            "_id": ObjectId(),
            "content": content,
            "created_by": to_object_id(author_id, "user ID"),
            "created_at": now,
        }
        # touching the notes list always counts as contact with the lead
        changes = dict(changes, last_contacted=now, updated_at=now)
        return self.leads.find_one_and_update(
            {"_id": lead_id},
            {"$set": changes, "$push": {"notes": note}},
            return_document=ReturnDocument.AFTER,
        )

    @translate_storage_errors
    def add_note(self, lead_id: Any, content: Any, author_id: Any) -> List[Dict[str, Any]]:
        content = content.strip() if isinstance(content, str) else ""
        if not content:
            raise ValidationError("Note content is required")
        lead = self._get_raw(lead_id)
        lead = self._push_note(lead["_id"], content, author_id, {})
        return serialize(lead.get("notes", []))

    @translate_storage_errors
    def update_status(self, lead_id: Any, status: Any, note: Optional[str], author_id: Any) -> Dict[str, Any]:
        status = _choice("status", status, STATUSES)
        lead = self._get_raw(lead_id)
        note = note.strip() if isinstance(note, str) else ""
        if note:
            lead = self._push_note(
                lead["_id"], f"Status changed to {status}: {note}", author_id, {"status": status}
            )
        else:
            lead = self.leads.find_one_and_update(
                {"_id": lead["_id"]},
                {"$set": {"status": status, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        return serialize(lead)

    @translate_storage_errors
    def bulk_update(self, lead_ids: Any, update_fields: Any) -> Dict[str, int]:
        if not isinstance(lead_ids, list) or not lead_ids:
            raise ValidationError("Lead IDs are required")
        if not isinstance(update_fields, dict) or not update_fields:
            raise ValidationError("Update fields are required")
        fields = _validate_fields({k: v for k, v in update_fields.items() if k in BULK_FIELDS})
        if not fields:
            raise ValidationError(f"Only {', '.join(BULK_FIELDS)} can be bulk updated")
        ids = [to_object_id(lead_id, "lead ID") for lead_id in lead_ids]
        fields["updated_at"] = utcnow()
        result = self.leads.update_many({"_id": {"$in": ids}}, {"$set": fields})
        return {"matched": result.matched_count, "modified": result.modified_count}

    @translate_storage_errors
    def stats(self) -> Dict[str, Any]:
        months_start = _month_window_start(utcnow(), STATS_MONTHS)
        pipeline = [
            {
                "$facet": {
                    "total": [{"$count": "count"}],
                    "by_status": [{"$group": {"_id": "$status", "count": {"$sum": 1}}}],
                    "by_source": [{"$group": {"_id": "$source", "count": {"$sum": 1}}}],
                    "by_priority": [{"$group": {"_id": "$priority", "count": {"$sum": 1}}}],
                    "by_month": [
                        {"$match": {"created_at": {"$gte": months_start}}},
                        {
                            "$group": {
                                "_id": {"year": {"$year": "$created_at"}, "month": {"$month": "$created_at"}},
                                "count": {"$sum": 1},
                            }
                        },
                    ],
                    "hot": [
                        {"$match": {"priority": "high", "status": {"$in": list(HOT_STATUSES)}}},
                        {"$count": "count"},
                    ],
                    "conversion": [
                        {
                            "$group": {
                                "_id": None,
                                "total": {"$sum": 1},
                                "converted": {"$sum": {"$cond": [{"$eq": ["$status", "closed_won"]}, 1, 0]}},
                            }
                        }
                    ],
                }
            }
        ]
        rows = list(self.leads.aggregate(pipeline))
        facets = rows[0] if rows else {}

        total = facets.get("total") or [{"count": 0}]
        hot = facets.get("hot") or [{"count": 0}]
        conversion = facets.get("conversion") or [{"total": 0, "converted": 0}]
        months = sorted(
            facets.get("by_month", []), key=lambda row: (row["_id"]["year"], row["_id"]["month"]), reverse=True
        )
        return {
            "total_leads": total[0]["count"],
            "leads_by_status": _counts(facets.get("by_status", [])),
            "leads_by_source": _counts(facets.get("by_source", [])),
            "leads_by_priority": _counts(facets.get("by_priority", [])),
            "leads_by_month": [
                {"month": f"{row['_id']['year']}-{row['_id']['month']:02d}", "count": row["count"]}
                for row in months
            ],
            "hot_leads": hot[0]["count"],
            "conversion_rate": conversion_rate(conversion[0]["converted"], conversion[0]["total"]),
        }
