"""
Activity feed: calls, meetings, emails and notes logged against a user's
contacts and leads. The dashboard reads it when the feed is enabled.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List

from pymongo.database import Database

from database import create_document, get_documents, parse_datetime, serialize, to_object_id, utcnow
from errors import ValidationError, translate_storage_errors

logger = logging.getLogger(__name__)

TYPES = ("call", "meeting", "email", "note", "task", "other")
MAX_LIMIT = 100


class ActivityFeed:
    def __init__(self, db: Database):
        self.activities = db["activities"]

    def _scope(self, user_id: Any, **extra) -> Dict[str, Any]:
        query = {"user_id": to_object_id(user_id, "user ID")}
        query.update(extra)
        return query

    @translate_storage_errors
    def create(self, user_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        title = payload.get("title")
        title = title.strip() if isinstance(title, str) else ""
        if not title:
            raise ValidationError("Please add a title")
        activity_type = payload.get("type")
        if activity_type not in TYPES:
            raise ValidationError(f"type must be one of: {', '.join(TYPES)}")

        duration = payload.get("duration")
        if duration is not None:
            try:
                duration = int(duration)
            except (TypeError, ValueError):
                raise ValidationError("duration must be a whole number of minutes")
            if duration < 0:
                raise ValidationError("duration cannot be negative")

        contact_id = payload.get("contact_id")
        lead_id = payload.get("lead_id")
        activity = {
            "user_id": to_object_id(user_id, "user ID"),
            "contact_id": to_object_id(contact_id, "contact ID") if contact_id else None,
            "lead_id": to_object_id(lead_id, "lead ID") if lead_id else None,
            "type": activity_type,
            "title": title,
            "description": (payload.get("description") or "").strip(),
            "date": parse_datetime(payload.get("date"), "date") or utcnow(),
            "duration": duration,
            "outcome": (payload.get("outcome") or "").strip(),
            "follow_up_date": parse_datetime(payload.get("follow_up_date"), "follow_up_date"),
            "is_completed": bool(payload.get("is_completed", False)),
        }
        activity = create_document(self.activities, activity)
        logger.info("Activity %s (%s) logged for user %s", activity["_id"], activity_type, user_id)
        return serialize(activity)

    @translate_storage_errors
    def list(self, user_id: Any, limit: int = 20, skip: int = 0) -> Dict[str, Any]:
        limit = min(max(int(limit), 1), MAX_LIMIT)
        skip = max(int(skip), 0)
        query = self._scope(user_id)
        docs = get_documents(self.activities, query, limit=limit, skip=skip, sort=[("date", -1)])
        return {"items": serialize(docs), "total": self.activities.count_documents(query)}

    @translate_storage_errors
    def recent(self, user_id: Any, limit: int = 10) -> List[Dict[str, Any]]:
        docs = get_documents(self.activities, self._scope(user_id), limit=limit, sort=[("created_at", -1)])
        return serialize(docs)

    @translate_storage_errors
    def since(self, user_id: Any, start: datetime) -> List[Dict[str, Any]]:
        docs = get_documents(
            self.activities, self._scope(user_id, created_at={"$gte": start}), sort=[("created_at", -1)]
        )
        return serialize(docs)

    @translate_storage_errors
    def search(self, user_id: Any, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        pattern = {"$regex": re.escape(query), "$options": "i"}
        docs = get_documents(
            self.activities,
            self._scope(user_id, **{"$or": [{"title": pattern}, {"description": pattern}]}),
            limit=limit,
        )
        return serialize(docs)
