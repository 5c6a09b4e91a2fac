"""
Per-user tasks and reminders.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, parse_datetime, serialize, start_of_day, to_object_id, utcnow
from errors import InvalidReminder, NotFoundError, ValidationError, translate_storage_errors

logger = logging.getLogger(__name__)

PRIORITIES = ("low", "medium", "high", "urgent")
STATUSES = ("pending", "in_progress", "completed", "cancelled")
OPEN_STATUSES = ("pending", "in_progress")
UPDATE_FIELDS = (
    "title",
    "description",
    "priority",
    "status",
    "due_date",
    "reminder_date",
    "contact_id",
    "lead_id",
)

TITLE_MIN, TITLE_MAX = 3, 200
DESCRIPTION_MAX = 1000
DEFAULT_LIMIT = 20
MAX_LIMIT = 100
UPCOMING_DAYS = 7


def _validate_title(value: Any) -> str:
    title = value.strip() if isinstance(value, str) else ""
    if not title:
        raise ValidationError("Task title is required")
    if len(title) < TITLE_MIN:
        raise ValidationError(f"Title must be at least {TITLE_MIN} characters")
    if len(title) > TITLE_MAX:
        raise ValidationError(f"Title cannot exceed {TITLE_MAX} characters")
    return title


def _validate_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if key == "title":
            out[key] = _validate_title(value)
        elif key == "description":
            description = value.strip() if isinstance(value, str) else ""
            if len(description) > DESCRIPTION_MAX:
                raise ValidationError(f"Description cannot exceed {DESCRIPTION_MAX} characters")
            out[key] = description
        elif key == "priority":
            if value not in PRIORITIES:
                raise ValidationError("Priority must be low, medium, high, or urgent")
            out[key] = value
        elif key == "status":
            if value not in STATUSES:
                raise ValidationError("Status must be pending, in_progress, completed, or cancelled")
            out[key] = value
        elif key in ("due_date", "reminder_date"):
            out[key] = parse_datetime(value, key)
        elif key == "contact_id":
            out[key] = to_object_id(value, "contact ID") if value else None
        elif key == "lead_id":
            out[key] = to_object_id(value, "lead ID") if value else None
    return out


def _check_due_date(due_date: Optional[datetime]) -> None:
    if due_date is None:
        raise ValidationError("Due date is required")
    # date-only: anything due today is still acceptable
    if due_date.date() < utcnow().date():
        raise ValidationError("Due date must be today or in the future")


def _check_reminder(reminder_date: Optional[datetime], due_date: Optional[datetime]) -> None:
    if reminder_date is not None and due_date is not None and reminder_date >= due_date:
        raise InvalidReminder()


class TaskStore:
    def __init__(self, db: Database):
        self.tasks = db["tasks"]

    def _scope(self, user_id: Any, **extra) -> Dict[str, Any]:
        query = {"user_id": to_object_id(user_id, "user ID")}
        query.update(extra)
        return query

    def _get_raw(self, user_id: Any, task_id: Any) -> Dict[str, Any]:
        task = self.tasks.find_one(self._scope(user_id, _id=to_object_id(task_id, "task ID")))
        if not task:
            raise NotFoundError("Task not found")
        return task

    @translate_storage_errors
    def list(
        self,
        user_id: Any,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        contact_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        limit: Any = DEFAULT_LIMIT,
    ) -> List[Dict[str, Any]]:
        try:
            limit = min(max(int(limit), 1), MAX_LIMIT)
        except (TypeError, ValueError):
            limit = DEFAULT_LIMIT
        query = self._scope(user_id)
        if status:
            query["status"] = status
        if priority:
            query["priority"] = priority
        if contact_id:
            query["contact_id"] = to_object_id(contact_id, "contact ID")
        if lead_id:
            query["lead_id"] = to_object_id(lead_id, "lead ID")
        cursor = self.tasks.find(query).sort("created_at", -1).limit(limit)
        return [serialize(doc) for doc in cursor]

    @translate_storage_errors
    def get(self, user_id: Any, task_id: Any) -> Dict[str, Any]:
        return serialize(self._get_raw(user_id, task_id))

    @translate_storage_errors
    def create(self, user_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get("title") or not payload.get("due_date"):
            raise ValidationError("Title and due date are required fields")
        fields = _validate_fields({k: v for k, v in payload.items() if k in UPDATE_FIELDS and k != "status"})
        _check_due_date(fields["due_date"])
        _check_reminder(fields.get("reminder_date"), fields["due_date"])

        task = {
            "user_id": to_object_id(user_id, "user ID"),
            "title": fields["title"],
            "description": fields.get("description", ""),
            "priority": fields.get("priority") or "medium",
            "status": "pending",
            "due_date": fields["due_date"],
            "reminder_date": fields.get("reminder_date"),
            "is_reminder_sent": False,
            "contact_id": fields.get("contact_id"),
            "lead_id": fields.get("lead_id"),
            "completed_at": None,
            "last_modified": utcnow(),
        }
        task = create_document(self.tasks, task)
        logger.info("Task %s created for user %s", task["_id"], user_id)
        return serialize(task)

    @translate_storage_errors
    def update(self, user_id: Any, task_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        task = self._get_raw(user_id, task_id)
        fields = _validate_fields({k: v for k, v in payload.items() if k in UPDATE_FIELDS})

        if "due_date" in fields:
            _check_due_date(fields["due_date"])
        if "due_date" in fields or "reminder_date" in fields:
            _check_reminder(
                fields.get("reminder_date", task.get("reminder_date")),
                fields.get("due_date", task.get("due_date")),
            )
        if "reminder_date" in fields:
            fields["is_reminder_sent"] = False

        now = utcnow()
        unset: Dict[str, str] = {}
        status = fields.get("status")
        if status == "completed" and task.get("status") != "completed":
            fields["completed_at"] = now
        elif status is not None and status != "completed" and task.get("status") == "completed":
            unset["completed_at"] = ""

        fields.update(last_modified=now, updated_at=now)
        update: Dict[str, Any] = {"$set": fields}
        if unset:
            update["$unset"] = unset
        task = self.tasks.find_one_and_update(
            {"_id": task["_id"]}, update, return_document=ReturnDocument.AFTER
        )
        return serialize(task)

    @translate_storage_errors
    def delete(self, user_id: Any, task_id: Any) -> None:
        result = self.tasks.delete_one(self._scope(user_id, _id=to_object_id(task_id, "task ID")))
        if result.deleted_count == 0:
            raise NotFoundError("Task not found")

    @translate_storage_errors
    def bulk_status_update(self, user_id: Any, task_ids: Any, status: Any) -> int:
        """Move many tasks to ``status`` at once and return how many changed."""
        if not isinstance(task_ids, list) or not task_ids:
            raise ValidationError("Please provide an array of task IDs")
        if status not in STATUSES:
            raise ValidationError("Please provide a valid status value")
        # reject the whole batch before touching anything
        try:
            ids = [to_object_id(task_id, "task ID") for task_id in task_ids]
        except ValidationError:
            raise ValidationError("One or more task IDs are invalid")

        now = utcnow()
        query = self._scope(user_id, _id={"$in": ids})
        if status == "completed":
            query["status"] = {"$ne": "completed"}
            update: Dict[str, Any] = {
                "$set": {"status": status, "completed_at": now, "last_modified": now, "updated_at": now}
            }
        else:
            update = {
                "$set": {"status": status, "last_modified": now, "updated_at": now},
                "$unset": {"completed_at": ""},
            }
        result = self.tasks.update_many(query, update)
        logger.info("Bulk status %s for user %s: %d task(s)", status, user_id, result.modified_count)
        return result.modified_count

    # ---------------------- ANALYTICS ----------------------

    def _today_query(self, user_id: Any) -> Dict[str, Any]:
        today = start_of_day()
        return self._scope(
            user_id,
            due_date={"$gte": today, "$lt": today + timedelta(days=1)},
            status={"$ne": "completed"},
        )

    def _overdue_query(self, user_id: Any) -> Dict[str, Any]:
        return self._scope(user_id, due_date={"$lt": utcnow()}, status={"$in": list(OPEN_STATUSES)})

    @translate_storage_errors
    def today(self, user_id: Any) -> List[Dict[str, Any]]:
        cursor = self.tasks.find(self._today_query(user_id)).sort("due_date", 1)
        return [serialize(doc) for doc in cursor]

    @translate_storage_errors
    def overdue(self, user_id: Any) -> List[Dict[str, Any]]:
        cursor = self.tasks.find(self._overdue_query(user_id)).sort("due_date", 1)
        return [serialize(doc) for doc in cursor]

    @translate_storage_errors
    def upcoming(self, user_id: Any) -> List[Dict[str, Any]]:
        today = start_of_day()
        query = self._scope(
            user_id,
            due_date={"$gte": today, "$lt": today + timedelta(days=UPCOMING_DAYS + 1)},
            status={"$in": list(OPEN_STATUSES)},
        )
        cursor = self.tasks.find(query).sort("due_date", 1)
        return [serialize(doc) for doc in cursor]

    @translate_storage_errors
    def stats(self, user_id: Any) -> Dict[str, Any]:
        def histogram(field: str, keys) -> Dict[str, int]:
            counts = {key: 0 for key in keys}
            rows = self.tasks.aggregate(
                [
                    {"$match": self._scope(user_id)},
                    {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
                ]
            )
            for row in rows:
                if row["_id"] is not None:
                    counts[row["_id"]] = row["count"]
            return counts

        return {
            "status_stats": histogram("status", STATUSES),
            "priority_stats": histogram("priority", PRIORITIES),
            "today_tasks": self.tasks.count_documents(self._today_query(user_id)),
            "overdue_tasks": self.tasks.count_documents(self._overdue_query(user_id)),
            "total_tasks": self.tasks.count_documents(self._scope(user_id)),
        }
