"""
MongoDB access helpers.

The client is created once per process from DATABASE_URL / DATABASE_NAME.
Stores receive the database handle explicitly; this module only owns the
connection and the small helpers every collection shares.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from config import settings
from errors import ValidationError

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL and settings.DATABASE_NAME:
    _client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[settings.DATABASE_NAME]
else:
    logger.warning("DATABASE_URL / DATABASE_NAME not set, database unavailable")


# Fields never sent back to clients
_PRIVATE_FIELDS = {"password_hash", "password_salt"}


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form BSON hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_day(moment: Optional[datetime] = None) -> datetime:
    moment = moment or utcnow()
    return datetime.combine(moment.date(), time.min)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_datetime(value: Any, field: str) -> Optional[datetime]:
    """Coerce an incoming datetime/date/ISO string into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        try:
            return to_naive_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            pass
    raise ValidationError(f"Invalid {field}: {value!r}")


def is_object_id(value: Any) -> bool:
    if isinstance(value, ObjectId):
        return True
    return isinstance(value, str) and ObjectId.is_valid(value)


def to_object_id(value: Any, label: str = "ID") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not is_object_id(value):
        raise ValidationError(f"Invalid {label} format")
    return ObjectId(value)


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly: ``_id`` -> ``id``, ObjectId -> str."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [serialize(item) for item in value]
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for key, item in value.items():
            if key in _PRIVATE_FIELDS:
                continue
            out["id" if key == "_id" else key] = serialize(item)
        return out
    return value


def create_document(collection: Collection, data: Union[BaseModel, dict]) -> Dict[str, Any]:
    """Insert a document with created/updated timestamps and return it."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = collection.insert_one(data_dict)
    data_dict["_id"] = result.inserted_id
    return data_dict


def get_documents(
    collection: Collection,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[Iterable] = None,
) -> List[Dict[str, Any]]:
    cursor = collection.find(filter_dict or {})
    if sort:
        cursor = cursor.sort(list(sort))
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    database["users"].create_index("email", unique=True)
    database["contacts"].create_index([("owner_id", ASCENDING), ("email", ASCENDING)])
    database["contacts"].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
    database["contacts"].create_index([("owner_id", ASCENDING), ("tags", ASCENDING)])
    database["contacts"].create_index("deleted")
    database["leads"].create_index("email")
    database["leads"].create_index("status")
    database["leads"].create_index("assigned_to")
    database["leads"].create_index([("created_at", DESCENDING)])
    database["tasks"].create_index([("user_id", ASCENDING), ("due_date", ASCENDING)])
    database["tasks"].create_index("contact_id")
    database["tasks"].create_index("lead_id")
    database["activities"].create_index([("user_id", ASCENDING), ("date", DESCENDING)])
    database["dashboard_stats"].create_index("user_id", unique=True)
    logger.info("MongoDB indexes ensured on %s", database.name)
