"""
MongoDB access for the order desk API.

A single ``db`` handle is created at import time from ``DATABASE_URL`` and
``DATABASE_NAME``. Route handlers receive it through the ``get_db``
dependency so tests can swap in another database.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL, MONGO_TIMEOUT_MS
from errors import NotFound, StoreUnavailable

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(
        DATABASE_URL,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        socketTimeoutMS=MONGO_TIMEOUT_MS,
        connectTimeoutMS=MONGO_TIMEOUT_MS,
    )
    db = _client[DATABASE_NAME]


def get_db():
    if db is None:
        raise StoreUnavailable("Database is not configured")
    return db


def create_document(database, collection_name: str, data) -> str:
    """
    Insert a document stamped with created_at/updated_at and return its id.

    Plain dicts are stamped in place, so the caller sees _id and timestamps.
    """
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value, label: str = "Record") -> ObjectId:
    """Turn a path/body id into an ObjectId; malformed ids cannot exist, so they are NotFound."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly (ObjectIds become strings)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize(v) for v in value]
    return value


def ensure_indexes(database) -> None:
    database.order.create_index([("orderNumber", ASCENDING)], unique=True)
    database.order.create_index([("status", ASCENDING)])
    database.order.create_index([("bit", ASCENDING)])
    database.brand.create_index([("name", ASCENDING)], unique=True)
    database.product.create_index([("brandId", ASCENDING)])
    database.retailer.create_index([("phone", ASCENDING)], unique=True)
    database.user.create_index([("email", ASCENDING)], unique=True)
