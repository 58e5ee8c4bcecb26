"""
Database helpers

MongoDB access shared by the API. `db` is None when DATABASE_URL or
DATABASE_NAME is missing so the app still starts and /test can report it.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]
    logger.info(f"Connected to MongoDB database {DATABASE_NAME}")
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set, database disabled")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes unless the client is tz aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def object_id_or_raw(doc_id: str) -> Union[ObjectId, str]:
    """Ids are ObjectIds except for collections that generate their own string ids."""
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        return doc_id


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif isinstance(value, ObjectId):
            out[key] = str(value)
        else:
            out[key] = value
    return out


class DatabaseUnavailable(RuntimeError):
    """Raised when DATABASE_URL or DATABASE_NAME is missing."""


def get_collection(name: str):
    if db is None:
        raise DatabaseUnavailable("Database not configured: set DATABASE_URL and DATABASE_NAME")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert one document, stamping createdAt/updatedAt, and return its id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now_utc()
    doc.setdefault("createdAt", stamp)
    doc.setdefault("updatedAt", stamp)
    result = get_collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def get_document(collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
    return get_collection(collection_name).find_one({"_id": object_id_or_raw(doc_id)})


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = get_collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def update_document(collection_name: str, doc_id: str, fields: Dict[str, Any]) -> bool:
    """$set the given fields plus updatedAt. Returns False when nothing matched."""
    result = get_collection(collection_name).update_one(
        {"_id": object_id_or_raw(doc_id)},
        {"$set": {**fields, "updatedAt": now_utc()}},
    )
    return result.matched_count > 0
