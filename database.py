"""
Database helpers for the School Administration backend.

Collections are named after the schema classes (lowercased). The module-level
``db`` is ``None`` when no DATABASE_URL is configured so the API can still boot
and report the missing database on each request.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument

from settings import settings

logger = structlog.get_logger()

_client: Optional[MongoClient] = None
db = None

if settings.DATABASE_URL:
    _client = MongoClient(settings.DATABASE_URL)
    db = _client[settings.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    if db is None:
        raise RuntimeError("Database not available")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    projection: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    if db is None:
        raise RuntimeError("Database not available")
    cursor = db[collection_name].find(filter_dict or {}, projection)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


# -------------------- Counters -------------------- #

def next_sequence(name: str) -> int:
    """Atomically increment and return the named counter (starts at 1)."""
    if db is None:
        raise RuntimeError("Database not available")
    counter = db["counters"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(counter["seq"])


def next_code(name: str, prefix: str, width: int = 4) -> str:
    """Human-readable sequence code, e.g. next_code("staffCode", "STAFF") -> "STAFF0001"."""
    return f"{prefix}{str(next_sequence(name)).zfill(width)}"


def ensure_indexes() -> None:
    if db is None:
        logger.warning("Skipping index creation, database not configured")
        return
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["staff"].create_index([("email", ASCENDING)], unique=True)
    db["staff"].create_index([("staff_id", ASCENDING)], unique=True)
    db["student"].create_index([("admission_no", ASCENDING)], unique=True)
    db["student"].create_index([("email", ASCENDING)], unique=True)
    db["studentauth"].create_index([("username", ASCENDING)], unique=True)
    db["attendance"].create_index(
        [("student_id", ASCENDING), ("date", ASCENDING)], unique=True
    )
    logger.info("Database indexes ensured")
