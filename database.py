"""
MongoDB access for the storefront.

The connection is opened once at import from DATABASE_URL / DATABASE_NAME.
When either is missing ``db`` stays None. Requests that need it answer with
UPSTREAM_UNAVAILABLE instead of failing at startup; the cart keeps working
from its local cache.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from errors import BadRequestError, UpstreamUnavailableError

logger = logging.getLogger("storefront.database")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")


def get_db() -> Database:
    if db is None:
        raise UpstreamUnavailableError("Database not configured")
    return db


def get_db_or_none() -> Optional[Database]:
    """For callers that can keep working without a database."""
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_oid(value: Optional[str], what: str = "ID") -> ObjectId:
    if not value:
        raise BadRequestError(f"{what} is required")
    if not ObjectId.is_valid(value):
        raise BadRequestError(f"Invalid {what.lower()} format")
    return ObjectId(value)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if database is None:
        raise UpstreamUnavailableError("Database not configured")
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_dict(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d
