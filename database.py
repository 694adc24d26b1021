"""
MongoDB access helpers

Every document stores a string ``id`` (uuid4) that the API uses for lookups.
Mongo's own ``_id`` stays internal and is stripped by ``serialize_doc``.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from errors import StorageError
from settings import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()

client: Optional[MongoClient] = None
db: Optional[Database] = None

if _settings.database_url and _settings.database_name:
    client = MongoClient(_settings.database_url, serverSelectionTimeoutMS=5000, tz_aware=True)
    db = client[_settings.database_name]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise StorageError("database not configured (set DATABASE_URL and DATABASE_NAME)")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes unless the client is tz aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    """Insert a document, stamping id and timestamps. Returns the document id."""
    target = database if database is not None else get_db()
    payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    payload.setdefault("id", new_id())
    payload.setdefault("created_at", now)
    payload["updated_at"] = now
    target[collection_name].insert_one(payload)
    return payload["id"]


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
) -> List[dict]:
    target = database if database is not None else get_db()
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [serialize_doc(d) for d in cursor]
