"""
MongoDB access for The Life Journal

The client is opened once by the application lifespan and kept on
``app.state``; handlers receive the database through the ``get_db``
dependency.
"""
from datetime import datetime, timezone
from typing import Optional, Union

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException, Request
from pydantic import BaseModel
from pymongo import DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = structlog.get_logger(__name__)

LESSONS = "lessons"
USERS = "users"
COMMENTS = "comments"
REPORTS = "lessonReports"


def utcnow() -> datetime:
    # naive UTC, which is what pymongo hands back on reads
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_indexes(db: Database):
    # one user per email, even under concurrent first-login upserts
    db[USERS].create_index("email", unique=True)


def connect(url: str, name: str):
    client = MongoClient(url)
    db = client[name]
    try:
        client.admin.command("ping")
        ensure_indexes(db)
        logger.info("database_ping_ok", database=name)
    except PyMongoError as e:
        logger.warning("database_ping_failed", database=name, error=str(e))
    return client, db


def get_db(request: Request) -> Database:
    return request.app.state.db


def parse_object_id(value: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


def to_public(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping ``createdAt`` unless the caller sent one."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict.pop("_id", None)
    data_dict.setdefault("createdAt", utcnow())
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    sort_field: Optional[str] = "createdAt",
    limit: int = 0,
) -> list:
    """Find documents, newest first by default. ``limit <= 0`` means no limit."""
    cursor = db[collection_name].find(filter_dict or {})
    if sort_field:
        cursor = cursor.sort(sort_field, DESCENDING)
    if limit > 0:
        cursor = cursor.limit(limit)
    return [to_public(d) for d in cursor]
