"""
MongoDB access for the StyleDecor API.

Collections are named after the lowercase schema class (user, service,
booking, payment). Routes receive the database through the ``get_db``
dependency so tests can swap in another store.
"""
import os
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING
from pymongo.database import Database
from pymongo.results import UpdateResult, DeleteResult

from logger import logger

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "styledecor")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["booking"].create_index([("customer_email", ASCENDING)])
    database["payment"].create_index([("transaction_id", ASCENDING)], unique=True)
    logger.info("Indexes ensured on {}", database.name)


# ------------------ Documents ------------------

def create_document(database: Database, collection_name: str, data) -> str:
    """Insert a pydantic model or dict, stamping created_at when missing."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="json", exclude_none=True)
    else:
        data_dict = dict(data)
    data_dict.setdefault("created_at", now())
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  sort: Optional[list] = None, skip: int = 0, limit: int = 0) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


# ------------------ Helpers ------------------

def oid(s: str) -> ObjectId:
    try:
        return ObjectId(s)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def inserted(inserted_id: str) -> Dict[str, Any]:
    return {"acknowledged": True, "inserted_id": inserted_id}


def updated(result: UpdateResult) -> Dict[str, Any]:
    return {
        "acknowledged": result.acknowledged,
        "matched_count": result.matched_count,
        "modified_count": result.modified_count,
    }


def deleted(result: DeleteResult) -> Dict[str, Any]:
    return {"acknowledged": result.acknowledged, "deleted_count": result.deleted_count}
