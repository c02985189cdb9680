"""
MongoDB access for the learning portal.

The client is built once from DATABASE_URL / DATABASE_NAME. When either is
missing ``db`` stays None so the app can still start; routes report the
database as unavailable.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from bson import ObjectId
from pydantic import BaseModel, ValidationError
from pymongo import ASCENDING, MongoClient

from errors import InvalidState, ValidationFailed

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    try:
        _client = MongoClient(DATABASE_URL)
        db = _client[DATABASE_NAME]
    except Exception:
        logger.exception("Could not create MongoDB client")
        db = None


def ensure_indexes(database) -> None:
    # one enrollment per (student, course)
    database["enrollment"].create_index(
        [("student_id", ASCENDING), ("course_id", ASCENDING)], unique=True
    )
    database["user"].create_index("username", unique=True)


def validate_document(model: Type[BaseModel], doc: Dict[str, Any]) -> Dict[str, Any]:
    """Run ``doc`` through its collection model and return the normalized dict.

    This is the save hook: derived fields (course duration, test max score,
    enrollment completion state) are recomputed by the model validators.
    """
    data = {k: v for k, v in doc.items() if k != "_id"}
    try:
        validated = model.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed(exc)
    out = validated.model_dump()
    if "_id" in doc:
        out["_id"] = doc["_id"]
    return out


def create_document(database, collection_name: str, model: Type[BaseModel], data: Dict[str, Any]) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    doc = validate_document(model, {**data, "created_at": now, "updated_at": now})
    res = database[collection_name].insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


def save_document(database, collection_name: str, model: Type[BaseModel], doc: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and replace the stored fields of an existing document."""
    doc = validate_document(model, {**doc, "updated_at": datetime.now(timezone.utc)})
    fields = {k: v for k, v in doc.items() if k != "_id"}
    database[collection_name].update_one({"_id": doc["_id"]}, {"$set": fields})
    return doc


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: int = 0) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise InvalidState("Invalid id format")


def new_id() -> str:
    """Id for embedded documents (modules, notes)."""
    return str(ObjectId())
