"""
MongoDB access helpers.

The app opens one client at startup (connect) and keeps the database handle
on app.state; request handlers receive it through the get_db dependency.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Union

from bson import ObjectId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from errors import ValidationError
from settings import Settings

logger = logging.getLogger(__name__)


def connect(settings: Settings) -> Database:
    # MongoClient connects lazily, so this does not block startup
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=5000)
    logger.info("Using database %s", settings.database_name)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    # unique keys, plus the order lookups callbacks and checkout run
    db["user"].create_index("email", unique=True)
    db["cart"].create_index("user_id", unique=True)
    db["coupon"].create_index("name", unique=True)
    db["order"].create_index("payment_intent.id", unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("order_status", ASCENDING)])
    logger.info("Indexes ensured on %s", db.name)


def get_db(request: Request) -> Database:
    return request.app.state.db


def object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {label}: {value}")
    return ObjectId(value)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly: _id becomes id, ObjectIds become strings."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = serialize(v)
            elif k == "hashed_password":
                continue
            else:
                out[k] = serialize(v)
        return out
    return value
