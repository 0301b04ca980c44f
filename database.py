"""
MongoDB access helpers.

The client is created lazily from DATABASE_URL / DATABASE_NAME. Services never
import `db` directly; they receive a database handle from the request
dependency so tests can swap in an in-memory database.
"""
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.decimal128 import Decimal128
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import DatabaseUnavailable, NotFound

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

client: Optional[MongoClient] = MongoClient(DATABASE_URL) if DATABASE_URL else None
db: Optional[Database] = client[DATABASE_NAME] if client is not None else None


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_bson(value: Any) -> Any:
    """Convert Decimals (at any depth) to Decimal128 so money stays exact."""
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_bson(v) for v in value]
    return value


def from_bson(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: from_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_bson(v) for v in value]
    return value


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Turn a raw document into a plain dict with a string `id`."""
    if not doc:
        return None
    doc = from_bson(dict(doc))
    doc["id"] = str(doc.pop("_id"))
    return doc


def oid(id_str: str, what: str = "Resource") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc.setdefault("updated_at", stamp)
    result = database[collection_name].insert_one(to_bson(doc))
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, newest_first: bool = False) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if newest_first:
        cursor = cursor.sort([("created_at", DESCENDING), ("_id", DESCENDING)])
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(doc) for doc in cursor]


def ensure_indexes(database: Database) -> None:
    database["users"].create_index([("email_key", ASCENDING)], unique=True)
    database["carts"].create_index([("user_id", ASCENDING)], unique=True)
    database["products"].create_index([("name", ASCENDING)], unique=True)
    database["orders"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["orders"].create_index([("status", ASCENDING)])


def get_db() -> Database:
    """Request dependency; tests override it with an in-memory database."""
    if db is None:
        raise DatabaseUnavailable()
    return db
