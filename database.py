"""MongoDB access helpers.

Collections are named after the lowercased schema class (Product -> "product").
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import StoreError, ValidationError

logger = structlog.get_logger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect(database_url: Optional[str], database_name: Optional[str]) -> Optional[Database]:
    global client, db
    if not database_url or not database_name:
        logger.warning("database_not_configured")
        client, db = None, None
        return None
    client = MongoClient(database_url, tz_aware=True)
    db = client[database_name]
    ensure_indexes(db)
    logger.info("database_connected", database=database_name)
    return db


def get_db() -> Database:
    if db is None:
        raise StoreError("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["coupon"].create_index([("code", ASCENDING)], unique=True)
    database["cart"].create_index([("user", ASCENDING)], unique=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("paymentInfo.razorpayPaymentLinkId", ASCENDING)])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_object_id(value: Union[str, ObjectId], what: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except Exception:
        raise ValidationError(f"Invalid {what}")


def to_str_id(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: ``_id`` becomes ``id`` and ObjectIds become strings."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [to_str_id(v) for v in doc]
    if isinstance(doc, dict):
        out = {}
        for key, value in doc.items():
            if key == "_id":
                out["id"] = str(value)
            else:
                out[key] = to_str_id(value)
        return out
    return doc


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True)
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)
