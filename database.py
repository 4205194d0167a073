"""
MongoDB access for PharmaPin.

``db`` is the process-wide database handle (None when DATABASE_URL is not
configured). Routes receive it through the ``get_db`` dependency so tests can
swap in an in-memory database.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import InvalidInput, StoreUnavailable

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    _client = MongoClient(settings.DATABASE_URL, tz_aware=True)
    db = _client[settings.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise StoreUnavailable("Database is not configured")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(s: str) -> ObjectId:
    try:
        return ObjectId(s)
    except (InvalidId, TypeError):
        raise InvalidInput("Invalid id")


def oids(ids) -> List[ObjectId]:
    out = []
    for s in ids:
        if ObjectId.is_valid(s):
            out.append(ObjectId(s))
    return out


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy a stored document into an API-safe dict (``_id`` -> ``id``)."""
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert one document, stamping created_at/updated_at. Returns the new id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[list] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def paginate(
    database: Database,
    collection_name: str,
    filter_dict: dict,
    page: int,
    limit: int,
    sort: Optional[list] = None,
) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(limit, 1)
    total = database[collection_name].count_documents(filter_dict)
    items = get_documents(database, collection_name, filter_dict, limit=limit, skip=(page - 1) * limit, sort=sort)
    return {
        "items": items,
        "total": total,
        "page": page,
        "total_pages": (total + limit - 1) // limit,
    }


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["patient"].create_index([("user_id", ASCENDING)], unique=True)
    database["pharmacy"].create_index([("license_number", ASCENDING)], unique=True, sparse=True)
    database["pharmacy"].create_index([("owner_id", ASCENDING)])
    database["pharmacy"].create_index([("status", ASCENDING), ("is_active", ASCENDING)])
    database["drug"].create_index([("pharmacy_id", ASCENDING), ("name", ASCENDING)])
    database["drug"].create_index([("pharmacy_id", ASCENDING), ("category", ASCENDING)])
    database["inventory"].create_index([("pharmacy_id", ASCENDING), ("drug_id", ASCENDING)], unique=True)
    database["inventory"].create_index([("drug_id", ASCENDING), ("is_available", ASCENDING)])
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("patient_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("pharmacy_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("MongoDB indexes ensured on %s", database.name)
