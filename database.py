from __future__ import annotations
import logging
from typing import Any, Optional
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument

from config import settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
        logger.info("Connected to database %s", settings.DATABASE_NAME)
    return _db


def use_database(db: Optional[AsyncIOMotorDatabase]) -> None:
    """Swap the active database handle (tests install an in-memory one)."""
    global _db
    _db = db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def strip_mongo_id(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    d.pop("_id", None)
    return d


async def next_id(collection_name: str) -> int:
    # Integer public ids, one counter per collection
    db = await get_db()
    counter = await db["counters"].find_one_and_update(
        {"_id": collection_name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(counter["seq"])


async def create_document(collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    db = await get_db()
    now = utcnow()
    data_with_meta = {**data, "id": await next_id(collection_name), "created_at": now, "updated_at": now}
    result = await db[collection_name].insert_one(data_with_meta)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    return strip_mongo_id(inserted) or {}


async def get_document(collection_name: str, filter_dict: dict[str, Any]) -> Optional[dict[str, Any]]:
    db = await get_db()
    return strip_mongo_id(await db[collection_name].find_one(filter_dict))


async def get_documents(
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    limit: int = 100,
    sort: Optional[list[tuple[str, int]]] = None,
) -> list[dict[str, Any]]:
    db = await get_db()
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.limit(limit)
    docs = []
    async for d in cursor:
        docs.append(strip_mongo_id(d))
    return docs


async def update_document(collection_name: str, filter_dict: dict[str, Any], changes: dict[str, Any]) -> Optional[dict[str, Any]]:
    db = await get_db()
    updated = await db[collection_name].find_one_and_update(
        filter_dict,
        {"$set": {**changes, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return strip_mongo_id(updated)
