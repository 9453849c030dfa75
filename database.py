import os
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable

from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client: Optional[MongoClient] = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


class PersistenceError(Exception):
    """An insert, upsert or lookup against the store failed."""


def _to_dict(data) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def to_str_id(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(collection_name: str, data) -> str:
    if db is None:
        raise PersistenceError("Database not configured")
    now = datetime.utcnow()
    doc = {"_id": str(uuid.uuid4()), **_to_dict(data), "created_at": now, "updated_at": now}
    try:
        db[collection_name].insert_one(doc)
    except PyMongoError as e:
        raise PersistenceError(f"Insert into {collection_name} failed: {e}") from e
    return doc["_id"]


# Cart storage: one serialized cart per cart id, last write wins

class MongoCartStorage:
    def __init__(self, database):
        self.collection = database["cart"]

    def load(self, key: str) -> Optional[str]:
        try:
            doc = self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise PersistenceError(f"Could not load cart: {e}") from e
        if not doc:
            return None
        return doc.get("state")

    def save(self, key: str, raw: str) -> None:
        try:
            self.collection.update_one(
                {"_id": key},
                {"$set": {"state": raw, "updated_at": datetime.utcnow()}},
                upsert=True,
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not save cart: {e}") from e


# Catalog

class MongoProductCatalog:
    def __init__(self, database):
        self.collection = database["product"]

    def find_by_ids(self, ids: Iterable[str]) -> List[dict]:
        cursor = self.collection.find({"_id": {"$in": list(ids)}}, {"metadata": 1})
        return [to_str_id(d) for d in cursor]

    def find_by_slug_or_id(self, key: str) -> Optional[dict]:
        doc = self.collection.find_one({"$or": [{"slug": key}, {"_id": key}]}, {"metadata": 1})
        return to_str_id(doc)


# Orders, order items, customers

class MongoOrderRepository:
    def __init__(self, database):
        self.db = database

    def insert_order(self, order) -> dict:
        doc = {"_id": str(uuid.uuid4()), **_to_dict(order)}
        try:
            self.db["order"].insert_one(doc)
        except PyMongoError as e:
            raise PersistenceError(f"Could not create order: {e}") from e
        return to_str_id(doc)

    def insert_order_items(self, items: List) -> List[dict]:
        docs = [{"_id": str(uuid.uuid4()), **_to_dict(it)} for it in items]
        try:
            self.db["order_item"].insert_many(docs)
        except PyMongoError as e:
            raise PersistenceError(f"Could not create order items: {e}") from e
        return [to_str_id(d) for d in docs]

    def upsert_customer(self, customer) -> dict:
        data = _to_dict(customer)
        now = datetime.utcnow()
        if data.get("user_id") is None:
            data.pop("user_id", None)
        try:
            doc = self.db["customer"].find_one_and_update(
                {"$or": [{"email": data["email"]}, {"phone": data["phone"]}]},
                {
                    "$set": {**data, "updated_at": now},
                    "$setOnInsert": {"_id": str(uuid.uuid4()), "created_at": now},
                    "$inc": {"order_count": 1},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not save customer: {e}") from e
        return to_str_id(doc)

    def get_order(self, order_id: str) -> Optional[dict]:
        try:
            return to_str_id(self.db["order"].find_one({"_id": order_id}))
        except PyMongoError as e:
            raise PersistenceError(f"Could not load order: {e}") from e

    def get_order_by_number(self, order_number: str) -> Optional[dict]:
        try:
            return to_str_id(self.db["order"].find_one({"order_number": order_number}))
        except PyMongoError as e:
            raise PersistenceError(f"Could not load order: {e}") from e

    def get_order_items(self, order_id: str) -> List[dict]:
        try:
            return [to_str_id(d) for d in self.db["order_item"].find({"order_id": order_id})]
        except PyMongoError as e:
            raise PersistenceError(f"Could not load order items: {e}") from e
