import pytest
from pymongo.errors import PyMongoError

from database import MongoCartStorage, PersistenceError


class DownCollection:
    def find_one(self, *args, **kwargs):
        raise PyMongoError("server selection timeout")

    def update_one(self, *args, **kwargs):
        raise PyMongoError("server selection timeout")


class MemoryCollection:
    def __init__(self):
        self.docs = {}

    def find_one(self, query):
        return self.docs.get(query["_id"])

    def update_one(self, query, update, upsert=False):
        self.docs.setdefault(query["_id"], {"_id": query["_id"]}).update(update["$set"])


def test_cart_storage_roundtrip():
    storage = MongoCartStorage({"cart": MemoryCollection()})
    assert storage.load("cart-1") is None
    storage.save("cart-1", '{"items": []}')
    assert storage.load("cart-1") == '{"items": []}'


def test_cart_storage_wraps_driver_errors():
    storage = MongoCartStorage({"cart": DownCollection()})
    with pytest.raises(PersistenceError, match="Could not load cart"):
        storage.load("cart-1")
    with pytest.raises(PersistenceError, match="Could not save cart"):
        storage.save("cart-1", "{}")
