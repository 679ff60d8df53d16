"""
Key-value storage used by the repositories.

Records are JSON-serializable values stored under opaque string keys. Two
backends are provided: MongoDB (one document per key) and an in-process
dictionary used when no database is configured.
"""

import copy
import logging
import re
import threading
from typing import Any, Dict, List, Optional, Protocol

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from config import DATABASE_NAME, DATABASE_URL, KV_COLLECTION
from errors import StoreError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def get_by_prefix(self, prefix: str) -> List[Any]: ...


class MongoKeyValueStore:
    """Stores each key as {"_id": key, "value": value}."""

    def __init__(self, collection: Collection):
        self._col = collection

    def get(self, key: str) -> Optional[Any]:
        try:
            doc = self._col.find_one({"_id": key})
        except PyMongoError as e:
            logger.error("kv get failed key=%s: %s", key, e)
            raise StoreError() from e
        return doc["value"] if doc else None

    def set(self, key: str, value: Any) -> None:
        try:
            self._col.replace_one({"_id": key}, {"_id": key, "value": value}, upsert=True)
        except PyMongoError as e:
            logger.error("kv set failed key=%s: %s", key, e)
            raise StoreError() from e

    def delete(self, key: str) -> None:
        try:
            self._col.delete_one({"_id": key})
        except PyMongoError as e:
            logger.error("kv delete failed key=%s: %s", key, e)
            raise StoreError() from e

    def get_by_prefix(self, prefix: str) -> List[Any]:
        query = {"_id": {"$regex": "^" + re.escape(prefix)}}
        try:
            return [doc["value"] for doc in self._col.find(query).sort("_id", 1)]
        except PyMongoError as e:
            logger.error("kv prefix scan failed prefix=%s: %s", prefix, e)
            raise StoreError() from e


class InMemoryKeyValueStore:
    """Dictionary-backed store. Values are copied on the way in and out."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            value = self._data.get(key)
        return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def get_by_prefix(self, prefix: str) -> List[Any]:
        with self._lock:
            items = sorted((k, v) for k, v in self._data.items() if k.startswith(prefix))
        return [copy.deepcopy(v) for _, v in items]

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]

_store: Optional[KeyValueStore] = None


def get_store() -> KeyValueStore:
    """Process-wide store; MongoDB when configured, otherwise in memory."""
    global _store
    if _store is None:
        if db is not None:
            _store = MongoKeyValueStore(db[KV_COLLECTION])
            logger.info("Using MongoDB key-value store db=%s collection=%s", DATABASE_NAME, KV_COLLECTION)
        else:
            _store = InMemoryKeyValueStore()
            logger.warning("DATABASE_URL/DATABASE_NAME not set, using in-memory store")
    return _store
