from __future__ import annotations

import copy
import itertools
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


# Primary key field per collection. Collections not listed get generated ids.
COLLECTION_KEYS: Dict[str, str] = {
    "patterns": "signature_hash",
    "merchants": "normalized",
    "transactions": "hash",
    "models": "name",
    "statistics": "key",
}

# Collections where writing an existing key is rejected instead of replacing it.
UNIQUE_COLLECTIONS = frozenset({"transactions"})


class DuplicateRecordError(Exception):
    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"{collection} already contains {key}")
        self.collection = collection
        self.key = key


class Store(ABC):
    """
    Async key/value document store used by the pipeline.

    Records are plain dicts. `put` upserts by the collection's key field, except
    for unique collections where an existing key raises DuplicateRecordError.
    """

    @abstractmethod
    async def put(self, collection: str, record: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_all(self, collection: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def count(self, collection: str) -> int:
        ...

    async def find(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        return [r for r in await self.get_all(collection) if r.get(field) == value]


class InMemoryStore(Store):
    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._ids = itertools.count(1)

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def _key_for(self, collection: str, record: Dict[str, Any]) -> str:
        key_field = COLLECTION_KEYS.get(collection)
        key = record.get(key_field) if key_field else record.get("id")
        if not key:
            items = self._collection(collection)
            key = f"{collection}:{next(self._ids)}"
            while key in items:
                key = f"{collection}:{next(self._ids)}"
        return str(key)

    async def put(self, collection: str, record: Dict[str, Any]) -> str:
        items = self._collection(collection)
        key = self._key_for(collection, record)
        if collection in UNIQUE_COLLECTIONS and key in items:
            raise DuplicateRecordError(collection, key)
        stored = copy.deepcopy(record)
        if collection not in COLLECTION_KEYS:
            stored["id"] = key
        items[key] = stored
        self._on_write(collection)
        return key

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        rec = self._collection(collection).get(key)
        return copy.deepcopy(rec) if rec is not None else None

    async def get_all(self, collection: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._collection(collection).values()]

    async def count(self, collection: str) -> int:
        return len(self._collection(collection))

    def _on_write(self, collection: str) -> None:
        """Hook for persistent subclasses; called after every successful put."""
