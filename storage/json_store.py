from __future__ import annotations

import json
import os
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict

import numpy as np

from services.json_logger import get_json_logger
from storage.store import InMemoryStore


logger = get_json_logger("statement_parser.store")


class _JsonEncoder(json.JSONEncoder):
    def default(self, o: Any):  # type: ignore[override]
        if isinstance(o, (date, datetime)):
            return o.isoformat()
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, np.generic):
            return o.item()
        return super().default(o)


class JsonFileStore(InMemoryStore):
    """
    Filesystem-backed store: one JSON file per collection under base_dir.

    Collections are loaded lazily on first access and rewritten in full after
    each put. Timestamps come back as ISO strings.
    """

    def __init__(self, base_dir: str) -> None:
        super().__init__()
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)
        self._loaded: set[str] = set()

    def _path(self, collection: str) -> str:
        return os.path.join(self.base_dir, f"{collection}.json")

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        if name not in self._loaded:
            self._loaded.add(name)
            path = self._path(name)
            items: Dict[str, Dict[str, Any]] = {}
            if os.path.exists(path):
                with open(path, "r", encoding="utf-8") as f:
                    items = json.load(f)
                logger.info("collection_loaded", extra={"extra": {"collection": name, "records": len(items)}})
            self._collections[name] = items
        return self._collections[name]

    def _on_write(self, collection: str) -> None:
        path = self._path(collection)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._collections[collection], f, ensure_ascii=False, indent=2, cls=_JsonEncoder)
        os.replace(tmp_path, path)
