"""Keyed persistence for pipelines, progress records and the backup index.

The engine only needs get/put/delete and a filtered listing per collection.
``MemoryStore`` keeps everything in process; ``JsonFileStore`` writes one
JSON document per key so state survives a restart.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from pathlib import Path
import json
import logging
import os
import re
import threading

logger = logging.getLogger(__name__)

PIPELINES = "pipelines"
PROGRESS = "progress"
BACKUPS = "backups"

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


def _matches(document: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, expected in filters.items():
        actual = document.get(key)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class KeyValueStore(ABC):
    """Keyed document store, one namespace per collection."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Get a document, or None if absent."""
        pass

    @abstractmethod
    def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        """Insert or replace a document."""
        pass

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """Delete a document. Returns True if it existed."""
        pass

    @abstractmethod
    def list(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        """
        List documents in a collection.

        Keyword filters compare top-level fields for equality; a list or
        tuple value matches any of its members (e.g. ``status=["running", "paused"]``).
        """
        pass

    def close(self) -> None:
        """Release any resources held by the store."""
        pass


class MemoryStore(KeyValueStore):
    """Process-lifetime store guarded by a single re-entrant lock."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._data.get(collection, {}).get(key)
            return json.loads(json.dumps(document)) if document is not None else None

    def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        # Stored as a JSON round-trip so callers never share mutable state with the store
        snapshot = json.loads(json.dumps(document, default=str))
        with self._lock:
            self._data.setdefault(collection, {})[key] = snapshot

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            return self._data.get(collection, {}).pop(key, None) is not None

    def list(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        with self._lock:
            documents = list(self._data.get(collection, {}).values())
        return [
            json.loads(json.dumps(d)) for d in documents if _matches(d, filters)
        ]


class JsonFileStore(KeyValueStore):
    """File-backed store: ``<root>/<collection>/<key>.json``.

    Writes go to a temporary file that is atomically renamed into place.
    Each key has its own lock so concurrent pipelines never block each other.
    """

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[tuple, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        logger.info(f"JSON store at {self.root.resolve()}")

    def _lock_for(self, collection: str, key: str) -> threading.Lock:
        # Keyed like the file path, so every key sharing a file shares a lock
        lock_key = (_SAFE_KEY.sub("_", collection), _SAFE_KEY.sub("_", key))
        with self._locks_guard:
            lock = self._locks.get(lock_key)
            if lock is None:
                lock = threading.Lock()
                self._locks[lock_key] = lock
            return lock

    def _path(self, collection: str, key: str) -> Path:
        return self.root / _SAFE_KEY.sub("_", collection) / f"{_SAFE_KEY.sub('_', key)}.json"

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(collection, key)
        with self._lock_for(collection, key):
            if not path.exists():
                return None
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)

    def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        path = self._path(collection, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with self._lock_for(collection, key):
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, default=str)
            os.replace(tmp_path, path)

    def delete(self, collection: str, key: str) -> bool:
        path = self._path(collection, key)
        with self._lock_for(collection, key):
            if path.exists():
                path.unlink()
                return True
            return False

    def list(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        directory = self.root / _SAFE_KEY.sub("_", collection)
        if not directory.exists():
            return []

        documents = []
        for path in sorted(directory.glob("*.json")):
            key = path.stem
            with self._lock_for(collection, key):
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        document = json.load(f)
                except FileNotFoundError:
                    continue  # deleted between glob and open
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping unreadable document {path}: {e}")
                    continue
            if _matches(document, filters):
                documents.append(document)
        return documents
