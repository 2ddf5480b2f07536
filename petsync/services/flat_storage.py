"""
Flat Key-Value Storage
Synchronous string storage used when the durable store cannot be opened, and
as the home of legacy data written before the durable store existed.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import redis

logger = logging.getLogger(__name__)


class QuotaExceededError(Exception):
    """Raised when a write would exceed the storage quota."""
    pass


class FlatStorage(ABC):
    """Flat string key-value storage with localStorage semantics."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        pass

    def read_json(self, key: str, default: Any = None) -> Any:
        """Parse the JSON value under ``key``; missing or malformed values give ``default``."""
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to load {key}: {str(e)}")
            return default

    def write_json(self, key: str, value: Any) -> bool:
        try:
            self.set_item(key, json.dumps(value))
            return True
        except (QuotaExceededError, OSError, redis.RedisError) as e:
            logger.error(f"Failed to save {key}: {str(e)}")
            return False


class MemoryFlatStorage(FlatStorage):
    """In-process storage, optionally bounded by ``max_bytes`` (UTF-16 estimate)."""

    def __init__(self, max_bytes: Optional[int] = None):
        self._items: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.max_bytes = max_bytes

    def _size_with(self, key: str, value: str) -> int:
        total = (len(key) + len(value)) * 2
        for existing_key, existing_value in self._items.items():
            if existing_key != key:
                total += (len(existing_key) + len(existing_value)) * 2
        return total

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def _check_quota(self, key: str, value: str):
        if self.max_bytes is not None and self._size_with(key, value) > self.max_bytes:
            raise QuotaExceededError(f"Writing {key} exceeds {self.max_bytes} bytes")

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._check_quota(key, value)
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items.keys())


class JsonFileFlatStorage(MemoryFlatStorage):
    """Storage persisted as a single JSON object on disk, rewritten on every change."""

    def __init__(self, path: str, max_bytes: Optional[int] = None):
        super().__init__(max_bytes)
        self.path = path
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as handle:
                data = json.load(handle)
        except (OSError, ValueError) as e:
            logger.error(f"Flat storage file {self.path} is unreadable, starting empty: {str(e)}")
            return
        if isinstance(data, dict):
            self._items = {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _flush(self):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as handle:
            json.dump(self._items, handle)
        os.replace(tmp_path, self.path)

    def _write_through(self, key: str, value: Optional[str]):
        # Memory is restored when the file cannot be rewritten
        previous = self._items.get(key)
        if value is None:
            self._items.pop(key, None)
        else:
            self._items[key] = value
        try:
            self._flush()
        except OSError:
            if previous is None:
                self._items.pop(key, None)
            else:
                self._items[key] = previous
            raise

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._check_quota(key, value)
            self._write_through(key, value)

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._write_through(key, None)


class RedisFlatStorage(FlatStorage):
    """Flat storage kept in Redis string keys under a namespace prefix."""

    def __init__(self, redis_client: redis.Redis, prefix: str = 'petchecky:flat:'):
        self.redis_client = redis_client
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str, prefix: str = 'petchecky:flat:') -> 'RedisFlatStorage':
        return cls(redis.from_url(redis_url, decode_responses=True), prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get_item(self, key: str) -> Optional[str]:
        value = self.redis_client.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode('utf-8')
        return value

    def set_item(self, key: str, value: str) -> None:
        try:
            self.redis_client.set(self._key(key), value)
        except redis.exceptions.ResponseError as e:
            if 'OOM' in str(e):
                raise QuotaExceededError(str(e))
            raise

    def remove_item(self, key: str) -> None:
        self.redis_client.delete(self._key(key))

    def keys(self) -> List[str]:
        keys = []
        for raw_key in self.redis_client.scan_iter(match=f"{self.prefix}*"):
            if isinstance(raw_key, bytes):
                raw_key = raw_key.decode('utf-8')
            keys.append(raw_key[len(self.prefix):])
        return keys


def create_flat_storage(backend: str, path: Optional[str] = None, redis_url: Optional[str] = None) -> FlatStorage:
    """Build the flat storage configured by ``FLAT_STORAGE_BACKEND``."""
    if backend == 'redis':
        logger.info("Using Redis flat storage")
        return RedisFlatStorage.from_url(redis_url)
    if backend == 'file' and path:
        logger.info(f"Using file flat storage at {path}")
        return JsonFileFlatStorage(path)
    return MemoryFlatStorage()
