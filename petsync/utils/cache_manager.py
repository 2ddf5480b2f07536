"""
Cache Manager for the service worker fetch layer.
Named caches of stored responses, keyed by URL in insertion order.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class StoredResponse:
    """A response body kept for offline replay."""
    status: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == 'content-type':
                return value
        return 'application/octet-stream'


class Cache:
    """Insertion-ordered url -> response map. Re-putting a url moves it to the newest position."""

    def __init__(self, name: str):
        self.name = name
        self._entries: 'OrderedDict[str, StoredResponse]' = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._entries)

    async def match(self, url: str) -> Optional[StoredResponse]:
        with self._lock:
            return self._entries.get(url)

    async def put(self, url: str, response: StoredResponse) -> None:
        with self._lock:
            self._entries.pop(url, None)
            self._entries[url] = response

    async def delete(self, url: str) -> bool:
        with self._lock:
            return self._entries.pop(url, None) is not None

    async def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())


class CacheStorage:
    """Registry of named caches."""

    def __init__(self):
        self._caches: Dict[str, Cache] = {}
        self._lock = threading.Lock()

    async def open(self, name: str) -> Cache:
        with self._lock:
            if name not in self._caches:
                self._caches[name] = Cache(name)
            return self._caches[name]

    async def delete(self, name: str) -> bool:
        with self._lock:
            return self._caches.pop(name, None) is not None

    async def keys(self) -> List[str]:
        with self._lock:
            return list(self._caches.keys())

    async def match(self, url: str) -> Optional[StoredResponse]:
        """Look the url up in every cache, oldest cache first."""
        for name in await self.keys():
            cache = self._caches.get(name)
            if cache is None:
                continue
            response = await cache.match(url)
            if response is not None:
                return response
        return None

    def get_stats(self) -> Dict[str, Any]:
        """Entry count per cache."""
        with self._lock:
            return {name: len(cache) for name, cache in self._caches.items()}


async def trim_cache(cache: Cache, limit: int) -> int:
    """Drop the oldest entries so at most ``limit`` remain. Returns how many were removed."""
    keys = await cache.keys()
    excess = len(keys) - limit
    if excess <= 0:
        return 0
    for url in keys[:excess]:
        await cache.delete(url)
    logger.debug(f"Trimmed {excess} entries from {cache.name}")
    return excess
