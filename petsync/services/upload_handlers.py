"""
Upload Handlers
Per-collection handlers that push one pending-sync item to the sync API.
Each attempt issues exactly one HTTP request; retries belong to the engine.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Any

import requests

from petsync.models import SYNCED_FIELD, LOCAL_UPDATED_FIELD
from petsync.models.offline_sync import (
    PendingSyncItem, StoreName, SyncAction, SyncConflict, SYNCABLE_STORES
)
from petsync.services.conflict_resolver import ConflictResolver
from petsync.services.local_store import LocalStore
from petsync.utils.error_handlers import InvalidSyncItemError, UploadError

logger = logging.getLogger(__name__)

UploadHandler = Callable[[PendingSyncItem], Awaitable[bool]]

ENDPOINTS = {
    StoreName.PHOTOS: '/photos',
    StoreName.ALBUMS: '/albums',
    StoreName.OFFLINE_PETS: '/pets',
    StoreName.OFFLINE_CHATS: '/chats',
}

METHODS = {
    SyncAction.CREATE: 'POST',
    SyncAction.UPDATE: 'PUT',
    SyncAction.DELETE: 'DELETE',
}


def create_session(pool_size: int = 10) -> requests.Session:
    """Pooled session that never retries on its own."""
    session = requests.Session()
    adapter = requests.adapters.HTTPAdapter(
        pool_connections=pool_size,
        pool_maxsize=pool_size,
        max_retries=0
    )
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    return session


class UploadHandlerRegistry:
    """Maps a collection to the coroutine that uploads its items."""

    def __init__(self):
        self._handlers: Dict[StoreName, UploadHandler] = {}

    def register(self, store: StoreName, handler: UploadHandler):
        self._handlers[StoreName(store)] = handler

    def get(self, store: StoreName) -> Optional[UploadHandler]:
        return self._handlers.get(store)

    def __contains__(self, store) -> bool:
        return store in self._handlers


def _timestamp_ms(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(datetime.fromisoformat(str(value).replace('Z', '+00:00')).timestamp() * 1000)
    except ValueError:
        return None


class HttpUploadHandler:
    """Uploads items of one collection to ``{base_url}{endpoint}``.

    A 409 answer carrying the server copy is reconciled through the conflict
    resolver; the resolved record replaces the local one and the item counts as
    delivered.
    """

    def __init__(self, store_name: StoreName, base_url: str, store: LocalStore,
                 resolver: ConflictResolver, session: Optional[requests.Session] = None,
                 timeout: float = 10.0):
        self.store_name = store_name
        self.base_url = base_url.rstrip('/')
        self.store = store
        self.resolver = resolver
        self.session = session or create_session()
        self.timeout = timeout

    def _url(self, item: PendingSyncItem) -> str:
        url = f"{self.base_url}{ENDPOINTS[self.store_name]}"
        if item.type == SyncAction.CREATE:
            return url
        if not item.record_id:
            raise InvalidSyncItemError(f"{item.type.value} on {self.store_name.value} needs a record id",
                                       {'itemId': item.id})
        return f"{url}/{item.record_id}"

    async def __call__(self, item: PendingSyncItem) -> bool:
        method = METHODS[item.type]
        url = self._url(item)
        body = None if item.type == SyncAction.DELETE else item.payload().to_server_dict()

        try:
            response = await asyncio.to_thread(
                self.session.request, method, url, json=body, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise UploadError(f"{method} {url} failed: {str(e)}")

        if response.status_code == 409:
            return await self._handle_conflict(item, response)

        if not 200 <= response.status_code < 300:
            raise UploadError(f"{method} {url} returned {response.status_code}", response.status_code)

        if item.type != SyncAction.DELETE:
            await self._mark_synced(item)
        logger.info(f"Uploaded {item.type.value} {self.store_name.value}/{item.record_id}")
        return True

    async def _handle_conflict(self, item: PendingSyncItem, response: requests.Response) -> bool:
        try:
            body = response.json()
        except ValueError:
            body = None
        server_data = body.get('serverData') if isinstance(body, dict) else None
        if not isinstance(server_data, dict):
            raise UploadError(f"Conflict on {self.store_name.value}/{item.record_id} without server copy", 409)

        local_data = await self.store.get(self.store_name, item.record_id) or item.data
        conflict = SyncConflict(
            id=item.record_id,
            store=self.store_name,
            local_data=local_data,
            server_data=server_data,
            local_timestamp=_timestamp_ms(local_data.get(LOCAL_UPDATED_FIELD)) or item.timestamp,
            server_timestamp=_timestamp_ms(body.get('serverTimestamp') or server_data.get('updatedAt')) or 0
        )
        resolved = await self.resolver.resolve_and_store(conflict)
        if SYNCED_FIELD in local_data and resolved.get(SYNCED_FIELD) is not True:
            await self.store.put(self.store_name, {**resolved, SYNCED_FIELD: True})
        return True

    async def _mark_synced(self, item: PendingSyncItem):
        record = await self.store.get(self.store_name, item.record_id) if item.record_id else None
        if record is not None and SYNCED_FIELD in record and record[SYNCED_FIELD] is not True:
            await self.store.put(self.store_name, {**record, SYNCED_FIELD: True})


def build_http_registry(base_url: str, store: LocalStore, resolver: ConflictResolver,
                        timeout: float = 10.0,
                        session: Optional[requests.Session] = None) -> UploadHandlerRegistry:
    """Registry with an HTTP handler for every syncable collection, sharing one session."""
    session = session or create_session()
    registry = UploadHandlerRegistry()
    for store_name in SYNCABLE_STORES:
        registry.register(store_name, HttpUploadHandler(store_name, base_url, store, resolver, session, timeout))
    return registry
