"""
Offline Synchronization Service
Entry point the UI talks to: optimistic local writes, queued intents while
offline, status reads and manual conflict resolution.
"""

import logging
from typing import Dict, Any, List, Optional, Union

from petsync.models.offline_sync import (
    ConflictResolution, PendingSyncItem, StoreName, SyncAction, SyncConflict
)
from petsync.services.conflict_resolver import ConflictResolver
from petsync.services.connectivity_service import ConnectivityMonitor
from petsync.services.local_store import LocalStore
from petsync.services.record_service import RecordService
from petsync.services.sync_engine import SyncEngine
from petsync.services.sync_queue import PendingSyncQueue

logger = logging.getLogger(__name__)


class OfflineSyncService:
    """Service for offline-first writes on top of the store, queue and engine."""

    def __init__(self, store: LocalStore, queue: PendingSyncQueue, engine: SyncEngine,
                 connectivity: ConnectivityMonitor, records: RecordService,
                 resolver: ConflictResolver):
        self.store = store
        self.queue = queue
        self.engine = engine
        self.connectivity = connectivity
        self.records = records
        self.resolver = resolver

    async def add_offline_action(self, action: Union[SyncAction, str], collection: Union[StoreName, str],
                                 data: Dict[str, Any]) -> PendingSyncItem:
        """Queue a mutation intent and refresh the published pending count."""
        item = await self.queue.enqueue(action, collection, data)
        await self.engine.refresh_pending_count()
        return item

    async def save_pet_offline(self, pet: Dict[str, Any]) -> Dict[str, Any]:
        """Write the pet locally; while offline also queue a ``create`` for it."""
        online = self.connectivity.is_online
        record = await self.records.save_offline_pet(pet, synced=online)
        if not online:
            await self.add_offline_action(SyncAction.CREATE, StoreName.OFFLINE_PETS, record)
        return record

    async def save_chat_offline(self, chat: Dict[str, Any]) -> Dict[str, Any]:
        """Write the chat locally; while offline also queue a ``create`` for it."""
        online = self.connectivity.is_online
        record = await self.records.save_offline_chat(chat, synced=online)
        if not online:
            await self.add_offline_action(SyncAction.CREATE, StoreName.OFFLINE_CHATS, record)
        return record

    async def save_record(self, collection: Union[StoreName, str], data: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch a UI write to the helper owning the collection."""
        collection = StoreName(collection)
        if collection == StoreName.OFFLINE_PETS:
            return await self.save_pet_offline(data)
        if collection == StoreName.OFFLINE_CHATS:
            return await self.save_chat_offline(data)
        if collection == StoreName.PHOTOS:
            return await self.records.save_photo(data)
        if collection == StoreName.ALBUMS:
            return await self.records.save_album(data)
        await self.store.put(collection, data)
        return data

    async def list_records(self, collection: Union[StoreName, str], index_name: Optional[str] = None,
                           value: Any = None) -> List[Dict[str, Any]]:
        if index_name is None:
            return await self.store.get_all(collection)
        return await self.store.get_by_index(collection, index_name, value)

    async def get_record(self, collection: Union[StoreName, str], record_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(collection, record_id)

    async def delete_record(self, collection: Union[StoreName, str], record_id: str) -> int:
        """Remove a record. Albums take their photos with them; returns photos removed."""
        collection = StoreName(collection)
        if collection == StoreName.ALBUMS:
            return await self.records.delete_album(record_id)
        await self.store.remove(collection, record_id)
        return 0

    async def get_pending_items(self) -> List[PendingSyncItem]:
        return await self.queue.dequeue_all_ordered()

    async def resolve_conflict(self, conflict: SyncConflict,
                               strategy: Union[ConflictResolution, str, None] = None) -> Dict[str, Any]:
        return await self.resolver.resolve_and_store(conflict, strategy)

    async def get_status(self) -> Dict[str, Any]:
        await self.engine.refresh_pending_count()
        await self.engine.refresh_last_sync_time()
        return self.engine.status.to_dict()
