"""
Pending-Sync Queue
Ordered, durable list of mutation intents kept in the ``pending_sync``
collection of the local store.
"""

import itertools
import logging
import uuid
from typing import Dict, Any, List, Optional, Union

from petsync.models.offline_sync import PendingSyncItem, StoreName, SyncAction, SYNCABLE_STORES
from petsync.services.local_store import LocalStore
from petsync.services.scheduling import Clock
from petsync.utils.error_handlers import InvalidSyncItemError

logger = logging.getLogger(__name__)


class PendingSyncQueue:
    """FIFO queue of pending mutations, drained by timestamp."""

    def __init__(self, store: LocalStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or Clock()
        self._sequence = itertools.count()

    def _new_id(self, timestamp: int) -> str:
        # Zero padding keeps lexicographic id order equal to creation order
        return f"sync_{timestamp:013d}_{next(self._sequence):06d}_{uuid.uuid4().hex[:8]}"

    async def enqueue(self, action: Union[SyncAction, str], collection: Union[StoreName, str],
                      data: Dict[str, Any]) -> PendingSyncItem:
        """Durably append a mutation intent. Duplicates are not detected."""
        try:
            action = SyncAction(action)
            collection = StoreName(collection)
        except ValueError as e:
            raise InvalidSyncItemError(str(e))
        if collection not in SYNCABLE_STORES:
            raise InvalidSyncItemError(f"Collection {collection.value} cannot be synced",
                                       {'collection': collection.value})
        if not isinstance(data, dict):
            raise InvalidSyncItemError("Sync payload must be an object")
        if not data.get('id'):
            raise InvalidSyncItemError("Sync payload must have an 'id'", {'collection': collection.value})

        timestamp = self.clock.now_ms()
        item = PendingSyncItem(
            id=self._new_id(timestamp),
            type=action,
            store=collection,
            data=data,
            timestamp=timestamp,
            retry_count=0
        )
        await self.store.put(StoreName.PENDING_SYNC, item.to_dict())
        logger.info(f"Queued {action.value} for {collection.value} ({item.id})")
        return item

    async def dequeue_all_ordered(self) -> List[PendingSyncItem]:
        """All pending items, oldest first. Items stay queued until removed."""
        items = []
        for raw in await self.store.get_all(StoreName.PENDING_SYNC):
            try:
                items.append(PendingSyncItem.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Discarding unreadable pending item {raw.get('id')}: {str(e)}")
                if raw.get('id'):
                    await self.store.remove(StoreName.PENDING_SYNC, raw['id'])
        items.sort(key=lambda item: (item.timestamp, item.id))
        return items

    async def get(self, item_id: str) -> Optional[PendingSyncItem]:
        raw = await self.store.get(StoreName.PENDING_SYNC, item_id)
        return PendingSyncItem.from_dict(raw) if raw else None

    async def remove(self, item_id: str) -> None:
        await self.store.remove(StoreName.PENDING_SYNC, item_id)

    async def increment_retry(self, item_id: str) -> Optional[PendingSyncItem]:
        """Add one failed attempt to the item; returns the updated item."""
        item = await self.get(item_id)
        if item is None:
            logger.warning(f"Pending item {item_id} vanished before retry count update")
            return None
        item.retry_count += 1
        await self.store.put(StoreName.PENDING_SYNC, item.to_dict())
        return item

    async def count(self) -> int:
        return len(await self.store.get_all(StoreName.PENDING_SYNC))

    async def clear(self) -> None:
        await self.store.clear(StoreName.PENDING_SYNC)
