"""
Sync Engine
Drains the pending-sync queue while online. Single-flight: a ``sync()`` call
made while a drain pass is running returns immediately.
"""

import logging
from typing import Callable, List, Optional, Set

from petsync.models.offline_sync import (
    PendingSyncItem, StoreName, SyncSetting, SyncState, SyncStatus, last_sync_key
)
from petsync.services.connectivity_service import ConnectivityMonitor
from petsync.services.local_store import LocalStore
from petsync.services.scheduling import Clock, Scheduler, TaskHandle
from petsync.services.sync_queue import PendingSyncQueue
from petsync.services.upload_handlers import UploadHandlerRegistry
from petsync.utils import log_execution_time
from petsync.utils.error_handlers import OfflineSyncError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
SYNC_INTERVAL = 30.0  # seconds

StatusListener = Callable[[SyncStatus], None]
DeadLetterHook = Callable[[PendingSyncItem], None]


class SyncEngine:
    """Idle/Syncing state machine over the pending-sync queue."""

    def __init__(self, store: LocalStore, queue: PendingSyncQueue, handlers: UploadHandlerRegistry,
                 connectivity: ConnectivityMonitor, clock: Optional[Clock] = None,
                 max_retries: int = MAX_RETRIES, on_dead_letter: Optional[DeadLetterHook] = None):
        self.store = store
        self.queue = queue
        self.handlers = handlers
        self.connectivity = connectivity
        self.clock = clock or Clock()
        self.max_retries = max_retries
        self.on_dead_letter = on_dead_letter
        self.status = SyncStatus(is_online=connectivity.is_online)
        self._listeners: List[StatusListener] = []
        self._timer: Optional[TaskHandle] = None
        connectivity.add_listener(self._on_connectivity_change)

    @property
    def state(self) -> SyncState:
        return self.status.state

    def add_status_listener(self, listener: StatusListener):
        self._listeners.append(listener)

    def _publish(self, **changes):
        for name, value in changes.items():
            setattr(self.status, name, value)
        for listener in list(self._listeners):
            try:
                listener(self.status)
            except Exception as e:
                logger.error(f"Sync status listener failed: {str(e)}")

    def _on_connectivity_change(self, is_online: bool):
        self._publish(is_online=is_online)

    @log_execution_time
    async def sync(self) -> bool:
        """Run one drain pass. Returns False when skipped or when the pass failed."""
        if not self.connectivity.is_online:
            logger.debug("Skipping sync while offline")
            return False
        if self.status.state == SyncState.SYNCING:
            logger.debug("Sync already in progress")
            return False

        # Flag is set before the first await so concurrent callers see it
        self._publish(state=SyncState.SYNCING, is_syncing=True, error=None)
        try:
            synced_collections = await self._drain()
            await self._record_last_sync(synced_collections)
            await self.refresh_pending_count()
            await self.refresh_last_sync_time()
            return True
        except Exception as e:
            message = e.message if isinstance(e, OfflineSyncError) else str(e)
            logger.error(f"Sync pass failed: {message}")
            self._publish(error=message)
            return False
        finally:
            self._publish(state=SyncState.IDLE, is_syncing=False)

    async def _drain(self) -> Set[StoreName]:
        synced: Set[StoreName] = set()
        items = await self.queue.dequeue_all_ordered()
        if items:
            logger.info(f"Draining {len(items)} pending sync items")

        for item in items:
            if item.retry_count >= self.max_retries:
                logger.warning(f"Max retries exceeded, removing item: {item.id}")
                await self.queue.remove(item.id)
                self._dead_letter(item)
                continue

            if await self._process_item(item):
                await self.queue.remove(item.id)
                synced.add(item.store)
            else:
                await self.queue.increment_retry(item.id)
        return synced

    async def _process_item(self, item: PendingSyncItem) -> bool:
        handler = self.handlers.get(item.store)
        if handler is None:
            logger.warning(f"Unknown store type: {item.store.value}")
            return True
        try:
            return bool(await handler(item))
        except Exception as e:
            logger.error(f"Sync item {item.id} failed: {str(e)}")
            return False

    def _dead_letter(self, item: PendingSyncItem):
        if not self.on_dead_letter:
            return
        try:
            self.on_dead_letter(item)
        except Exception as e:
            logger.error(f"Dead-letter hook failed for {item.id}: {str(e)}")

    async def _record_last_sync(self, collections: Set[StoreName]):
        now = self.clock.now_ms()
        for key in ['global'] + sorted(c.value for c in collections):
            setting = SyncSetting(key=last_sync_key(key), value=now, updated_at=now)
            await self.store.put(StoreName.SYNC_SETTINGS, setting.to_dict())

    async def refresh_pending_count(self) -> int:
        count = await self.queue.count()
        self._publish(pending_count=count)
        return count

    async def refresh_last_sync_time(self, collection: str = 'global') -> Optional[int]:
        raw = await self.store.get(StoreName.SYNC_SETTINGS, last_sync_key(collection))
        value = SyncSetting.from_dict(raw).value if raw else None
        if collection == 'global':
            self._publish(last_sync_time=value)
        return value

    async def initialize(self):
        """Load the persisted pending count and last sync time into the status."""
        try:
            await self.refresh_pending_count()
            await self.refresh_last_sync_time()
        except OfflineSyncError as e:
            logger.error(f"Failed to load sync status: {e.message}")

    def start(self, scheduler: Scheduler, interval: float = SYNC_INTERVAL) -> TaskHandle:
        """Schedule periodic drain passes; they only run while online."""
        self.stop()

        async def _tick():
            if self.connectivity.is_online:
                await self.sync()

        self._timer = scheduler.call_every(interval, _tick)
        logger.info(f"Periodic sync every {interval}s")
        return self._timer

    def stop(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
