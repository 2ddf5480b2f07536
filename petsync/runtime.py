"""
Offline runtime
Builds the offline subsystem from the Flask config and owns its lifetime:
the background event loop, the local store and every service wired on top.
"""

import logging
from typing import Any, Awaitable, Dict, Optional

import requests

from petsync.models.offline_sync import PendingSyncItem
from petsync.services.conflict_resolver import ConflictResolver
from petsync.services.connectivity_service import (
    BeaconTransport, ConnectivityMonitor, ConnectivityProbe, LifecycleHook, TelemetryBuffer
)
from petsync.services.flat_storage import FlatStorage, create_flat_storage
from petsync.services.local_store import LocalStore, open_local_store
from petsync.services.offline_sync_service import OfflineSyncService
from petsync.services.record_service import RecordService
from petsync.services.scheduling import AsyncioScheduler, AsyncRunner, Clock
from petsync.services.service_worker import SYNC_TAG, Fetcher, HttpxNetwork, ServiceWorker
from petsync.services.storage_quota_service import StorageQuotaService
from petsync.services.sync_engine import SyncEngine
from petsync.services.sync_queue import PendingSyncQueue
from petsync.services.upload_handlers import build_http_registry, create_session

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'petsync'


class OfflineRuntime:
    """Composition root for the offline subsystem."""

    def __init__(self, settings: Dict[str, Any], clock: Optional[Clock] = None,
                 flat_storage: Optional[FlatStorage] = None,
                 session: Optional[requests.Session] = None,
                 network: Optional[Fetcher] = None):
        self.settings = settings
        self.clock = clock or Clock()
        self.flat_storage = flat_storage
        self.session = session
        self.network = network
        self.runner = AsyncRunner()
        self.started = False

        self.store: Optional[LocalStore] = None
        self.scheduler: Optional[AsyncioScheduler] = None
        self.connectivity = ConnectivityMonitor(initially_online=True)
        self.telemetry: Optional[TelemetryBuffer] = None
        self.queue: Optional[PendingSyncQueue] = None
        self.resolver: Optional[ConflictResolver] = None
        self.engine: Optional[SyncEngine] = None
        self.lifecycle: Optional[LifecycleHook] = None
        self.probe: Optional[ConnectivityProbe] = None
        self.records: Optional[RecordService] = None
        self.sync_service: Optional[OfflineSyncService] = None
        self.quota: Optional[StorageQuotaService] = None
        self.service_worker: Optional[ServiceWorker] = None

    def run(self, coro: Awaitable) -> Any:
        """Run a coroutine on the background loop and wait for its result."""
        return self.runner.run(coro)

    def start(self) -> 'OfflineRuntime':
        if self.started:
            return self
        settings = self.settings
        self.runner.start()
        self.scheduler = AsyncioScheduler(self.runner.loop)

        if self.flat_storage is None:
            self.flat_storage = create_flat_storage(
                settings['FLAT_STORAGE_BACKEND'],
                settings.get('FLAT_STORAGE_PATH'),
                settings.get('REDIS_URL')
            )
        self.store = self.run(open_local_store(settings['LOCAL_DB_PATH'], self.flat_storage))

        self.telemetry = TelemetryBuffer(BeaconTransport(settings.get('TELEMETRY_ENDPOINT')), self.clock)
        self.queue = PendingSyncQueue(self.store, self.clock)
        self.resolver = ConflictResolver(self.store, settings['CONFLICT_STRATEGY'])
        handlers = build_http_registry(
            settings['SYNC_API_BASE_URL'], self.store, self.resolver,
            timeout=settings['UPLOAD_TIMEOUT'],
            session=self.session or create_session()
        )
        self.engine = SyncEngine(
            self.store, self.queue, handlers, self.connectivity, self.clock,
            max_retries=settings['SYNC_MAX_RETRIES'],
            on_dead_letter=self._on_dead_letter
        )
        self.lifecycle = LifecycleHook(self.connectivity, self.engine, self.scheduler, self.telemetry)
        self.records = RecordService(self.store, self.flat_storage, self.clock)
        self.sync_service = OfflineSyncService(
            self.store, self.queue, self.engine, self.connectivity, self.records, self.resolver
        )
        self.quota = StorageQuotaService(self.flat_storage, self.clock)

        if self.network is None:
            self.network = HttpxNetwork(settings['ORIGIN_BASE_URL'])
        self.service_worker = ServiceWorker(
            self.network,
            clock=self.clock,
            api_timeout=settings['API_FETCH_TIMEOUT'],
            image_cache_limit=settings['IMAGE_CACHE_LIMIT'],
            api_cache_limit=settings['API_CACHE_LIMIT'],
            dynamic_cache_limit=settings['DYNAMIC_CACHE_LIMIT'],
            cacheable_api_routes=settings['CACHEABLE_API_ROUTES']
        )
        self.service_worker.register_sync(SYNC_TAG, self.engine.sync)

        self.run(self.engine.initialize())
        if settings.get('AUTO_SYNC'):
            self.engine.start(self.scheduler, settings['SYNC_INTERVAL_SECONDS'])
        if settings.get('CONNECTIVITY_PROBE_URL'):
            self.probe = ConnectivityProbe(self.connectivity, settings['CONNECTIVITY_PROBE_URL'])
            self.probe.start(self.scheduler, settings['CONNECTIVITY_PROBE_INTERVAL'])

        self.started = True
        logger.info(f"Offline runtime started with {self.store.backend_name} store")
        return self

    def _on_dead_letter(self, item: PendingSyncItem):
        self.telemetry.track('sync_item_dropped', {
            'itemId': item.id,
            'store': item.store.value,
            'type': item.type.value,
            'retryCount': item.retry_count
        })

    def shutdown(self):
        """Cancel timers, close connections and stop the loop."""
        if not self.started:
            return
        self.started = False
        self.engine.stop()
        if self.probe is not None:
            self.probe.stop()
        self.lifecycle.detach()
        try:
            if isinstance(self.network, HttpxNetwork):
                self.run(self.network.close())
            self.run(self.store.close())
        finally:
            self.runner.stop()
        logger.info("Offline runtime stopped")


def init_runtime(app, **overrides) -> OfflineRuntime:
    """Create, start and attach the runtime to ``app.extensions``."""
    runtime = OfflineRuntime(app.config, **overrides).start()
    app.extensions[EXTENSION_KEY] = runtime
    return runtime


def get_runtime(app) -> OfflineRuntime:
    return app.extensions[EXTENSION_KEY]
