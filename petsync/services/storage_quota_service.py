"""
Storage Quota Service
Usage accounting and cleanup for the flat key-value storage.
"""

import json
import logging
from typing import Dict, Any, List, Optional

from petsync.services.flat_storage import FlatStorage, QuotaExceededError
from petsync.services.scheduling import Clock

logger = logging.getLogger(__name__)

STORAGE_LIMIT_MB = 5
WARNING_THRESHOLD = 0.8
PENDING_SYNC_MAX_AGE_MS = 24 * 60 * 60 * 1000

CHAT_HISTORY_KEY = 'chatHistory'
PENDING_SYNC_KEY = 'pendingSync'
CACHE_KEYS = ('imageCache', 'apiCache', 'searchCache')


class StorageQuotaService:
    """Keeps flat storage under its quota by dropping caches and old history."""

    def __init__(self, flat_storage: FlatStorage, clock: Optional[Clock] = None,
                 limit_mb: float = STORAGE_LIMIT_MB):
        self.flat_storage = flat_storage
        self.clock = clock or Clock()
        self.limit_mb = limit_mb

    def get_key_size(self, key: str) -> int:
        """Size of one entry in bytes, counting two bytes per character."""
        value = self.flat_storage.get_item(key)
        if not value:
            return 0
        return (len(key) + len(value)) * 2

    def get_storage_usage(self) -> int:
        return sum(self.get_key_size(key) for key in self.flat_storage.keys())

    def get_storage_usage_mb(self) -> float:
        return self.get_storage_usage() / (1024 * 1024)

    def get_storage_usage_percent(self) -> float:
        return self.get_storage_usage_mb() / self.limit_mb

    def is_storage_low(self) -> bool:
        return self.get_storage_usage_percent() >= WARNING_THRESHOLD

    def get_storage_breakdown(self) -> List[Dict[str, Any]]:
        """Per-key sizes, largest first."""
        items = []
        for key in self.flat_storage.keys():
            size = self.get_key_size(key)
            if size > 0:
                items.append({'key': key, 'size': size, 'sizeKB': round(size / 1024, 2)})
        return sorted(items, key=lambda item: item['size'], reverse=True)

    def _load_list(self, key: str) -> Optional[list]:
        raw = self.flat_storage.get_item(key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return data if isinstance(data, list) else None

    def _replace(self, key: str, value: list) -> int:
        old_size = self.get_key_size(key)
        try:
            self.flat_storage.set_item(key, json.dumps(value))
        except QuotaExceededError as e:
            logger.error(f"Failed to rewrite {key}: {str(e)}")
            return 0
        return old_size - self.get_key_size(key)

    def cleanup_chat_history(self, keep_count: int = 50) -> int:
        """Keep only the last ``keep_count`` chat entries. Returns bytes freed."""
        history = self._load_list(CHAT_HISTORY_KEY)
        if history is None or len(history) <= keep_count:
            return 0
        return self._replace(CHAT_HISTORY_KEY, history[-keep_count:])

    def cleanup_pending_sync(self) -> int:
        """Drop flat pending-sync entries older than a day. Returns bytes freed."""
        data = self._load_list(PENDING_SYNC_KEY)
        if data is None:
            return 0
        cutoff = self.clock.now_ms() - PENDING_SYNC_MAX_AGE_MS
        kept = [
            item for item in data
            if isinstance(item, dict) and isinstance(item.get('timestamp'), (int, float))
            and item['timestamp'] > cutoff
        ]
        if len(kept) == len(data):
            return 0
        return self._replace(PENDING_SYNC_KEY, kept)

    def cleanup_cache(self) -> int:
        freed = 0
        for key in CACHE_KEYS:
            if self.flat_storage.get_item(key):
                freed += self.get_key_size(key)
                self.flat_storage.remove_item(key)
        return freed

    def auto_cleanup(self) -> Dict[str, Any]:
        """Free space in escalating steps until usage drops below the threshold."""
        if not self.is_storage_low():
            return {'success': True, 'freedBytes': 0, 'message': 'No cleanup needed'}

        freed = self.cleanup_cache()
        freed += self.cleanup_pending_sync()
        if self.is_storage_low():
            freed += self.cleanup_chat_history(30)
        if self.is_storage_low():
            freed += self.cleanup_chat_history(10)

        freed_kb = round(freed / 1024, 2)
        logger.info(f"Storage cleanup freed {freed_kb}KB")
        return {
            'success': not self.is_storage_low(),
            'freedBytes': freed,
            'message': f"Freed {freed_kb}KB"
        }

    def safe_set_item(self, key: str, value: str) -> bool:
        """Write ``value``; on a quota error clean up and retry once."""
        try:
            self.flat_storage.set_item(key, value)
            return True
        except QuotaExceededError:
            logger.warning(f"Quota exceeded writing {key}, running cleanup")

        if not self.auto_cleanup()['success']:
            return False
        try:
            self.flat_storage.set_item(key, value)
            return True
        except QuotaExceededError:
            return False

    def get_storage_status(self) -> Dict[str, Any]:
        return {
            'usedMB': round(self.get_storage_usage_mb(), 2),
            'limitMB': self.limit_mb,
            'percent': round(self.get_storage_usage_percent() * 100),
            'isLow': self.is_storage_low(),
            'breakdown': [
                {'key': item['key'], 'sizeKB': item['sizeKB']}
                for item in self.get_storage_breakdown()[:5]
            ]
        }
