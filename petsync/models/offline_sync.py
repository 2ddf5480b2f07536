"""
Offline Synchronization Models
Data structures for the local store collections, the pending-sync queue,
sync settings and conflict resolution.
"""

from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Union
from enum import Enum

from petsync.models import PhotoRecord, AlbumRecord, OfflinePetRecord, OfflineChatRecord


class StoreName(Enum):
    """Collections held in the durable local store."""
    PHOTOS = "photos"
    ALBUMS = "albums"
    OFFLINE_PETS = "offline_pets"
    OFFLINE_CHATS = "offline_chats"
    PENDING_SYNC = "pending_sync"
    SYNC_SETTINGS = "sync_settings"


class SyncAction(Enum):
    """Mutations a pending-sync item can carry."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConflictResolution(Enum):
    """Strategies for resolving sync conflicts."""
    USE_LOCAL = "use_local"
    USE_SERVER = "use_server"
    MERGE = "merge"


class SyncState(Enum):
    """States of the sync engine."""
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass(frozen=True)
class CollectionSchema:
    """Key path and secondary indices of one collection."""
    name: StoreName
    key_path: str = 'id'
    indices: tuple = ()


# Collections introduced by each schema version; upgrades only ever add.
SCHEMA_VERSIONS: Dict[int, List[CollectionSchema]] = {
    1: [
        CollectionSchema(StoreName.PHOTOS, indices=('petId', 'albumId', 'date')),
        CollectionSchema(StoreName.ALBUMS, indices=('petId',)),
    ],
    2: [
        CollectionSchema(StoreName.OFFLINE_PETS, indices=('userId',)),
        CollectionSchema(StoreName.OFFLINE_CHATS, indices=('userId', 'petId')),
        CollectionSchema(StoreName.PENDING_SYNC, indices=('timestamp', 'store')),
        CollectionSchema(StoreName.SYNC_SETTINGS, key_path='key'),
    ],
}

DB_VERSION = max(SCHEMA_VERSIONS)

COLLECTION_SCHEMAS: Dict[StoreName, CollectionSchema] = {
    schema.name: schema
    for version in sorted(SCHEMA_VERSIONS)
    for schema in SCHEMA_VERSIONS[version]
}

# Collections the UI may mutate and enqueue intents against
SYNCABLE_STORES = (StoreName.PHOTOS, StoreName.ALBUMS, StoreName.OFFLINE_PETS, StoreName.OFFLINE_CHATS)

SyncPayload = Union[PhotoRecord, AlbumRecord, OfflinePetRecord, OfflineChatRecord]

PAYLOAD_TYPES = {
    StoreName.PHOTOS: PhotoRecord,
    StoreName.ALBUMS: AlbumRecord,
    StoreName.OFFLINE_PETS: OfflinePetRecord,
    StoreName.OFFLINE_CHATS: OfflineChatRecord,
}


@dataclass
class PendingSyncItem:
    """A durable mutation intent not yet confirmed by the server."""
    id: str
    type: SyncAction
    store: StoreName
    data: Dict[str, Any]
    timestamp: int
    retry_count: int = 0

    def payload(self) -> SyncPayload:
        """Typed view of ``data`` for the collection this item targets."""
        return PAYLOAD_TYPES[self.store].from_dict(self.data)

    @property
    def record_id(self) -> Optional[str]:
        return self.data.get('id')

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and API responses."""
        return {
            'id': self.id,
            'type': self.type.value,
            'store': self.store.value,
            'data': self.data,
            'timestamp': self.timestamp,
            'retryCount': self.retry_count
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingSyncItem':
        """Create from dictionary data."""
        return cls(
            id=data['id'],
            type=SyncAction(data['type']),
            store=StoreName(data['store']),
            data=data.get('data') or {},
            timestamp=int(data['timestamp']),
            retry_count=int(data.get('retryCount', 0))
        )


@dataclass
class SyncSetting:
    """Flat key/value setting, e.g. ``lastSync_global``."""
    key: str
    value: Any
    updated_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'value': self.value,
            'updatedAt': self.updated_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncSetting':
        return cls(
            key=data['key'],
            value=data.get('value'),
            updated_at=data.get('updatedAt')
        )


@dataclass
class SyncConflict:
    """Local and server versions of the same record. Computed, never stored."""
    id: str
    store: StoreName
    local_data: Dict[str, Any]
    server_data: Dict[str, Any]
    local_timestamp: int
    server_timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'id': self.id,
            'store': self.store.value,
            'localData': self.local_data,
            'serverData': self.server_data,
            'localTimestamp': self.local_timestamp,
            'serverTimestamp': self.server_timestamp
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncConflict':
        """Create from dictionary data."""
        return cls(
            id=data['id'],
            store=StoreName(data['store']),
            local_data=data.get('localData') or {},
            server_data=data.get('serverData') or {},
            local_timestamp=int(data.get('localTimestamp', 0)),
            server_timestamp=int(data.get('serverTimestamp', 0))
        )


@dataclass
class SyncStatus:
    """Published state of the sync engine."""
    is_online: bool = True
    is_syncing: bool = False
    pending_count: int = 0
    last_sync_time: Optional[int] = None
    error: Optional[str] = None
    state: SyncState = SyncState.IDLE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'isOnline': self.is_online,
            'isSyncing': self.is_syncing,
            'pendingCount': self.pending_count,
            'lastSyncTime': self.last_sync_time,
            'error': self.error,
            'state': self.state.value
        }


def last_sync_key(collection: Union[StoreName, str]) -> str:
    """Setting key holding the last successful sync time of a collection or ``global``."""
    name = collection.value if isinstance(collection, StoreName) else collection
    return f"lastSync_{name}"
