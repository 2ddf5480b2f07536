"""
Record Service
Photo, album, pet and chat helpers over the local store, plus the one-time
move of legacy photo arrays out of flat storage.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Union

from petsync.models import SYNCED_FIELD, LOCAL_UPDATED_FIELD, PhotoRecord
from petsync.models.offline_sync import StoreName
from petsync.services.flat_storage import FlatStorage
from petsync.services.local_store import LocalStore, import_flat_collection
from petsync.services.scheduling import Clock
from petsync.utils.error_handlers import StorageError

logger = logging.getLogger(__name__)

LEGACY_PHOTOS_KEY = 'petchecky_photos_{pet_id}'


def legacy_photos_key(pet_id: str) -> str:
    return LEGACY_PHOTOS_KEY.format(pet_id=pet_id)


class RecordService:
    """Collection-specific reads and writes used by the UI."""

    def __init__(self, store: LocalStore, flat_storage: FlatStorage, clock: Optional[Clock] = None):
        self.store = store
        self.flat_storage = flat_storage
        self.clock = clock or Clock()

    async def _read(self, collection: StoreName, index_name: Optional[str] = None,
                    value: Any = None) -> List[Dict[str, Any]]:
        try:
            if index_name is None:
                return await self.store.get_all(collection)
            return await self.store.get_by_index(collection, index_name, value)
        except StorageError as e:
            logger.error(f"Error reading {collection.value}: {e.message}")
            return []

    # Photos

    async def save_photo(self, photo: Union[PhotoRecord, Dict[str, Any]]) -> Dict[str, Any]:
        """Store a photo, stamping ``createdAt`` with the current time."""
        record = photo.to_dict() if isinstance(photo, PhotoRecord) else dict(photo)
        record['createdAt'] = self.clock.now_ms()
        await self.store.put(StoreName.PHOTOS, record)
        return record

    async def get_photos_by_pet(self, pet_id: str) -> List[Dict[str, Any]]:
        photos = await self._read(StoreName.PHOTOS, 'petId', pet_id)
        return sorted(photos, key=lambda p: p.get('date') or '', reverse=True)

    async def get_photos_by_album(self, album_id: str) -> List[Dict[str, Any]]:
        photos = await self._read(StoreName.PHOTOS, 'albumId', album_id)
        return sorted(photos, key=lambda p: p.get('date') or '', reverse=True)

    async def delete_photo(self, photo_id: str) -> None:
        await self.store.remove(StoreName.PHOTOS, photo_id)

    # Albums

    async def save_album(self, album: Dict[str, Any]) -> Dict[str, Any]:
        record = {**album, 'createdAt': self.clock.now_ms()}
        await self.store.put(StoreName.ALBUMS, record)
        return record

    async def get_albums_by_pet(self, pet_id: str) -> List[Dict[str, Any]]:
        return await self._read(StoreName.ALBUMS, 'petId', pet_id)

    async def delete_album(self, album_id: str) -> int:
        return await self.store.delete_album(album_id)

    # Offline pets and chats

    async def save_offline_pet(self, pet: Dict[str, Any], synced: bool = False) -> Dict[str, Any]:
        record = {**pet, SYNCED_FIELD: synced, LOCAL_UPDATED_FIELD: self.clock.now_ms()}
        await self.store.put(StoreName.OFFLINE_PETS, record)
        return record

    async def get_offline_pets(self, user_id: str) -> List[Dict[str, Any]]:
        return await self._read(StoreName.OFFLINE_PETS, 'userId', user_id)

    async def save_offline_chat(self, chat: Dict[str, Any], synced: bool = False) -> Dict[str, Any]:
        record = {**chat, SYNCED_FIELD: synced, LOCAL_UPDATED_FIELD: self.clock.now_ms()}
        await self.store.put(StoreName.OFFLINE_CHATS, record)
        return record

    async def get_offline_chats(self, user_id: str) -> List[Dict[str, Any]]:
        """Chats of a user, newest first."""
        chats = await self._read(StoreName.OFFLINE_CHATS, 'userId', user_id)
        return sorted(chats, key=lambda c: c.get('createdAt') or 0, reverse=True)

    async def mark_synced(self, collection: Union[StoreName, str], record_id: str) -> bool:
        """Flag a pet or chat as confirmed by the server. Returns False when it is gone."""
        collection = StoreName(collection)
        record = await self.store.get(collection, record_id)
        if record is None:
            return False
        await self.store.put(collection, {**record, SYNCED_FIELD: True})
        return True

    # Legacy data

    def _legacy_photo(self, pet_id: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        photo = PhotoRecord(
            id=entry.get('id') or f"photo_{self.clock.now_ms()}_{secrets.token_hex(5)}",
            pet_id=pet_id,
            image_data=entry.get('imageData', ''),
            date=entry.get('date') or datetime.now(timezone.utc).isoformat(),
            thumbnail=entry.get('thumbnail'),
            description=entry.get('description'),
            created_at=self.clock.now_ms()
        )
        return photo.to_dict()

    async def migrate_photos_from_flat_storage(self, pet_id: str) -> bool:
        """Move ``petchecky_photos_<petId>`` into the photos collection.

        Returns False when the key is missing or does not hold a JSON array.
        """
        try:
            imported = await import_flat_collection(
                self.store, self.flat_storage, legacy_photos_key(pet_id), StoreName.PHOTOS,
                transform=lambda entry: self._legacy_photo(pet_id, entry)
            )
        except StorageError as e:
            logger.error(f"Photo migration for pet {pet_id} failed: {e.message}")
            return False
        return imported is not None
