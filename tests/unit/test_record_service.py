import asyncio
import json
from unittest.mock import AsyncMock, Mock

from petsync.models import PhotoRecord
from petsync.models.offline_sync import StoreName
from petsync.services.local_store import LocalStore
from petsync.services.record_service import RecordService, legacy_photos_key
from petsync.utils.error_handlers import StorageError


class TestPhotosAndAlbums:
    """Photo and album helpers"""

    def test_save_photo_stamps_created_at(self, store, flat_storage, clock):
        records = RecordService(store, flat_storage, clock)
        photo = PhotoRecord(id='p1', pet_id='pet-1', image_data='data:,', date='2024-03-01')

        async def scenario():
            saved = await records.save_photo(photo)
            return saved, await store.get(StoreName.PHOTOS, 'p1')

        saved, stored = asyncio.run(scenario())
        assert saved['createdAt'] == clock.now_ms()
        assert stored == saved

    def test_photos_by_pet_newest_first(self, store, flat_storage, clock):
        records = RecordService(store, flat_storage, clock)

        async def scenario():
            for photo_id, date in (('p1', '2024-01-05'), ('p2', '2024-03-01'), ('p3', '2023-12-24')):
                await records.save_photo({'id': photo_id, 'petId': 'pet-1', 'imageData': '', 'date': date})
            await records.save_photo({'id': 'p4', 'petId': 'pet-2', 'imageData': '', 'date': '2025-01-01'})
            return await records.get_photos_by_pet('pet-1')

        assert [p['id'] for p in asyncio.run(scenario())] == ['p2', 'p1', 'p3']

    def test_photos_by_album_and_delete(self, flat_store, flat_storage, clock):
        records = RecordService(flat_store, flat_storage, clock)

        async def scenario():
            await records.save_photo({'id': 'p1', 'petId': 'pet-1', 'albumId': 'a1', 'date': '2024-01-01'})
            await records.save_photo({'id': 'p2', 'petId': 'pet-1', 'albumId': 'a1', 'date': '2024-02-01'})
            await records.delete_photo('p2')
            return await records.get_photos_by_album('a1')

        assert [p['id'] for p in asyncio.run(scenario())] == ['p1']

    def test_albums_by_pet_and_cascade_delete(self, store, flat_storage, clock):
        records = RecordService(store, flat_storage, clock)

        async def scenario():
            album = await records.save_album({'id': 'a1', 'petId': 'pet-1', 'name': 'Park'})
            await records.save_photo({'id': 'p1', 'petId': 'pet-1', 'albumId': 'a1', 'date': '2024-01-01'})
            albums = await records.get_albums_by_pet('pet-1')
            removed = await records.delete_album('a1')
            return album, albums, removed, await records.get_albums_by_pet('pet-1')

        album, albums, removed, remaining = asyncio.run(scenario())
        assert album['createdAt'] == clock.now_ms()
        assert [a['id'] for a in albums] == ['a1']
        assert removed == 1
        assert remaining == []

    def test_read_failure_gives_empty_list(self, flat_storage, clock):
        broken = Mock(spec=LocalStore)
        broken.get_by_index = AsyncMock(side_effect=StorageError("database is locked"))
        records = RecordService(broken, flat_storage, clock)

        assert asyncio.run(records.get_photos_by_pet('pet-1')) == []


class TestOfflinePetsAndChats:
    """Offline copies of pets and chats"""

    def test_save_offline_pet_sets_bookkeeping_fields(self, store, flat_storage, clock, mock_pet):
        records = RecordService(store, flat_storage, clock)

        async def scenario():
            await records.save_offline_pet(mock_pet)
            return await records.get_offline_pets('user-1')

        pets = asyncio.run(scenario())
        assert len(pets) == 1
        assert pets[0]['_synced'] is False
        assert pets[0]['_localUpdatedAt'] == clock.now_ms()
        assert pets[0]['name'] == 'Bori'

    def test_chats_newest_first(self, flat_store, flat_storage, clock, mock_chat):
        records = RecordService(flat_store, flat_storage, clock)

        async def scenario():
            await records.save_offline_chat({**mock_chat, 'id': 'old', 'createdAt': 100})
            await records.save_offline_chat({**mock_chat, 'id': 'new', 'createdAt': 200}, synced=True)
            return await records.get_offline_chats('user-1')

        chats = asyncio.run(scenario())
        assert [c['id'] for c in chats] == ['new', 'old']
        assert chats[0]['_synced'] is True

    def test_mark_synced(self, store, flat_storage, clock, mock_pet):
        records = RecordService(store, flat_storage, clock)

        async def scenario():
            await records.save_offline_pet(mock_pet)
            marked = await records.mark_synced('offline_pets', 'pet-1')
            missing = await records.mark_synced(StoreName.OFFLINE_CHATS, 'chat-404')
            return marked, missing, await store.get(StoreName.OFFLINE_PETS, 'pet-1')

        marked, missing, pet = asyncio.run(scenario())
        assert marked is True
        assert missing is False
        assert pet['_synced'] is True


class TestLegacyPhotoMigration:
    """petchecky_photos_<petId> arrays moved into the photos collection"""

    def test_migrates_and_removes_legacy_key(self, store, flat_storage, clock):
        flat_storage.set_item(legacy_photos_key('pet-1'), json.dumps([
            {'id': 'legacy-1', 'imageData': 'data:,a', 'date': '2023-05-01', 'description': 'Puppy'},
            {'imageData': 'data:,b'}
        ]))
        records = RecordService(store, flat_storage, clock)

        async def scenario():
            migrated = await records.migrate_photos_from_flat_storage('pet-1')
            return migrated, await records.get_photos_by_pet('pet-1')

        migrated, photos = asyncio.run(scenario())
        assert migrated is True
        assert len(photos) == 2
        assert flat_storage.get_item('petchecky_photos_pet-1') is None

        by_id = {p['id']: p for p in photos}
        assert by_id['legacy-1']['description'] == 'Puppy'
        generated = next(p for p in photos if p['id'] != 'legacy-1')
        assert generated['id'].startswith(f'photo_{clock.now_ms()}_')
        assert generated['petId'] == 'pet-1'
        assert generated['date']

    def test_missing_key_is_not_migrated(self, flat_store, flat_storage, clock):
        records = RecordService(flat_store, flat_storage, clock)

        assert asyncio.run(records.migrate_photos_from_flat_storage('pet-9')) is False

    def test_non_array_is_not_migrated(self, flat_store, flat_storage, clock):
        flat_storage.set_item(legacy_photos_key('pet-1'), json.dumps({'photos': []}))
        records = RecordService(flat_store, flat_storage, clock)

        assert asyncio.run(records.migrate_photos_from_flat_storage('pet-1')) is False
        assert flat_storage.get_item(legacy_photos_key('pet-1')) is not None
