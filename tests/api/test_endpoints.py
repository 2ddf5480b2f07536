import time
from unittest.mock import patch

import pytest

from conftest import API_BASE_URL, SYNC_BASE_URL


def wait_for_status(client, predicate, timeout=5.0):
    deadline = time.time() + timeout
    status = None
    while time.time() < deadline:
        status = client.get(f'{SYNC_BASE_URL}/sync/status').get_json()['status']
        if predicate(status):
            return status
        time.sleep(0.02)
    return status


class TestHealthAPI:
    """Health endpoint"""

    def test_health_check_endpoint(self, client):
        with patch('petsync.routes.health.shutil.disk_usage', return_value=(100, 50, 50)):
            response = client.get(f'{API_BASE_URL}/health')

        data = response.get_json()
        assert response.status_code == 200
        assert data['status'] == 'healthy'
        assert set(data['checks']) == {'local_store', 'flat_storage', 'sync_engine', 'disk'}
        assert data['checks']['local_store']['details']['backend'] == 'sqlite'

    def test_full_disk_is_unhealthy(self, client):
        with patch('petsync.routes.health.shutil.disk_usage', return_value=(100, 99, 1)):
            response = client.get(f'{API_BASE_URL}/health')

        assert response.status_code == 503
        assert response.get_json()['checks']['disk']['status'] == 'unhealthy'

    def test_request_id_header(self, client):
        with patch('petsync.routes.health.shutil.disk_usage', return_value=(100, 50, 50)):
            response = client.get(f'{API_BASE_URL}/health')

        assert len(response.headers['X-Request-ID']) == 8
        assert response.headers['X-Execution-Time'].endswith('s')


class TestRecordsAPI:
    """Local record endpoints"""

    def test_save_and_get_pet(self, client, mock_pet):
        response = client.post(f'{SYNC_BASE_URL}/records/offline_pets', json=mock_pet)
        assert response.status_code == 201
        assert response.get_json()['record']['_synced'] is True

        response = client.get(f'{SYNC_BASE_URL}/records/offline_pets/pet-1')
        assert response.status_code == 200
        assert response.get_json()['record']['name'] == 'Bori'

    def test_list_by_index(self, client, mock_pet):
        client.post(f'{SYNC_BASE_URL}/records/offline_pets', json=mock_pet)
        client.post(f'{SYNC_BASE_URL}/records/offline_pets', json={**mock_pet, 'id': 'pet-2', 'userId': 'user-2'})

        data = client.get(f'{SYNC_BASE_URL}/records/offline_pets?index=userId&value=user-1').get_json()

        assert data['count'] == 1
        assert data['records'][0]['id'] == 'pet-1'

    def test_index_without_value(self, client):
        response = client.get(f'{SYNC_BASE_URL}/records/photos?index=petId')

        assert response.status_code == 400

    def test_album_delete_cascades(self, client):
        client.post(f'{SYNC_BASE_URL}/records/albums', json={'id': 'a1', 'petId': 'pet-1', 'name': 'Beach'})
        client.post(f'{SYNC_BASE_URL}/records/photos',
                    json={'id': 'p1', 'petId': 'pet-1', 'albumId': 'a1', 'imageData': 'data:,', 'date': '2024-06-01'})

        response = client.delete(f'{SYNC_BASE_URL}/records/albums/a1')

        assert response.status_code == 200
        assert response.get_json()['photosRemoved'] == 1
        photos = client.get(f'{SYNC_BASE_URL}/records/photos?index=albumId&value=a1').get_json()
        assert photos['count'] == 0

    def test_missing_record_is_404(self, client):
        response = client.get(f'{SYNC_BASE_URL}/records/offline_pets/pet-404')

        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'REQ_002'

    def test_unknown_collection_is_404(self, client):
        response = client.get(f'{SYNC_BASE_URL}/records/hospitals')

        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'STORE_003'

    def test_unknown_index_is_400(self, client):
        response = client.get(f'{SYNC_BASE_URL}/records/albums?index=name&value=Beach')

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'STORE_004'

    @pytest.mark.parametrize('collection', ['pending_sync', 'sync_settings'])
    def test_internal_collections_are_not_writable(self, client, collection):
        response = client.post(f'{SYNC_BASE_URL}/records/{collection}', json={'id': 'x', 'key': 'x'})

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'REQ_001'

    def test_record_without_id(self, client):
        response = client.post(f'{SYNC_BASE_URL}/records/albums', json={'name': 'No id'})

        assert response.status_code == 400

    def test_non_json_body(self, client):
        response = client.post(f'{SYNC_BASE_URL}/records/albums', data='plain text')

        assert response.status_code == 400
        assert response.get_json()['error']['message'] == 'Request body must be a JSON object'


class TestSyncAPI:
    """Queue, sync and connectivity endpoints"""

    def test_offline_save_is_queued_then_synced(self, client, mock_pet, mock_session):
        client.post(f'{SYNC_BASE_URL}/connectivity', json={'online': False})
        client.post(f'{SYNC_BASE_URL}/records/offline_pets', json=mock_pet)

        pending = client.get(f'{SYNC_BASE_URL}/pending').get_json()
        assert pending['count'] == 1
        assert pending['items'][0]['store'] == 'offline_pets'

        response = client.post(f'{SYNC_BASE_URL}/connectivity', json={'online': True})
        assert response.get_json() == {'success': True, 'online': True, 'changed': True}

        status = wait_for_status(client, lambda s: s['pendingCount'] == 0 and not s['isSyncing'])
        assert status['pendingCount'] == 0
        assert status['lastSyncTime'] is not None
        assert mock_session.request.call_args[0][0] == 'POST'
        record = client.get(f'{SYNC_BASE_URL}/records/offline_pets/pet-1').get_json()['record']
        assert record['_synced'] is True

    def test_manual_sync_drains_queue(self, client, mock_session):
        response = client.post(f'{SYNC_BASE_URL}/pending', json={
            'type': 'create',
            'store': 'albums',
            'data': {'id': 'a1', 'petId': 'pet-1', 'name': 'Beach'}
        })
        assert response.status_code == 201
        assert response.get_json()['item']['retryCount'] == 0

        data = client.post(f'{SYNC_BASE_URL}/sync').get_json()

        assert data['synced'] is True
        assert data['status']['pendingCount'] == 0
        assert data['status']['state'] == 'idle'
        assert mock_session.request.call_count == 1

    def test_sync_while_offline_is_skipped(self, client):
        client.post(f'{SYNC_BASE_URL}/connectivity', json={'online': False})

        data = client.post(f'{SYNC_BASE_URL}/sync').get_json()

        assert data['synced'] is False
        assert data['status']['isOnline'] is False

    def test_invalid_pending_item(self, client):
        response = client.post(f'{SYNC_BASE_URL}/pending', json={'type': 'upsert', 'store': 'photos', 'data': {}})

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'QUEUE_001'

    def test_pending_item_without_record_id(self, client):
        response = client.post(f'{SYNC_BASE_URL}/pending', json={'type': 'delete', 'store': 'offline_pets', 'data': {}})

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'QUEUE_001'
        assert client.get(f'{SYNC_BASE_URL}/pending').get_json()['count'] == 0

    def test_pending_item_missing_fields(self, client):
        response = client.post(f'{SYNC_BASE_URL}/pending', json={'type': 'create'})

        assert response.status_code == 400
        assert 'store' in response.get_json()['error']['message']

    def test_connectivity_requires_boolean(self, client):
        response = client.post(f'{SYNC_BASE_URL}/connectivity', json={'online': 'yes'})

        assert response.status_code == 400


class TestConflictAPI:

    def test_merge_resolution(self, client):
        response = client.post(f'{SYNC_BASE_URL}/conflicts/resolve', json={
            'strategy': 'merge',
            'conflict': {
                'id': 'pet-1',
                'store': 'offline_pets',
                'localData': {'id': 'pet-1', 'weight': 13.0, 'nickname': 'Bobo'},
                'serverData': {'id': 'pet-1', 'weight': 12.5, 'breed': 'Jindo'},
                'localTimestamp': 2000,
                'serverTimestamp': 1000
            }
        })

        assert response.status_code == 200
        assert response.get_json()['resolved'] == {'id': 'pet-1', 'weight': 13.0, 'nickname': 'Bobo', 'breed': 'Jindo'}
        stored = client.get(f'{SYNC_BASE_URL}/records/offline_pets/pet-1').get_json()['record']
        assert stored['breed'] == 'Jindo'

    @pytest.mark.parametrize('payload', [
        {'conflict': {'store': 'offline_pets'}},
        {'conflict': {'id': 'pet-1', 'store': 'hospitals'}},
        {'conflict': {'id': 'pet-1', 'store': 'offline_pets'}, 'strategy': 'coin_flip'},
    ])
    def test_invalid_conflict(self, client, payload):
        response = client.post(f'{SYNC_BASE_URL}/conflicts/resolve', json=payload)

        assert response.status_code == 400


class TestLifecycleAndTelemetryAPI:

    def test_telemetry_is_buffered(self, client):
        response = client.post(f'{SYNC_BASE_URL}/telemetry', json={'name': 'page_view', 'properties': {'path': '/'}})

        assert response.status_code == 202
        assert response.get_json()['buffered'] == 1

    def test_telemetry_requires_name(self, client):
        assert client.post(f'{SYNC_BASE_URL}/telemetry', json={}).status_code == 400

    def test_hidden_event_flushes_buffer(self, client, runtime):
        client.post(f'{SYNC_BASE_URL}/telemetry', json={'name': 'page_view'})

        response = client.post(f'{SYNC_BASE_URL}/lifecycle', json={'event': 'hidden'})

        assert response.status_code == 200
        assert response.get_json()['event'] == 'hidden'
        assert len(runtime.telemetry) == 0

    def test_unknown_lifecycle_event(self, client):
        response = client.post(f'{SYNC_BASE_URL}/lifecycle', json={'event': 'frozen'})

        assert response.status_code == 400


class TestStorageAPI:

    def test_storage_status(self, client, runtime):
        runtime.flat_storage.set_item('chatHistory', '[]')

        data = client.get(f'{SYNC_BASE_URL}/storage/status').get_json()

        assert data['backend'] == 'sqlite'
        assert data['storage']['limitMB'] == 5
        assert data['storage']['isLow'] is False
        assert data['storage']['breakdown'][0]['key'] == 'chatHistory'

    def test_photo_migration(self, client, runtime):
        runtime.flat_storage.write_json('petchecky_photos_pet-1', [{'id': 'old-1', 'imageData': 'data:,'}])

        first = client.post(f'{SYNC_BASE_URL}/migrations/photos/pet-1').get_json()
        second = client.post(f'{SYNC_BASE_URL}/migrations/photos/pet-1').get_json()

        assert first == {'success': True, 'petId': 'pet-1', 'migrated': True}
        assert second['migrated'] is False
        photos = client.get(f'{SYNC_BASE_URL}/records/photos?index=petId&value=pet-1').get_json()
        assert [p['id'] for p in photos['records']] == ['old-1']


class TestServiceWorkerAPI:
    """Caching fetch layer endpoints"""

    def test_cache_status_message(self, client):
        response = client.post('/sw/message', json={'type': 'GET_CACHE_STATUS'})

        assert response.status_code == 200
        assert isinstance(response.get_json(), dict)

    def test_unknown_message(self, client):
        response = client.post('/sw/message', json={'type': 'PING'})

        assert response.get_json() == {'error': 'unknown message type'}

    def test_offline_api_fetch_returns_envelope(self, client, clock):
        response = client.get('/sw/fetch?url=/api/hospitals')

        assert response.status_code == 503
        assert response.get_json() == {
            'error': 'offline',
            'message': 'You are offline. Please check your connection.',
            'timestamp': clock.now_ms()
        }

    def test_fetch_requires_url(self, client):
        assert client.get('/sw/fetch').status_code == 400

    def test_install_then_navigate_offline(self, client, fake_network, response_factory):
        fake_network.responses['/offline'] = response_factory('<html>offline</html>', content_type='text/html')

        install = client.post('/sw/lifecycle/install').get_json()
        page = client.get('/sw/fetch?url=/pets&mode=navigate')

        assert install == {'success': True, 'precached': 1}
        assert page.status_code == 200
        assert page.get_data(as_text=True) == '<html>offline</html>'
        assert page.content_type.startswith('text/html')

    def test_activate_and_unknown_phase(self, client):
        assert client.post('/sw/lifecycle/activate').get_json() == {'success': True, 'removed': []}
        assert client.post('/sw/lifecycle/uninstall').status_code == 400

    def test_background_sync_tag(self, client):
        handled = client.post('/sw/sync/sync-pending').get_json()
        unknown = client.post('/sw/sync/other-tag').get_json()

        assert handled['handled'] is True
        assert unknown['handled'] is False


def test_unknown_route_uses_error_envelope(client):
    response = client.get(f'{API_BASE_URL}/does-not-exist')

    assert response.status_code == 404
    assert response.get_json()['error']['code'] == 'REQ_002'
