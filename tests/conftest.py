# Test configuration file
import asyncio
import os
import sys
from unittest.mock import Mock

import pytest
import requests

# Add the project root to the Python path for CI/CD compatibility
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from petsync.models.offline_sync import SYNCABLE_STORES
from petsync.services.flat_storage import MemoryFlatStorage
from petsync.services.local_store import FlatFallbackStore, SqliteLocalStore
from petsync.services.scheduling import ManualClock, ManualScheduler
from petsync.services.upload_handlers import UploadHandlerRegistry
from petsync.utils.cache_manager import StoredResponse
from petsync.utils.error_handlers import NetworkUnavailableError, UploadError

# API endpoints
API_BASE_URL = '/api/v1'
SYNC_BASE_URL = f'{API_BASE_URL}/offline-sync'

# Mock data
MOCK_PET = {
    'id': 'pet-1',
    'userId': 'user-1',
    'name': 'Bori',
    'species': 'dog',
    'breed': 'Jindo',
    'age': 3,
    'weight': 12.5
}

MOCK_CHAT = {
    'id': 'chat-1',
    'userId': 'user-1',
    'petId': 'pet-1',
    'messages': [{'role': 'user', 'content': 'My dog is coughing'}],
    'severity': 'low'
}


class RecordingHandler:
    """Upload handler double that records calls and fails on chosen record ids."""

    def __init__(self, fail_ids=(), raise_ids=()):
        self.fail_ids = set(fail_ids)
        self.raise_ids = set(raise_ids)
        self.calls = []

    async def __call__(self, item):
        self.calls.append(item)
        if item.record_id in self.raise_ids:
            raise UploadError(f"Upload of {item.record_id} failed", 500)
        return item.record_id not in self.fail_ids

    @property
    def record_ids(self):
        return [item.record_id for item in self.calls]


class FakeNetwork:
    """Fetcher double: canned responses by url, everything else is offline."""

    def __init__(self, responses=None, delay=0.0):
        self.responses = dict(responses or {})
        self.delay = delay
        self.requests = []
        self.cancelled = []

    async def __call__(self, request):
        self.requests.append(request.url)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled.append(request.url)
            raise
        if request.url not in self.responses:
            raise NetworkUnavailableError(f"No route to {request.url}", request.url)
        return self.responses[request.url]


def text_response(body='ok', status=200, content_type='text/plain'):
    return StoredResponse(status=status, body=body.encode('utf-8'), headers={'Content-Type': content_type})


@pytest.fixture
def mock_pet():
    return dict(MOCK_PET)


@pytest.fixture
def mock_chat():
    return dict(MOCK_CHAT)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def flat_storage():
    return MemoryFlatStorage()


@pytest.fixture(params=['sqlite', 'flat'])
def store(request):
    """Every local store backend, fresh per test."""
    if request.param == 'sqlite':
        local_store = asyncio.run(SqliteLocalStore.open(':memory:'))
    else:
        local_store = FlatFallbackStore(MemoryFlatStorage())
    yield local_store
    asyncio.run(local_store.close())


@pytest.fixture
def flat_store():
    return FlatFallbackStore(MemoryFlatStorage())


@pytest.fixture
def handler_factory():
    return RecordingHandler


@pytest.fixture
def registry_factory():
    """Registry with the same handler for every syncable collection."""
    def _build(handler):
        registry = UploadHandlerRegistry()
        for store_name in SYNCABLE_STORES:
            registry.register(store_name, handler)
        return registry
    return _build


@pytest.fixture
def mock_session():
    """requests session double answering 201 to everything."""
    session = Mock(spec=requests.Session)
    session.request.return_value = Mock(status_code=201, json=Mock(return_value={}))
    return session


@pytest.fixture
def network_factory():
    return FakeNetwork


@pytest.fixture
def response_factory():
    return text_response


@pytest.fixture
def fake_network():
    return FakeNetwork()


@pytest.fixture
def app(mock_session, fake_network, clock):
    from petsync import create_app

    application = create_app(
        'testing',
        session=mock_session,
        network=fake_network,
        flat_storage=MemoryFlatStorage(),
        clock=clock
    )
    yield application
    application.extensions['petsync'].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runtime(app):
    return app.extensions['petsync']
