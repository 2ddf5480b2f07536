import asyncio

import pytest

from petsync.models.offline_sync import ConflictResolution, StoreName, SyncConflict
from petsync.services.conflict_resolver import ConflictResolver, resolve


def conflict(local, server, local_ts, server_ts, record_id='pet-1'):
    return SyncConflict(
        id=record_id,
        store=StoreName.OFFLINE_PETS,
        local_data=local,
        server_data=server,
        local_timestamp=local_ts,
        server_timestamp=server_ts
    )


LOCAL = {'id': 'pet-1', 'name': 'Bori', 'weight': 13.0, 'nickname': 'Bobo'}
SERVER = {'id': 'pet-1', 'name': 'Bori', 'weight': 12.5, 'breed': 'Jindo'}


class TestResolve:
    """Pure resolution strategies"""

    def test_use_local_returns_local_verbatim(self):
        assert resolve(conflict(LOCAL, SERVER, 1, 2), 'use_local') == LOCAL

    def test_use_server_is_default(self):
        assert resolve(conflict(LOCAL, SERVER, 2, 1)) == SERVER

    def test_merge_local_newer_wins_fields(self):
        merged = resolve(conflict(LOCAL, SERVER, 2000, 1000), ConflictResolution.MERGE)

        assert merged == {'id': 'pet-1', 'name': 'Bori', 'weight': 13.0, 'nickname': 'Bobo', 'breed': 'Jindo'}

    def test_merge_server_newer_wins_fields(self):
        merged = resolve(conflict(LOCAL, SERVER, 1000, 2000), ConflictResolution.MERGE)

        assert merged['weight'] == 12.5
        assert merged['nickname'] == 'Bobo'
        assert merged['breed'] == 'Jindo'

    def test_merge_tie_goes_to_server(self):
        merged = resolve(conflict(LOCAL, SERVER, 1500, 1500), 'merge')

        assert merged['weight'] == SERVER['weight']

    def test_merge_is_shallow(self):
        local = {'id': 'pet-1', 'vitals': {'heartRate': 90}}
        server = {'id': 'pet-1', 'vitals': {'temperature': 38.5}}

        merged = resolve(conflict(local, server, 1, 2), 'merge')

        assert merged['vitals'] == {'temperature': 38.5}

    def test_merge_commutes_when_timestamps_differ(self):
        """Swapping sides together with their timestamps gives the same record"""
        forward = resolve(conflict(LOCAL, SERVER, 2000, 1000), 'merge')
        swapped = resolve(conflict(SERVER, LOCAL, 1000, 2000), 'merge')

        assert forward == swapped

    def test_merge_is_idempotent(self):
        once = resolve(conflict(LOCAL, SERVER, 2000, 1000), 'merge')
        twice = resolve(conflict(once, SERVER, 2000, 1000), 'merge')

        assert once == twice

    def test_resolve_does_not_mutate_inputs(self):
        local, server = dict(LOCAL), dict(SERVER)
        resolve(conflict(local, server, 2, 1), 'merge')

        assert local == LOCAL
        assert server == SERVER

    def test_unknown_strategy_raises(self):
        with pytest.raises(ValueError):
            resolve(conflict(LOCAL, SERVER, 1, 2), 'coin_flip')


class TestConflictResolver:
    """Resolution written back to the local store"""

    def test_resolve_and_store_writes_result(self, store):
        resolver = ConflictResolver(store, 'merge')

        async def scenario():
            resolved = await resolver.resolve_and_store(conflict(LOCAL, SERVER, 2000, 1000))
            return resolved, await store.get(StoreName.OFFLINE_PETS, 'pet-1')

        resolved, stored = asyncio.run(scenario())
        assert stored == resolved
        assert stored['nickname'] == 'Bobo'

    def test_strategy_override(self, flat_store):
        resolver = ConflictResolver(flat_store, 'merge')
        resolved = asyncio.run(resolver.resolve_and_store(conflict(LOCAL, SERVER, 2000, 1000), 'use_server'))

        assert resolved == SERVER

    def test_missing_id_is_filled_in(self, flat_store):
        resolver = ConflictResolver(flat_store)
        resolved = asyncio.run(resolver.resolve_and_store(conflict(LOCAL, {'name': 'Bori'}, 1, 2)))

        assert resolved == {'name': 'Bori', 'id': 'pet-1'}
