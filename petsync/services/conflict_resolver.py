"""
Conflict Resolver
Reconciles a local and a server version of the same record.
"""

import logging
from typing import Dict, Any, Union

from petsync.models.offline_sync import SyncConflict, ConflictResolution
from petsync.services.local_store import LocalStore

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = ConflictResolution.USE_SERVER


def resolve(conflict: SyncConflict,
            strategy: Union[ConflictResolution, str] = DEFAULT_STRATEGY) -> Dict[str, Any]:
    """Produce the resolved record for ``conflict``. Nothing is persisted.

    ``merge`` is a shallow overlay: the older side forms the base and the newer
    side's top-level fields win. Ties go to the server.
    """
    strategy = ConflictResolution(strategy)

    if strategy == ConflictResolution.USE_LOCAL:
        return conflict.local_data
    if strategy == ConflictResolution.USE_SERVER:
        return conflict.server_data

    if conflict.local_timestamp > conflict.server_timestamp:
        return {**conflict.server_data, **conflict.local_data}
    return {**conflict.local_data, **conflict.server_data}


class ConflictResolver:
    """Applies a resolution strategy and writes the result back to the store."""

    def __init__(self, store: LocalStore, default_strategy: Union[ConflictResolution, str] = DEFAULT_STRATEGY):
        self.store = store
        self.default_strategy = ConflictResolution(default_strategy)

    async def resolve_and_store(self, conflict: SyncConflict,
                                strategy: Union[ConflictResolution, str, None] = None) -> Dict[str, Any]:
        strategy = ConflictResolution(strategy) if strategy else self.default_strategy
        resolved = resolve(conflict, strategy)
        if 'id' not in resolved:
            resolved = {**resolved, 'id': conflict.id}
        await self.store.put(conflict.store, resolved)
        logger.info(f"Resolved conflict on {conflict.store.value}/{conflict.id} using {strategy.value}")
        return resolved
