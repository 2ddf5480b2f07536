"""
Durable Local Store
Multi-collection on-device database keyed by record id with secondary index
lookups. SQLite is the primary backend; a flat key-value fallback is used when
the database cannot be opened.
"""

import asyncio
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Union, Iterable, Callable

from petsync.models.offline_sync import (
    StoreName, CollectionSchema, COLLECTION_SCHEMAS, DB_VERSION
)
from petsync.services.flat_storage import FlatStorage
from petsync.utils.error_handlers import (
    StorageError, StorageUnavailableError, UnknownCollectionError, UnknownIndexError
)

logger = logging.getLogger(__name__)

CollectionRef = Union[StoreName, str]
Record = Dict[str, Any]

FALLBACK_KEY_PREFIX = 'petchecky_store_'


def resolve_schema(collection: CollectionRef) -> CollectionSchema:
    """Look up the schema of a collection given its enum member or store name."""
    try:
        name = collection if isinstance(collection, StoreName) else StoreName(collection)
    except ValueError:
        raise UnknownCollectionError(str(collection))
    return COLLECTION_SCHEMAS[name]


def _record_key(schema: CollectionSchema, record: Record) -> str:
    if not isinstance(record, dict) or record.get(schema.key_path) in (None, ''):
        raise StorageError(f"Record for {schema.name.value} is missing key '{schema.key_path}'")
    return str(record[schema.key_path])


def _check_index(schema: CollectionSchema, index_name: str):
    if index_name not in schema.indices:
        raise UnknownIndexError(schema.name.value, index_name)


def fallback_key(collection: CollectionRef) -> str:
    return f"{FALLBACK_KEY_PREFIX}{resolve_schema(collection).name.value}"


class LocalStore(ABC):
    """Contract shared by every local store backend."""

    backend_name = 'abstract'

    @abstractmethod
    async def put(self, collection: CollectionRef, record: Record) -> None:
        """Insert or fully replace the record with the same key."""

    @abstractmethod
    async def get(self, collection: CollectionRef, record_id: str) -> Optional[Record]:
        pass

    @abstractmethod
    async def get_by_index(self, collection: CollectionRef, index_name: str, value: Any) -> List[Record]:
        pass

    @abstractmethod
    async def get_all(self, collection: CollectionRef) -> List[Record]:
        pass

    @abstractmethod
    async def remove(self, collection: CollectionRef, record_id: str) -> None:
        pass

    @abstractmethod
    async def remove_many(self, collection: CollectionRef, ids: Iterable[str]) -> None:
        pass

    @abstractmethod
    async def clear(self, collection: CollectionRef) -> None:
        pass

    async def close(self) -> None:
        pass

    async def delete_album(self, album_id: str) -> int:
        """Delete an album and every photo filed under it.

        Photos are collected and removed first, then the album itself, so no
        photo is left pointing at a missing album. Returns the number of
        photos removed.
        """
        photos = await self.get_by_index(StoreName.PHOTOS, 'albumId', album_id)
        photo_ids = [photo['id'] for photo in photos]
        await self.remove_many(StoreName.PHOTOS, photo_ids)
        await self.remove(StoreName.ALBUMS, album_id)
        logger.info(f"Deleted album {album_id} with {len(photo_ids)} photos")
        return len(photo_ids)


class SqliteLocalStore(LocalStore):
    """SQLite-backed store. One table per collection, one column per secondary index."""

    backend_name = 'sqlite'

    def __init__(self, connection: sqlite3.Connection):
        self._conn = connection
        self._lock = threading.Lock()

    @classmethod
    async def open(cls, db_path: str) -> 'SqliteLocalStore':
        """Open the database file and run the schema upgrade."""
        def _open():
            connection = sqlite3.connect(db_path, check_same_thread=False, timeout=30.0)
            try:
                connection.row_factory = sqlite3.Row
                if db_path != ':memory:':
                    connection.execute("PRAGMA journal_mode=WAL")
                upgrade_schema(connection)
            except Exception:
                connection.close()
                raise
            return connection

        try:
            connection = await asyncio.to_thread(_open)
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailableError(f"Failed to open local database: {str(e)}", {'path': db_path})
        logger.info(f"Opened local database {db_path} (schema v{DB_VERSION})")
        return cls(connection)

    async def _run(self, operation: Callable[[sqlite3.Connection], Any]) -> Any:
        def _locked():
            with self._lock:
                return operation(self._conn)
        try:
            return await asyncio.to_thread(_locked)
        except sqlite3.Error as e:
            raise StorageError(f"Local database operation failed: {str(e)}")

    async def put(self, collection: CollectionRef, record: Record) -> None:
        schema = resolve_schema(collection)
        key = _record_key(schema, record)
        columns = ['key', 'data'] + [_index_column(name) for name in schema.indices]
        values = [key, json.dumps(record)] + [_index_value(record.get(name)) for name in schema.indices]
        placeholders = ', '.join('?' for _ in columns)
        sql = f'INSERT OR REPLACE INTO "{schema.name.value}" ({", ".join(columns)}) VALUES ({placeholders})'

        def _put(conn):
            with conn:
                conn.execute(sql, values)
        await self._run(_put)

    async def get(self, collection: CollectionRef, record_id: str) -> Optional[Record]:
        schema = resolve_schema(collection)

        def _get(conn):
            row = conn.execute(f'SELECT data FROM "{schema.name.value}" WHERE key = ?', (str(record_id),)).fetchone()
            return json.loads(row['data']) if row else None
        return await self._run(_get)

    async def get_by_index(self, collection: CollectionRef, index_name: str, value: Any) -> List[Record]:
        schema = resolve_schema(collection)
        _check_index(schema, index_name)
        column = _index_column(index_name)

        def _query(conn):
            rows = conn.execute(
                f'SELECT data FROM "{schema.name.value}" WHERE {column} = ? ORDER BY {column}, key',
                (_index_value(value),)
            ).fetchall()
            return [json.loads(row['data']) for row in rows]
        return await self._run(_query)

    async def get_all(self, collection: CollectionRef) -> List[Record]:
        schema = resolve_schema(collection)

        def _query(conn):
            rows = conn.execute(f'SELECT data FROM "{schema.name.value}" ORDER BY key').fetchall()
            return [json.loads(row['data']) for row in rows]
        return await self._run(_query)

    async def remove(self, collection: CollectionRef, record_id: str) -> None:
        schema = resolve_schema(collection)

        def _remove(conn):
            with conn:
                conn.execute(f'DELETE FROM "{schema.name.value}" WHERE key = ?', (str(record_id),))
        await self._run(_remove)

    async def remove_many(self, collection: CollectionRef, ids: Iterable[str]) -> None:
        schema = resolve_schema(collection)
        keys = [(str(record_id),) for record_id in ids]
        if not keys:
            return

        def _remove(conn):
            with conn:
                conn.executemany(f'DELETE FROM "{schema.name.value}" WHERE key = ?', keys)
        await self._run(_remove)

    async def clear(self, collection: CollectionRef) -> None:
        schema = resolve_schema(collection)

        def _clear(conn):
            with conn:
                conn.execute(f'DELETE FROM "{schema.name.value}"')
        await self._run(_clear)

    async def close(self) -> None:
        def _close():
            with self._lock:
                self._conn.close()
        await asyncio.to_thread(_close)
        logger.info("Closed local database")


def _index_column(index_name: str) -> str:
    return f'"idx_{index_name}"'


def _index_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if value is None or isinstance(value, (str, int, float)):
        return value
    return json.dumps(value, sort_keys=True)


def upgrade_schema(connection: sqlite3.Connection) -> int:
    """Create missing collections and indices without touching existing data.

    Returns the version the database was at before the upgrade.
    """
    current_version = connection.execute("PRAGMA user_version").fetchone()[0]
    if current_version > DB_VERSION:
        raise sqlite3.DatabaseError(
            f"Database schema v{current_version} is newer than supported v{DB_VERSION}"
        )

    with connection:
        for schema in COLLECTION_SCHEMAS.values():
            table = schema.name.value
            connection.execute(f'CREATE TABLE IF NOT EXISTS "{table}" (key TEXT PRIMARY KEY, data TEXT NOT NULL)')
            existing = {row[1] for row in connection.execute(f'PRAGMA table_info("{table}")')}
            for index_name in schema.indices:
                column = _index_column(index_name)
                if f"idx_{index_name}" not in existing:
                    connection.execute(f'ALTER TABLE "{table}" ADD COLUMN {column}')
                    _backfill_index(connection, table, index_name)
                connection.execute(
                    f'CREATE INDEX IF NOT EXISTS "{table}_{index_name}" ON "{table}" ({column})'
                )
        connection.execute(f"PRAGMA user_version = {DB_VERSION}")

    if current_version < DB_VERSION:
        logger.info(f"Upgraded local database schema v{current_version} -> v{DB_VERSION}")
    return current_version


def _backfill_index(connection: sqlite3.Connection, table: str, index_name: str):
    rows = connection.execute(f'SELECT key, data FROM "{table}"').fetchall()
    for key, data in rows:
        try:
            value = json.loads(data).get(index_name)
        except (ValueError, AttributeError):
            value = None
        connection.execute(
            f'UPDATE "{table}" SET {_index_column(index_name)} = ? WHERE key = ?',
            (_index_value(value), key)
        )


class FlatFallbackStore(LocalStore):
    """Store built on flat key-value storage; each collection is one JSON array.

    Index lookups filter linearly since flat storage has no indices.
    """

    backend_name = 'flat'

    def __init__(self, flat_storage: FlatStorage):
        self.flat_storage = flat_storage

    def _load(self, schema: CollectionSchema) -> List[Record]:
        records = self.flat_storage.read_json(fallback_key(schema.name), [])
        if not isinstance(records, list):
            return []
        return [record for record in records if isinstance(record, dict)]

    def _save(self, schema: CollectionSchema, records: List[Record]):
        if not self.flat_storage.write_json(fallback_key(schema.name), records):
            raise StorageError(f"Failed to write {schema.name.value} to flat storage")

    async def put(self, collection: CollectionRef, record: Record) -> None:
        schema = resolve_schema(collection)
        key = _record_key(schema, record)
        records = [r for r in self._load(schema) if str(r.get(schema.key_path)) != key]
        records.append(record)
        self._save(schema, records)

    async def get(self, collection: CollectionRef, record_id: str) -> Optional[Record]:
        schema = resolve_schema(collection)
        for record in self._load(schema):
            if str(record.get(schema.key_path)) == str(record_id):
                return record
        return None

    async def get_by_index(self, collection: CollectionRef, index_name: str, value: Any) -> List[Record]:
        schema = resolve_schema(collection)
        _check_index(schema, index_name)
        return [record for record in self._load(schema) if record.get(index_name) == value]

    async def get_all(self, collection: CollectionRef) -> List[Record]:
        schema = resolve_schema(collection)
        return sorted(self._load(schema), key=lambda r: str(r.get(schema.key_path)))

    async def remove(self, collection: CollectionRef, record_id: str) -> None:
        await self.remove_many(collection, [record_id])

    async def remove_many(self, collection: CollectionRef, ids: Iterable[str]) -> None:
        schema = resolve_schema(collection)
        doomed = {str(record_id) for record_id in ids}
        if not doomed:
            return
        records = self._load(schema)
        kept = [r for r in records if str(r.get(schema.key_path)) not in doomed]
        if len(kept) != len(records):
            self._save(schema, kept)

    async def clear(self, collection: CollectionRef) -> None:
        schema = resolve_schema(collection)
        self.flat_storage.remove_item(fallback_key(schema.name))


async def import_flat_collection(store: LocalStore, flat_storage: FlatStorage, legacy_key: str,
                                 collection: CollectionRef,
                                 transform: Optional[Callable[[Record], Record]] = None) -> Optional[int]:
    """One-time move of a serialized array from flat storage into ``store``.

    Each entry is inserted, then the legacy key is deleted. Returns the number
    of imported records, or None when the key is absent or not a JSON array.
    """
    raw = flat_storage.get_item(legacy_key)
    if raw is None:
        return None
    entries = flat_storage.read_json(legacy_key)
    if not isinstance(entries, list):
        logger.warning(f"Legacy key {legacy_key} does not hold a list, skipping migration")
        return None

    imported = 0
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        record = transform(entry) if transform else entry
        await store.put(collection, record)
        imported += 1

    flat_storage.remove_item(legacy_key)
    logger.info(f"Migrated {imported} records from {legacy_key} into {resolve_schema(collection).name.value}")
    return imported


async def open_local_store(db_path: str, flat_storage: FlatStorage) -> LocalStore:
    """Open the durable store, degrading to the flat fallback when it is unavailable.

    Data left in the fallback by an earlier degraded run is imported once the
    durable store opens.
    """
    try:
        store = await SqliteLocalStore.open(db_path)
    except StorageUnavailableError as e:
        logger.warning(f"Durable store unavailable, using flat fallback: {e.message}")
        return FlatFallbackStore(flat_storage)

    for schema in COLLECTION_SCHEMAS.values():
        try:
            await import_flat_collection(store, flat_storage, fallback_key(schema.name), schema.name)
        except StorageError as e:
            logger.error(f"Failed to import fallback data for {schema.name.value}: {e.message}")
    return store
