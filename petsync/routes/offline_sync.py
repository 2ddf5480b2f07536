"""
Offline Synchronization API Routes
Endpoints the UI uses for local records, the pending-sync queue, manual sync,
conflict resolution and connectivity/lifecycle signals.
"""

import logging
from typing import Optional
from flask import Blueprint, request, jsonify, current_app

from petsync.models.offline_sync import (
    ConflictResolution, StoreName, SyncConflict, SYNCABLE_STORES
)
from petsync.runtime import get_runtime
from petsync.services.local_store import resolve_schema
from petsync.utils.error_handlers import SyncErrorCode
from petsync.utils.middleware import require_json
from petsync.utils.response_helpers import error_response

logger = logging.getLogger(__name__)

sync_bp = Blueprint('sync', __name__)


def _runtime():
    return get_runtime(current_app)


def _writable_collection(store: str) -> Optional[StoreName]:
    collection = resolve_schema(store).name
    if collection not in SYNCABLE_STORES:
        return None
    return collection


@sync_bp.route('/sync', methods=['POST'])
def trigger_sync():
    """Run one drain pass of the pending-sync queue."""
    runtime = _runtime()
    synced = runtime.run(runtime.engine.sync())
    return jsonify({
        'success': True,
        'synced': synced,
        'status': runtime.engine.status.to_dict()
    }), 200


@sync_bp.route('/sync/status', methods=['GET'])
def get_sync_status():
    """Get the published sync status."""
    runtime = _runtime()
    status = runtime.run(runtime.sync_service.get_status())
    return jsonify({
        'success': True,
        'status': status
    }), 200


@sync_bp.route('/pending', methods=['GET'])
def list_pending_items():
    """List queued mutation intents in drain order."""
    runtime = _runtime()
    items = runtime.run(runtime.sync_service.get_pending_items())
    return jsonify({
        'success': True,
        'items': [item.to_dict() for item in items],
        'count': len(items)
    }), 200


@sync_bp.route('/pending', methods=['POST'])
@require_json
def add_pending_item():
    """Queue a mutation intent."""
    data = request.get_json()
    missing = [name for name in ('type', 'store', 'data') if name not in data]
    if missing:
        return error_response(f"Missing required fields: {', '.join(missing)}")

    runtime = _runtime()
    item = runtime.run(runtime.sync_service.add_offline_action(data['type'], data['store'], data['data']))
    return jsonify({
        'success': True,
        'item': item.to_dict()
    }), 201


@sync_bp.route('/records/<store>', methods=['GET'])
def list_records(store):
    """List records of a collection, optionally filtered by an index."""
    index_name = request.args.get('index')
    value = request.args.get('value')
    if index_name and value is None:
        return error_response("Query parameter 'value' is required with 'index'")

    runtime = _runtime()
    records = runtime.run(runtime.sync_service.list_records(resolve_schema(store).name, index_name, value))
    return jsonify({
        'success': True,
        'records': records,
        'count': len(records)
    }), 200


@sync_bp.route('/records/<store>', methods=['POST'])
@require_json
def save_record(store):
    """Save a record locally; queued for upload when offline."""
    collection = _writable_collection(store)
    if collection is None:
        return error_response(f"Collection {store} is not writable", SyncErrorCode.INVALID_REQUEST)
    data = request.get_json()
    if not data.get('id'):
        return error_response("Record must have an 'id'")

    runtime = _runtime()
    record = runtime.run(runtime.sync_service.save_record(collection, data))
    return jsonify({
        'success': True,
        'record': record
    }), 201


@sync_bp.route('/records/<store>/<record_id>', methods=['GET'])
def get_record(store, record_id):
    runtime = _runtime()
    record = runtime.run(runtime.sync_service.get_record(resolve_schema(store).name, record_id))
    if record is None:
        return error_response(f"Record {record_id} not found in {store}", SyncErrorCode.NOT_FOUND, 404)
    return jsonify({
        'success': True,
        'record': record
    }), 200


@sync_bp.route('/records/<store>/<record_id>', methods=['DELETE'])
def delete_record(store, record_id):
    """Delete a record. Deleting an album also deletes its photos."""
    collection = _writable_collection(store)
    if collection is None:
        return error_response(f"Collection {store} is not writable", SyncErrorCode.INVALID_REQUEST)

    runtime = _runtime()
    photos_removed = runtime.run(runtime.sync_service.delete_record(collection, record_id))
    return jsonify({
        'success': True,
        'deleted': record_id,
        'photosRemoved': photos_removed
    }), 200


@sync_bp.route('/conflicts/resolve', methods=['POST'])
@require_json
def resolve_conflict():
    """Resolve a conflict and store the resulting record."""
    data = request.get_json()
    strategy = data.get('strategy')
    try:
        conflict = SyncConflict.from_dict(data.get('conflict') or {})
        if strategy is not None:
            strategy = ConflictResolution(strategy)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Invalid conflict payload: {str(e)}")
        return error_response(f"Invalid conflict: {str(e)}")

    runtime = _runtime()
    resolved = runtime.run(runtime.sync_service.resolve_conflict(conflict, strategy))
    return jsonify({
        'success': True,
        'resolved': resolved
    }), 200


@sync_bp.route('/connectivity', methods=['POST'])
@require_json
def report_connectivity():
    """Report the device's online state."""
    online = request.get_json().get('online')
    if not isinstance(online, bool):
        return error_response("'online' must be a boolean")

    runtime = _runtime()
    changed = runtime.connectivity.set_online(online)
    return jsonify({
        'success': True,
        'online': runtime.connectivity.is_online,
        'changed': changed
    }), 200


@sync_bp.route('/lifecycle', methods=['POST'])
@require_json
def report_lifecycle_event():
    """Report a page lifecycle event (hidden, visible, unload)."""
    event = request.get_json().get('event')
    runtime = _runtime()
    try:
        flushed = runtime.lifecycle.handle_event(event)
    except ValueError as e:
        return error_response(str(e))
    return jsonify({
        'success': True,
        'event': event,
        'flushed': flushed
    }), 200


@sync_bp.route('/telemetry', methods=['POST'])
@require_json
def track_event():
    data = request.get_json()
    name = data.get('name')
    if not name:
        return error_response("Event 'name' is required")

    runtime = _runtime()
    runtime.telemetry.track(name, data.get('properties'))
    return jsonify({
        'success': True,
        'buffered': len(runtime.telemetry)
    }), 202


@sync_bp.route('/storage/status', methods=['GET'])
def get_storage_status():
    """Flat storage usage and the largest keys."""
    runtime = _runtime()
    return jsonify({
        'success': True,
        'storage': runtime.quota.get_storage_status(),
        'backend': runtime.store.backend_name
    }), 200


@sync_bp.route('/migrations/photos/<pet_id>', methods=['POST'])
def migrate_photos(pet_id):
    """Move a pet's legacy photo array from flat storage into the local store."""
    runtime = _runtime()
    migrated = runtime.run(runtime.records.migrate_photos_from_flat_storage(pet_id))
    return jsonify({
        'success': True,
        'petId': pet_id,
        'migrated': migrated
    }), 200
