"""
Offline Sync Error Handling
Exception hierarchy for the offline subsystem and the Flask handlers that turn
those exceptions into the standard JSON error envelope.
"""

import logging
from typing import Dict, Any, Optional
from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class SyncErrorCode:
    # Storage errors
    STORAGE_UNAVAILABLE = "STORE_001"
    STORAGE_FAILURE = "STORE_002"
    UNKNOWN_COLLECTION = "STORE_003"
    UNKNOWN_INDEX = "STORE_004"

    # Queue errors
    INVALID_SYNC_ITEM = "QUEUE_001"

    # Network errors
    UPLOAD_FAILED = "NET_001"
    OFFLINE = "NET_002"

    # Request errors
    INVALID_REQUEST = "REQ_001"
    NOT_FOUND = "REQ_002"

    # System errors
    INTERNAL_ERROR = "SYS_001"


class OfflineSyncError(Exception):
    """Base exception for the offline sync subsystem."""

    def __init__(self,
                 message: str,
                 error_code: str = SyncErrorCode.INTERNAL_ERROR,
                 status_code: int = 500,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        error = {
            'code': self.error_code,
            'message': self.message
        }
        if self.details:
            error['details'] = self.details
        return {'success': False, 'error': error}


class StorageError(OfflineSyncError):
    """A single read or write against the local store failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, SyncErrorCode.STORAGE_FAILURE, 500, details)


class StorageUnavailableError(OfflineSyncError):
    """The durable store could not be opened or upgraded."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, SyncErrorCode.STORAGE_UNAVAILABLE, 503, details)


class UnknownCollectionError(OfflineSyncError):

    def __init__(self, collection: str):
        super().__init__(f"Unknown collection: {collection}", SyncErrorCode.UNKNOWN_COLLECTION, 404,
                         {'collection': collection})


class UnknownIndexError(OfflineSyncError):

    def __init__(self, collection: str, index_name: str):
        super().__init__(f"Collection {collection} has no index {index_name}", SyncErrorCode.UNKNOWN_INDEX, 400,
                         {'collection': collection, 'index': index_name})


class InvalidSyncItemError(OfflineSyncError, ValueError):
    """Raised when a mutation intent has an unknown type or collection."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, SyncErrorCode.INVALID_SYNC_ITEM, 400, details)


class UploadError(OfflineSyncError):
    """Transport failure or non-2xx answer from the sync API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, SyncErrorCode.UPLOAD_FAILED, 502,
                         {'upstream_status': status_code} if status_code is not None else None)
        self.upstream_status = status_code


class NetworkUnavailableError(OfflineSyncError):
    """A fetch could not reach the network or did not answer in time."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, SyncErrorCode.OFFLINE, 503, {'url': url} if url else None)


def register_error_handlers(app):
    """Register JSON error handlers on the Flask app."""

    @app.errorhandler(OfflineSyncError)
    def handle_offline_sync_error(error: OfflineSyncError):
        logger.warning(f"{error.error_code}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        code = SyncErrorCode.NOT_FOUND if error.code == 404 else SyncErrorCode.INVALID_REQUEST
        return jsonify({
            'success': False,
            'error': {
                'code': code,
                'message': error.description
            }
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        logger.exception(f"Unhandled error: {str(error)}")
        return jsonify({
            'success': False,
            'error': {
                'code': SyncErrorCode.INTERNAL_ERROR,
                'message': 'An internal error occurred. Please try again later.'
            }
        }), 500
