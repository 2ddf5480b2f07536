"""
Response helper utilities for API endpoints.
"""
from flask import jsonify

from petsync.utils.error_handlers import SyncErrorCode

def error_response(message: str = "Error", code: str = SyncErrorCode.INVALID_REQUEST, status_code: int = 400) -> tuple:
    """Create a standardized error response."""
    response_data = {
        "success": False,
        "error": {
            "code": code,
            "message": message
        }
    }
    return jsonify(response_data), status_code
