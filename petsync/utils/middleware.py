import time
import uuid
import logging
from flask import request, g
from functools import wraps

from petsync.utils.response_helpers import error_response

logger = logging.getLogger(__name__)

def register_middleware(app):
    """Register middleware for the Flask app."""

    @app.before_request
    def before_request():
        """Log request details and start timing."""
        g.start_time = time.time()
        g.request_id = generate_request_id()
        logger.info(f"Request: {request.method} {request.url}")

    @app.after_request
    def after_request(response):
        """Log response details and execution time."""
        execution_time = time.time() - g.get('start_time', time.time())
        logger.info(f"Response: {response.status_code} - {execution_time:.3f}s")

        response.headers['X-Request-ID'] = g.get('request_id', '')
        response.headers['X-Execution-Time'] = f"{execution_time:.3f}s"
        return response

def generate_request_id():
    """Generate a short request ID."""
    return str(uuid.uuid4())[:8]

def require_json(f):
    """Decorator to ensure request contains a JSON object."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not request.is_json or not isinstance(request.get_json(silent=True), dict):
            logger.warning("Request does not contain a JSON object")
            return error_response('Request body must be a JSON object')
        return f(*args, **kwargs)
    return decorated_function
