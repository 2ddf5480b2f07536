"""
Service Worker API Routes
Control messages and cached fetches for the caching fetch layer.
"""

import logging
from flask import Blueprint, Response, request, jsonify, current_app

from petsync.runtime import get_runtime
from petsync.services.service_worker import FetchRequest
from petsync.utils.middleware import require_json
from petsync.utils.response_helpers import error_response

logger = logging.getLogger(__name__)

sw_bp = Blueprint('service_worker', __name__)


@sw_bp.route('/message', methods=['POST'])
@require_json
def post_message():
    """Deliver a control message (SKIP_WAITING, CACHE_URLS, CLEAR_CACHE, GET_CACHE_STATUS)."""
    runtime = get_runtime(current_app)
    reply = runtime.run(runtime.service_worker.handle_message(request.get_json()))
    return jsonify(reply), 200


@sw_bp.route('/fetch', methods=['GET'])
def cached_fetch():
    """Fetch ``url`` through the caching strategies and relay the response."""
    url = request.args.get('url')
    if not url:
        return error_response("Query parameter 'url' is required")

    fetch_request = FetchRequest(url=url, mode=request.args.get('mode', 'cors'))
    runtime = get_runtime(current_app)
    response = runtime.run(runtime.service_worker.fetch(fetch_request))
    return Response(response.body, status=response.status, content_type=response.content_type)


@sw_bp.route('/lifecycle/<phase>', methods=['POST'])
def run_lifecycle_phase(phase):
    """Run the install or activate phase."""
    runtime = get_runtime(current_app)
    if phase == 'install':
        result = {'precached': runtime.run(runtime.service_worker.install())}
    elif phase == 'activate':
        result = {'removed': runtime.run(runtime.service_worker.activate())}
    else:
        return error_response(f"Unknown lifecycle phase: {phase}")
    return jsonify({'success': True, **result}), 200


@sw_bp.route('/sync/<tag>', methods=['POST'])
def background_sync(tag):
    """Fire a background sync event for ``tag``."""
    runtime = get_runtime(current_app)
    handled = runtime.run(runtime.service_worker.on_sync(tag))
    return jsonify({'success': True, 'tag': tag, 'handled': handled}), 200
