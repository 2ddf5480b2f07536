"""
Health Check Endpoint
Reports the state of the local store, flat storage, sync engine and disk.
"""

import os
import time
import shutil
import logging
import redis
from flask import Blueprint, jsonify, current_app
from datetime import datetime, timezone

from petsync.models.offline_sync import StoreName
from petsync.runtime import get_runtime
from petsync.services.flat_storage import RedisFlatStorage
from petsync.utils.error_handlers import OfflineSyncError

health_bp = Blueprint('health', __name__)
logger = logging.getLogger(__name__)

HEALTH_CHECK_KEY = 'petsync_health_check'

class HealthChecker:
    def __init__(self, runtime):
        self.runtime = runtime
        self.started_at = time.time()
        self.checks = {
            'local_store': self._check_local_store,
            'flat_storage': self._check_flat_storage,
            'sync_engine': self._check_sync_engine,
            'disk': self._check_disk
        }

    def run_all_checks(self):
        """Run all health checks and return the combined status."""
        start_time = time.time()
        results = {}
        overall_status = 'healthy'

        for check_name, check_func in self.checks.items():
            check_start = time.time()
            try:
                result = check_func()
            except (OfflineSyncError, OSError, redis.RedisError) as e:
                logger.error(f"Health check {check_name} failed: {str(e)}")
                result = {'status': 'unhealthy', 'message': f"Check failed: {str(e)}"}

            results[check_name] = {
                'status': result['status'],
                'message': result.get('message', ''),
                'details': result.get('details', {}),
                'response_time_ms': round((time.time() - check_start) * 1000, 2)
            }

            if result['status'] == 'unhealthy':
                overall_status = 'unhealthy'
            elif result['status'] == 'degraded' and overall_status == 'healthy':
                overall_status = 'degraded'

        return {
            'status': overall_status,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'version': os.getenv('APP_VERSION', '1.0.0'),
            'environment': current_app.config.get('ENV', 'production'),
            'uptime_seconds': round(time.time() - self.started_at, 2),
            'checks': results,
            'total_check_time_ms': round((time.time() - start_time) * 1000, 2)
        }

    def _check_local_store(self):
        """Durable store reachable; the flat fallback counts as degraded."""
        store = self.runtime.store
        self.runtime.run(store.get_all(StoreName.SYNC_SETTINGS))
        if store.backend_name != 'sqlite':
            return {
                'status': 'degraded',
                'message': 'Durable store unavailable, using flat fallback',
                'details': {'backend': store.backend_name}
            }
        return {
            'status': 'healthy',
            'message': 'Local database accessible',
            'details': {'backend': store.backend_name}
        }

    def _check_flat_storage(self):
        """Flat storage read/write round trip."""
        flat_storage = self.runtime.flat_storage
        flat_storage.set_item(HEALTH_CHECK_KEY, 'ok')
        value = flat_storage.get_item(HEALTH_CHECK_KEY)
        flat_storage.remove_item(HEALTH_CHECK_KEY)

        details = {'backend': type(flat_storage).__name__}
        if isinstance(flat_storage, RedisFlatStorage):
            info = flat_storage.redis_client.info()
            details['used_memory_human'] = info.get('used_memory_human', 'unknown')
            details['redis_version'] = info.get('redis_version', 'unknown')

        if value != 'ok':
            return {'status': 'unhealthy', 'message': 'Flat storage read/write test failed'}

        quota = self.runtime.quota.get_storage_status()
        details['percent'] = quota['percent']
        if quota['isLow']:
            return {'status': 'degraded', 'message': f"Flat storage {quota['percent']}% full", 'details': details}
        return {'status': 'healthy', 'message': 'Flat storage accessible', 'details': details}

    def _check_sync_engine(self):
        status = self.runtime.engine.status.to_dict()
        if status['error']:
            return {'status': 'degraded', 'message': f"Last sync failed: {status['error']}", 'details': status}
        return {'status': 'healthy', 'message': 'Sync engine idle' if not status['isSyncing'] else 'Syncing',
                'details': status}

    def _check_disk(self):
        """Check disk space."""
        total, used, free = shutil.disk_usage('/')
        used_percent = (used / total) * 100

        if used_percent > 95:
            status = 'unhealthy'
            message = f'Critical disk usage: {used_percent:.1f}%'
        elif used_percent > 85:
            status = 'degraded'
            message = f'High disk usage: {used_percent:.1f}%'
        else:
            status = 'healthy'
            message = f'Disk usage normal: {used_percent:.1f}%'

        return {
            'status': status,
            'message': message,
            'details': {
                'used_percent': round(used_percent, 2),
                'free_gb': round(free / (1024**3), 2),
                'total_gb': round(total / (1024**3), 2)
            }
        }

def _health_checker():
    runtime = get_runtime(current_app)
    checker = current_app.extensions.get('petsync_health')
    if checker is None:
        checker = HealthChecker(runtime)
        current_app.extensions['petsync_health'] = checker
    return checker

@health_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    result = _health_checker().run_all_checks()

    # Degraded still serves requests
    status_code = 503 if result['status'] == 'unhealthy' else 200
    return jsonify(result), status_code
