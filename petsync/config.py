import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration class."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Durable local store
    LOCAL_DB_PATH = os.environ.get('LOCAL_DB_PATH') or os.path.join('instance', 'petchecky.db')

    # Flat key-value fallback storage: memory | file | redis
    FLAT_STORAGE_BACKEND = os.environ.get('FLAT_STORAGE_BACKEND') or 'file'
    FLAT_STORAGE_PATH = os.environ.get('FLAT_STORAGE_PATH') or os.path.join('instance', 'flat_storage.json')

    # Redis
    REDIS_URL = os.environ.get('REDIS_URL') or 'redis://localhost:6379/0'

    # Sync engine
    SYNC_API_BASE_URL = os.environ.get('SYNC_API_BASE_URL') or 'http://localhost:3000/api'
    SYNC_MAX_RETRIES = int(os.environ.get('SYNC_MAX_RETRIES', '3'))
    SYNC_INTERVAL_SECONDS = float(os.environ.get('SYNC_INTERVAL_SECONDS', '30'))
    AUTO_SYNC = _env_bool('AUTO_SYNC', 'true')
    UPLOAD_TIMEOUT = float(os.environ.get('UPLOAD_TIMEOUT', '10'))
    CONFLICT_STRATEGY = os.environ.get('CONFLICT_STRATEGY') or 'use_server'

    # Caching fetch layer
    ORIGIN_BASE_URL = os.environ.get('ORIGIN_BASE_URL') or 'http://localhost:3000'
    API_FETCH_TIMEOUT = float(os.environ.get('API_FETCH_TIMEOUT', '5'))
    IMAGE_CACHE_LIMIT = int(os.environ.get('IMAGE_CACHE_LIMIT', '100'))
    API_CACHE_LIMIT = int(os.environ.get('API_CACHE_LIMIT', '30'))
    DYNAMIC_CACHE_LIMIT = int(os.environ.get('DYNAMIC_CACHE_LIMIT', '50'))
    CACHEABLE_API_ROUTES = [
        route.strip() for route in
        os.environ.get('CACHEABLE_API_ROUTES', '/api/health,/api/hospitals,/api/insurance,/api/community/posts').split(',')
        if route.strip()
    ]

    # Connectivity and telemetry
    CONNECTIVITY_PROBE_URL = os.environ.get('CONNECTIVITY_PROBE_URL')
    CONNECTIVITY_PROBE_INTERVAL = float(os.environ.get('CONNECTIVITY_PROBE_INTERVAL', '15'))
    TELEMETRY_ENDPOINT = os.environ.get('TELEMETRY_ENDPOINT')

    # CORS
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    ENV = 'development'


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    ENV = 'production'


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    ENV = 'testing'
    LOCAL_DB_PATH = ':memory:'
    FLAT_STORAGE_BACKEND = 'memory'
    AUTO_SYNC = False
    CONNECTIVITY_PROBE_URL = None
    TELEMETRY_ENDPOINT = None
    RATELIMIT_ENABLED = False


# Configuration mapping
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
