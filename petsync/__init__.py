import atexit
import logging
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from petsync.config import config
from petsync.runtime import init_runtime
from petsync.utils.error_handlers import register_error_handlers
from petsync.utils.middleware import register_middleware

def create_app(config_name=None, **runtime_overrides):
    """Application factory pattern for Flask app creation."""

    # Determine configuration
    if config_name is None:
        config_name = 'development'

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialize CORS
    CORS(app, origins=app.config['CORS_ORIGINS'])

    # Initialize rate limiter
    Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=["1000 per hour", "100 per minute"]
    )

    # Setup logging
    setup_logging(app)

    # Register error handlers
    register_error_handlers(app)

    # Register middleware
    register_middleware(app)

    # Start the offline subsystem
    runtime = init_runtime(app, **runtime_overrides)
    atexit.register(runtime.shutdown)

    # Register blueprints
    register_blueprints(app)

    return app

def setup_logging(app):
    """Setup application logging."""
    logging.basicConfig(
        level=getattr(logging, app.config['LOG_LEVEL']),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Create logger for the app
    app.logger.setLevel(getattr(logging, app.config['LOG_LEVEL']))

def register_blueprints(app):
    """Register all blueprints."""
    from petsync.routes.health import health_bp
    from petsync.routes.offline_sync import sync_bp
    from petsync.routes.service_worker import sw_bp

    app.register_blueprint(health_bp, url_prefix='/api/v1')
    app.register_blueprint(sync_bp, url_prefix='/api/v1/offline-sync')
    app.register_blueprint(sw_bp, url_prefix='/sw')
