import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager


# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'tierkeep.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    # botocore logs every request at DEBUG
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('paramiko').setLevel(logging.WARNING)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def register_error_handlers(app):
    """Map engine exceptions to JSON error responses."""
    from tierkeep.backup.errors import (
        CapacityBoundExceeded,
        ConfigurationError,
        ConfirmationRequired,
        EstimationError,
        InvalidParameter,
        ObjectNotFound,
        RangeError,
        StorageError,
        TransferError,
        TransportError,
    )

    def error_response(error, status):
        return jsonify({'error': str(error), 'type': type(error).__name__}), status

    @app.errorhandler(RangeError)
    @app.errorhandler(InvalidParameter)
    @app.errorhandler(ConfirmationRequired)
    def handle_bad_request(error):
        return error_response(error, 400)

    @app.errorhandler(ObjectNotFound)
    def handle_not_found(error):
        return error_response(error, 404)

    @app.errorhandler(StorageError)
    @app.errorhandler(TransportError)
    @app.errorhandler(TransferError)
    def handle_backend_error(error):
        app.logger.error(f"Backend failure: {error}")
        return error_response(error, 502)

    @app.errorhandler(ConfigurationError)
    @app.errorhandler(EstimationError)
    @app.errorhandler(CapacityBoundExceeded)
    def handle_server_error(error):
        app.logger.error(f"{type(error).__name__}: {error}")
        return error_response(error, 500)


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from tierkeep.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(db_uri.replace('sqlite:///', '')), exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    from tierkeep.auth import load_operator_from_request
    login_manager.request_loader(load_operator_from_request)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Authentication required'}), 401

    # Register blueprints
    from tierkeep.routes import sites_routes, backups_routes, capacity_routes, history_routes, dashboard_routes
    app.register_blueprint(sites_routes.bp)
    app.register_blueprint(backups_routes.bp)
    app.register_blueprint(backups_routes.storage_bp)
    app.register_blueprint(capacity_routes.bp)
    app.register_blueprint(history_routes.bp)
    app.register_blueprint(dashboard_routes.bp)

    register_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema
    from tierkeep import models  # noqa: F401
    with app.app_context():
        db.create_all()

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Scheduler disabled by configuration")
        return app

    # Initialize and start scheduler (only in designated worker or development child process)
    from tierkeep.scheduler import init_scheduler, start_scheduler, sync_backup_sites, stop_scheduler
    import atexit

    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # Development: only the reloader child; production: only the designated worker
    if is_development:
        should_init_scheduler = is_reloader_child
    else:
        should_init_scheduler = is_scheduler_worker

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()

        with app.app_context():
            sync_backup_sites()

        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
