# __init__.py
"""
Application factory for the event check-in service.
This module creates and configures the Flask application using the application factory pattern.
"""

import os
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler

from flask import Flask, jsonify
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from gatepass.config import config_by_name
from gatepass.extensions import init_extensions, validate_email_config, db, email_service
from gatepass.services.errors import (
    GatepassError, Unauthorized, StorageError, CaptureError, EncodingError,
    EventNotFound, RegistrationNotFound, EventFull, AlreadyRegistered
)


def setup_logging(app):
    """
    Configure structured logging for the application.

    Args:
        app: Flask application instance
    """
    # Create logs directory if it doesn't exist
    log_dir = os.path.join(app.root_path, 'logs')
    os.makedirs(log_dir, exist_ok=True)

    log_format = logging.Formatter(
        '%(asctime)s %(levelname)s %(name)s %(threadName)s : %(message)s'
    )

    # File handler with rotation
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=1024 * 1024 * 10,  # 10MB
        backupCount=5
    )
    file_handler.setFormatter(log_format)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_format)
    console_handler.setLevel(logging.DEBUG if app.debug else logging.INFO)

    app.logger.setLevel(logging.DEBUG if app.debug else logging.INFO)
    app.logger.addHandler(file_handler)
    app.logger.addHandler(console_handler)

    # Service loggers are named after their modules and share the same handlers
    for name in ('checkin_service', 'registration_service', 'scan_session',
                 'decoder_adapter', 'credential_service', 'email_service',
                 'check_in', 'registration'):
        service_logger = logging.getLogger(name)
        service_logger.setLevel(logging.INFO)
        service_logger.addHandler(file_handler)

    # Forcefully suppress SQLAlchemy logs
    sa_logger = logging.getLogger('sqlalchemy.engine')
    sa_logger.setLevel(logging.WARNING)
    sa_logger.propagate = False


def register_blueprints(app):
    """
    Register all application blueprints.

    Args:
        app: Flask application instance
    """
    try:
        # Import blueprints here to avoid circular imports
        from .controllers.check_in import check_in_bp
        from .controllers.registration import registration_bp

        app.register_blueprint(check_in_bp, url_prefix='/check-in')
        app.register_blueprint(registration_bp)

        app.logger.info("All blueprints registered successfully")

    except ImportError as e:
        app.logger.error(f"Failed to import blueprint: {str(e)}")
        raise


# Status codes for errors that escape a view
ERROR_STATUS = [
    (Unauthorized, 404),
    (EventNotFound, 404),
    (RegistrationNotFound, 404),
    (EventFull, 409),
    (AlreadyRegistered, 409),
    (CaptureError, 503),
    (StorageError, 503),
    (EncodingError, 400),
]


def error_status(error):
    for error_class, status in ERROR_STATUS:
        if isinstance(error, error_class):
            return status
    return 400


def register_error_handlers(app):
    """
    Register global error handlers.

    Args:
        app: Flask application instance
    """

    @app.errorhandler(GatepassError)
    def handle_gatepass_error(e):
        status = error_status(e)
        if status >= 500:
            app.logger.error(f"Service error: {e}")
        response = {'success': False, 'error': e.message}
        response.update(e.to_dict())
        return jsonify(response), status

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        return jsonify({'success': False, 'error': e.description}), e.code

    @app.errorhandler(Exception)
    def handle_exception(e):
        app.logger.error(f"Unhandled exception: {str(e)}", exc_info=True)
        return jsonify({
            'success': False,
            'error': 'An unexpected error occurred',
            'message': str(e) if app.debug else 'Internal server error'
        }), 500


def register_shell_context(app):
    """
    Register shell context for flask shell command.

    Args:
        app: Flask application instance
    """

    @app.shell_context_processor
    def make_shell_context():
        from gatepass.models import Organizer, Event, Registration
        return {
            'db': db,
            'Organizer': Organizer,
            'Event': Event,
            'Registration': Registration,
            'email_service': email_service
        }


def register_health_checks(app):
    """
    Register health check endpoints.

    Args:
        app: Flask application instance
    """

    @app.route('/health')
    def health_check():
        """Basic health check endpoint."""
        return jsonify({
            'status': 'ok',
            'timestamp': datetime.now().isoformat(),
            'version': app.config.get('VERSION', '1.0.0')
        })

    @app.route('/health/email')
    def email_health_check():
        """Email service health check endpoint."""
        config_issues = validate_email_config(app)
        worker_alive = (
                email_service.worker_thread is not None and
                email_service.worker_thread.is_alive()
        )
        status = 'healthy' if not config_issues and worker_alive else 'degraded'

        return jsonify({
            'status': status,
            'config_issues': config_issues,
            'worker_thread': 'running' if worker_alive else 'stopped',
            'queue': email_service.get_queue_stats(),
            'timestamp': datetime.now().isoformat()
        })

    @app.route('/health/database')
    def database_health_check():
        """Database health check endpoint."""
        from gatepass.extensions import check_database_health, get_connection_stats

        healthy, message = check_database_health()
        stats = get_connection_stats()

        return jsonify({
            'status': 'healthy' if healthy else 'unhealthy',
            'message': message,
            'stats': stats,
            'timestamp': datetime.now().isoformat()
        }), 200 if healthy else 503


def create_app(config_name=None, config_overrides=None):
    """
    Application factory function.

    Args:
        config_name (str): Configuration name ('development', 'production', 'testing')
        config_overrides (dict): Settings applied on top of the named configuration

    Returns:
        Flask: Configured Flask application instance
    """
    load_dotenv()

    app = Flask(__name__)

    config_name = config_name or os.environ.get('FLASK_CONFIG', 'development')
    config_class = config_by_name[config_name]
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)
    config_class.validate(app)

    if app.config.get('LOG_TO_FILE'):
        setup_logging(app)
    app.logger.info(f"Starting application with config: {config_name}")

    init_extensions(app)

    if app.config.get('ENABLE_DB_HEALTH_MONITOR'):
        from gatepass.extensions import start_database_health_monitor
        start_database_health_monitor(app, interval=app.config.get('DB_HEALTH_CHECK_INTERVAL', 300))

    # Validate email configuration
    email_issues = validate_email_config(app)
    if email_issues:
        app.logger.warning(f"Email configuration issues: {'; '.join(email_issues)}")
    else:
        app.logger.info("Email configuration validated successfully")

    # Register components
    register_blueprints(app)
    register_error_handlers(app)
    register_shell_context(app)
    register_health_checks(app)

    # Register CLI commands
    from .cli import register_cli_commands
    register_cli_commands(app)

    app.logger.info("Application factory completed successfully")

    return app
