# extensions.py
"""
Flask extensions initialization.
Extensions are created unbound here and attached to the app in the application factory,
which keeps models and services free of circular imports.
"""

from flask import jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager

from gatepass.utils.email_service import EmailService
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
import sqlite3
import time
import logging
import threading

# Initialize extensions without app binding
db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
email_service = EmailService()

# Connection monitoring
connection_stats = {
    'total_checks': 0,
    'failed_checks': 0,
    'last_check': 0,
    'healthy': True
}
connection_lock = threading.Lock()

logger = logging.getLogger(__name__)


@event.listens_for(Engine, "connect")
def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite leaves foreign keys unenforced unless asked on every connection."""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()


def get_connection_stats():
    """
    Get current database connection statistics.

    Returns:
        dict: Connection statistics
    """
    with connection_lock:
        return connection_stats.copy()


def check_database_health():
    """
    Check if the database connection is healthy.
    Requires an active Flask application context.

    Returns:
        tuple: (bool, str) indicating health status and message
    """
    try:
        connection = db.engine.connect()
        try:
            result = connection.execute(text("SELECT 1"))
            result.fetchone()
        finally:
            connection.close()

        with connection_lock:
            connection_stats['total_checks'] += 1
            connection_stats['healthy'] = True
            connection_stats['last_check'] = time.time()

        return True, "Database connection is healthy"

    except Exception as e:
        logger.error(f"Database health check failed: {e}")

        with connection_lock:
            connection_stats['total_checks'] += 1
            connection_stats['failed_checks'] += 1
            connection_stats['healthy'] = False
            connection_stats['last_check'] = time.time()

        return False, f"Database connection failed: {str(e)}"


def init_extensions(app):
    """
    Initialize all extensions with proper order and configuration.

    Args:
        app: Flask application instance
    """
    # Step 1: Database first, migrations need it
    db.init_app(app)
    migrate.init_app(app, db)

    # Step 2: Flask-Login supplies the opaque organizer identity
    login_manager.init_app(app)
    login_manager.session_protection = 'basic'

    @login_manager.user_loader
    def load_organizer(organizer_id):
        from gatepass.models import Organizer
        return db.session.get(Organizer, organizer_id)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'error': 'Authentication required',
                        'error_code': 'authentication_required'}), 401

    # Step 3: Email worker
    email_service.init_app(app)

    app.logger.info("Extensions initialized successfully in correct order")


def validate_email_config(app):
    """
    Validate email configuration on startup.

    Args:
        app: Flask application instance

    Returns:
        list: List of configuration issues found
    """
    issues = []

    if app.config.get('MAIL_SUPPRESS_SEND'):
        issues.append("MAIL_SUPPRESS_SEND=True will prevent email sending")

    required = ['MAIL_SERVER', 'MAIL_USERNAME', 'MAIL_PASSWORD', 'MAIL_DEFAULT_SENDER']
    missing = [key for key in required if not app.config.get(key)]
    if missing:
        issues.append(f"Missing required email config: {', '.join(missing)}")

    mail_port = app.config.get('MAIL_PORT')
    use_tls = app.config.get('MAIL_USE_TLS', False)
    use_ssl = app.config.get('MAIL_USE_SSL', False)

    if use_tls and use_ssl:
        issues.append("Cannot use both MAIL_USE_TLS and MAIL_USE_SSL simultaneously")

    if mail_port == 465 and use_tls and not use_ssl:
        issues.append("Port 465 typically uses SSL, not TLS. Consider using port 587 for TLS")
    elif mail_port == 587 and use_ssl and not use_tls:
        issues.append("Port 587 typically uses TLS, not SSL. Consider using port 465 for SSL")

    return issues


def start_database_health_monitor(app, interval=300):
    """
    Start a background thread to monitor database health.

    Args:
        app: Flask application instance
        interval (int): Health check interval in seconds
    """

    def monitor():
        while True:
            try:
                with app.app_context():
                    healthy, message = check_database_health()
                    if not healthy:
                        logger.warning(f"Database health monitor: {message}")
            except Exception as e:
                logger.error(f"Database health monitor error: {e}")
            time.sleep(interval)

    if app.config.get('ENABLE_DB_HEALTH_MONITOR', False):
        monitor_thread = threading.Thread(target=monitor, daemon=True)
        monitor_thread.start()
        logger.info("Started database health monitor thread")
