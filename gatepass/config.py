import os
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()


class Config:
    """Base configuration class with all settings as static attributes."""

    # Core configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'your-secret-key-here'
    DEBUG = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'
    VERSION = '1.0.0'

    # Session cookie settings (the organizer identity rides on this)
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    REMEMBER_COOKIE_DURATION = timedelta(days=7)

    # MySQL connection timeouts
    MYSQL_CONNECT_TIMEOUT = 30
    MYSQL_READ_TIMEOUT = 30
    MYSQL_WRITE_TIMEOUT = 30

    # Database configuration
    base_db_uri = os.environ.get('DATABASE_URL')

    # Fallback to SQLite if no DATABASE_URL is provided
    if not base_db_uri:
        base_db_uri = 'sqlite:///gatepass.db'
        print("WARNING: DATABASE_URL not set, falling back to SQLite")

    if base_db_uri.startswith('mysql'):
        # PyMySQL specific parameters go on the query string
        from urllib.parse import urlparse, urlunparse
        parsed = urlparse(base_db_uri)

        query_params = {
            'charset': 'utf8mb4',
            'connect_timeout': str(MYSQL_CONNECT_TIMEOUT),
            'read_timeout': str(MYSQL_READ_TIMEOUT),
            'write_timeout': str(MYSQL_WRITE_TIMEOUT),
        }

        query_string = '&'.join([f"{k}={v}" for k, v in query_params.items()])
        new_query = f"{parsed.query}&{query_string}" if parsed.query else query_string

        SQLALCHEMY_DATABASE_URI = urlunparse((
            parsed.scheme,
            parsed.netloc,
            parsed.path,
            parsed.params,
            new_query,
            parsed.fragment
        ))
    else:
        SQLALCHEMY_DATABASE_URI = base_db_uri

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Pool options only make sense for server databases
    if base_db_uri.startswith('sqlite'):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {"timeout": 30},  # seconds to wait on a locked database
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {
            "pool_recycle": 3600,
            "pool_pre_ping": True,
            "pool_size": 10,
            "max_overflow": 20,
        }

    # Health monitoring
    ENABLE_DB_HEALTH_MONITOR = True
    DB_HEALTH_CHECK_INTERVAL = 300  # 5 minutes

    # Logging
    LOG_TO_FILE = os.environ.get('LOG_TO_FILE', 'false').lower() == 'true'

    # Site settings
    SITE_NAME = os.environ.get('SITE_NAME', 'Gatepass Events')
    CONTACT_EMAIL = os.environ.get('CONTACT_EMAIL', 'events@example.org')

    # Credentials
    CREDENTIAL_IMAGE_SIZE = 300
    CREDENTIAL_EMAIL_IMAGE_SIZE = 300
    CREDENTIAL_MAX_IMAGE_SIZE = 1200
    CREDENTIAL_INSERT_ATTEMPTS = 3

    # Scanning
    SCAN_HISTORY_SIZE = 10
    SCAN_POLL_INTERVAL = 0.1  # seconds between decode attempts
    CHECKIN_TIMEOUT = float(os.environ.get('CHECKIN_TIMEOUT', 5))
    CAMERA_DEVICE = int(os.environ.get('CAMERA_DEVICE', 0))
    CAMERA_RESOLUTION = (1280, 720)

    # Email configuration
    MAIL_SERVER = os.environ.get('MAIL_SERVER', 'smtp.gmail.com')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', 465))
    MAIL_USE_TLS = os.environ.get('MAIL_USE_TLS', 'false').lower() == 'true'
    MAIL_USE_SSL = os.environ.get('MAIL_USE_SSL', 'true').lower() == 'true'
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER', 'Gatepass Events <no-reply@example.org>')
    MAIL_SUPPRESS_SEND = os.environ.get('MAIL_SUPPRESS_SEND', 'false').lower() == 'true'
    MAIL_MAX_ATTEMPTS = 3

    @staticmethod
    def validate(app):
        """Hook for configuration checks that need the final app config."""


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    SESSION_COOKIE_SECURE = False
    ENABLE_DB_HEALTH_MONITOR = False
    SQLALCHEMY_ECHO = os.environ.get('SQL_DEBUG', 'false').lower() == 'true'


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    SYSLOG_SERVER = os.environ.get('SYSLOG_SERVER')

    @staticmethod
    def validate(app):
        # Secrets must come from the environment in production
        if not os.environ.get('SECRET_KEY'):
            raise ValueError("SECRET_KEY environment variable must be set in production")
        if not os.environ.get('DATABASE_URL'):
            raise ValueError("DATABASE_URL environment variable must be set in production")


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SESSION_COOKIE_SECURE = False
    ENABLE_DB_HEALTH_MONITOR = False
    LOG_TO_FILE = False

    MAIL_SUPPRESS_SEND = True
    MAIL_USERNAME = 'test@example.org'
    MAIL_PASSWORD = 'not-a-real-password'

    # Short timers keep the scanning tests fast
    SCAN_POLL_INTERVAL = 0.01
    CHECKIN_TIMEOUT = 2.0


# Configuration dictionary
config_by_name = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}
