"""Testing configuration."""
from datetime import timedelta

from .base import BaseConfig

class TestingConfig(BaseConfig):
    """Testing configuration class."""

    # Basic Flask config
    DEBUG = False
    TESTING = True
    SECRET_KEY = 'test-secret-key'

    # Database (in-memory SQLite unless overridden)
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'

    # JWT Configuration
    JWT_SECRET_KEY = 'test-jwt-secret'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=5)
    JWT_REFRESH_TOKEN_EXPIRES = timedelta(hours=1)

    # Rate Limiting (disabled for testing)
    RATELIMIT_ENABLED = False

    # Rotation is driven by hand in tests
    QR_BACKGROUND_ROTATION = False

    # Fail fast on store errors
    STORE_RETRY_BACKOFF_SECONDS = 0.0

    # File Upload
    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1MB for testing
    UPLOAD_FOLDER = '/tmp/qr_attendance_test_uploads'

    # Logging
    LOG_LEVEL = 'WARNING'
