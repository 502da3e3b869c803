"""Base configuration shared by every environment."""
import os
from datetime import timedelta

class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # JWT Configuration
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or 'jwt-secret-key-change-in-production'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=2)
    JWT_REFRESH_TOKEN_EXPIRES = timedelta(days=7)
    JWT_ALGORITHM = 'HS256'

    # CORS
    CORS_ORIGINS = ["http://localhost:*", "http://127.0.0.1:*"]

    # Rate Limiting
    RATELIMIT_STORAGE_URI = os.environ.get('REDIS_URL') or 'memory://'
    RATELIMIT_DEFAULT = "200 per day, 50 per hour"

    # QR sessions
    QR_SESSION_LIFETIME_SECONDS = int(os.environ.get('QR_SESSION_LIFETIME_SECONDS', 30))
    QR_ROTATION_INTERVAL_SECONDS = int(os.environ.get('QR_ROTATION_INTERVAL_SECONDS', 5))
    QR_TICK_SECONDS = 1.0
    QR_CHECKSUM_LENGTH = 16
    QR_NONCE_BYTES = 12
    QR_DEGRADED_AFTER_FAILURES = 3
    QR_BACKGROUND_ROTATION = True
    QR_MAX_ACTIVE_SESSIONS_PER_FACULTY = 3

    # Attendance
    ATTENDANCE_LATE_GRACE_SECONDS = int(os.environ.get('ATTENDANCE_LATE_GRACE_SECONDS', 20))
    ATTENDANCE_SCAN_TICKET_EXPIRY = 120  # seconds

    # Session store
    STORE_TIMEOUT_SECONDS = 2.0
    STORE_RETRY_ATTEMPTS = 3
    STORE_RETRY_BACKOFF_SECONDS = 0.1
    STORE_MAX_WORKERS = 8

    # File Upload
    MAX_CONTENT_LENGTH = 5 * 1024 * 1024  # 5MB
    UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER') or 'uploads'
    ALLOWED_PHOTO_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif'}

    # Identity
    STUDENT_EMAIL_DOMAIN = os.environ.get('STUDENT_EMAIL_DOMAIN') or '@pwioi.com'

    # Logging
    LOG_LEVEL = 'INFO'
    LOG_FILE = 'logs/app.log'
