"""Development configuration."""
import os

from .base import BaseConfig

class DevelopmentConfig(BaseConfig):
    """Development configuration class."""
    DEBUG = True
    TESTING = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DEV_DATABASE_URL') or \
        'sqlite:///qr_attendance_dev.db'
    SQLALCHEMY_ECHO = False

    # Redis (optional in dev)
    REDIS_URL = os.environ.get('REDIS_URL') or None

    LOG_LEVEL = 'DEBUG'
