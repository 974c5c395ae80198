"""
Testing configuration for the Bookd settlement engine
"""
import os
from config.settings import Config


class TestingConfig(Config):
    """Testing configuration with isolated database and safe defaults"""

    TESTING = True
    DEBUG = False

    # Use in-memory SQLite for fast tests
    SQLALCHEMY_DATABASE_URI = os.getenv('TEST_DATABASE_URL', 'sqlite://')
    SQLALCHEMY_ENGINE_OPTIONS = {}

    SECRET_KEY = 'test-secret-key'
    API_KEY = 'test-api-key'

    # Never talk to PayPal from tests
    PAYPAL_CLIENT_ID = 'test-client-id'
    PAYPAL_SECRET = 'test-secret'
    PAYPAL_MODE = 'sandbox'
    PAYPAL_WEBHOOK_ID = None
    PAYPAL_TIMEOUT_SECONDS = 1

    # Disable rate limiting in tests
    RATELIMIT_ENABLED = False

    ENABLE_SCHEDULER = False

    # Logging
    LOG_LEVEL = 'WARNING'
    SENTRY_DSN = None

    CORS_ORIGINS = ['http://localhost:5173', 'http://localhost:3000']
