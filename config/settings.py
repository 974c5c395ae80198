"""
Configuration settings for different environments
"""
import os
import logging
import secrets

from dotenv import load_dotenv

load_dotenv()


def _require_in_production(var_name, default):
    """Return env var value. In production, warn loudly if still using default."""
    value = os.environ.get(var_name, '')
    if value:
        return value
    env = os.environ.get('FLASK_ENV', 'development')
    if env != 'development' and default:
        logging.getLogger(__name__).warning(
            '%s is using an insecure default. Set it via environment variable!', var_name
        )
    return default


def _database_url(default):
    url = os.environ.get('DATABASE_URL') or default
    # Fix postgres:// to postgresql:// for SQLAlchemy 2.x
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    return url


class Config:
    """Base configuration"""
    SECRET_KEY = _require_in_production('SECRET_KEY', 'dev-only-' + secrets.token_hex(16))

    # Internal API key for service-to-service calls (submit payout, admin actions)
    API_KEY = _require_in_production('API_KEY', 'dev-only-' + secrets.token_hex(16))

    # Database
    SQLALCHEMY_DATABASE_URI = _database_url('postgresql://localhost/bookd_dev')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 10,
        'pool_recycle': 3600,
        'pool_pre_ping': True,
    }

    # CORS
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

    API_PREFIX = '/api'
    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1MB, JSON bodies only

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    SENTRY_DSN = os.environ.get('SENTRY_DSN')

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.environ.get('REDIS_URL') or 'memory://'
    SUBMIT_PAYOUT_RATE_LIMIT = os.environ.get('SUBMIT_PAYOUT_RATE_LIMIT', '10 per minute')

    # PayPal Payouts
    PAYPAL_CLIENT_ID = os.environ.get('PAYPAL_CLIENT_ID')
    PAYPAL_SECRET = os.environ.get('PAYPAL_SECRET')
    PAYPAL_MODE = os.environ.get('PAYPAL_MODE', 'sandbox')
    PAYPAL_WEBHOOK_ID = os.environ.get('PAYPAL_WEBHOOK_ID')
    PAYPAL_TIMEOUT_SECONDS = float(os.environ.get('PAYPAL_TIMEOUT_SECONDS', 15))
    PAYOUT_CURRENCY = 'USD'
    PAYOUT_EMAIL_SUBJECT = "You've been paid via Bookd!"
    PAYOUT_EMAIL_MESSAGE = 'Your early pay request has been funded. The money is on its way!'
    PAYOUT_NOTE = 'Early pay for load - Bookd'

    # Fee schedule (fractions of the requested amount)
    FEE_TIER_RATES = {
        'free': {'broker': '0.03', 'platform': '0.01'},
        'pro': {'broker': '0.04', 'platform': '0'},
        'enterprise': {'broker': '0.04', 'platform': '0'},
    }
    # Early pay requests per broker per calendar month; None means unlimited
    TIER_MONTHLY_REQUEST_ALLOWANCE = {
        'free': int(os.environ.get('FREE_TIER_MONTHLY_REQUESTS', 10)),
        'pro': None,
        'enterprise': None,
    }

    # Earnings ledger
    REFERRAL_POOL_RATE = '0.05'
    REFERRAL_TRUCKER_SHARE = '0.10'
    REFERRAL_MONTHLY_CAP = '100.00'
    RECRUITER_BONUS_RATE = '0.10'
    EARNINGS_MATURATION_DAYS = 7
    LEDGER_CAS_MAX_RETRIES = 5

    # Background jobs
    ENABLE_SCHEDULER = os.environ.get('ENABLE_SCHEDULER', '').lower() == 'true'
    MATURATION_INTERVAL_MINUTES = int(os.environ.get('MATURATION_INTERVAL_MINUTES', 60))
    RECONCILE_INTERVAL_MINUTES = int(os.environ.get('RECONCILE_INTERVAL_MINUTES', 15))
    # Pending payouts older than this are queried against PayPal / flagged
    PAYOUT_STUCK_AFTER_MINUTES = int(os.environ.get('PAYOUT_STUCK_AFTER_MINUTES', 60))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False
    SQLALCHEMY_DATABASE_URI = _database_url('sqlite:///bookd.db')
    SQLALCHEMY_ENGINE_OPTIONS = {}
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False
    PAYPAL_MODE = os.environ.get('PAYPAL_MODE', 'live')

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 20,
        'max_overflow': 40,
        'pool_recycle': 3600,
        'pool_pre_ping': True,
    }


from config.testing import TestingConfig  # noqa: E402


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
