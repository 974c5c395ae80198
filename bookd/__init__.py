"""
Bookd settlement engine: early pay fees, referral earnings ledger and
PayPal payout orchestration.
"""
import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

logger = logging.getLogger(__name__)


def _configure_logging(app):
    from bookd.middleware import RequestIdFilter

    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    root = logging.getLogger()
    if not any(getattr(h, '_bookd', False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s'
        ))
        handler.addFilter(RequestIdFilter())
        handler._bookd = True
        root.addHandler(handler)
    root.setLevel(level)


def _init_sentry(app):
    dsn = app.config.get('SENTRY_DSN')
    if not dsn:
        if not app.config.get('DEBUG') and not app.config.get('TESTING'):
            logger.warning('SENTRY_DSN is not set -- error monitoring is disabled.')
        return
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
    )


def create_app(config_name=None):
    """Flask application factory"""
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    from config import config
    app.config.from_object(config.get(config_name, config['default']))

    _configure_logging(app)
    _init_sentry(app)

    # Initialize extensions
    from bookd.extensions import limiter
    from bookd.middleware import RequestIdMiddleware

    db.init_app(app)
    limiter.init_app(app)
    CORS(app, resources={r'/api/*': {'origins': app.config['CORS_ORIGINS']}})
    app.wsgi_app = RequestIdMiddleware(app.wsgi_app)

    # Register models on the metadata before create_all / migrations
    from bookd import models  # noqa: F401

    # Register blueprints
    from bookd.routes import early_pay_bp, payouts_bp, webhook_bp, earnings_bp, register_error_handlers

    api_prefix = app.config['API_PREFIX']
    app.register_blueprint(early_pay_bp, url_prefix=f'{api_prefix}/early-pay')
    app.register_blueprint(payouts_bp, url_prefix=f'{api_prefix}/payouts')
    app.register_blueprint(webhook_bp, url_prefix=f'{api_prefix}/webhooks')
    app.register_blueprint(earnings_bp, url_prefix=f'{api_prefix}/earnings')
    register_error_handlers(app)

    from bookd.cli import register_commands
    register_commands(app)

    @app.after_request
    def set_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        response.headers['Content-Security-Policy'] = "default-src 'none'"
        if not app.config.get('DEBUG') and not app.config.get('TESTING'):
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    # Health check endpoint
    @app.route(f'{api_prefix}/health')
    @limiter.exempt
    def health():
        return jsonify({'status': 'healthy', 'service': 'bookd-settlement'}), 200

    if app.config.get('ENABLE_SCHEDULER'):
        from bookd.scheduler import init_scheduler
        app.extensions['bookd_scheduler'] = init_scheduler(app)

    return app
