"""API blueprints and shared route helpers"""
import logging
from functools import wraps

from flask import current_app, jsonify, request

from bookd.errors import EarlyPayError

logger = logging.getLogger(__name__)


def require_api_key(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key = request.headers.get('X-API-Key')
        if not api_key or api_key != current_app.config['API_KEY']:
            return jsonify({'success': False, 'error': 'Invalid or missing API key'}), 401
        return f(*args, **kwargs)
    return decorated_function


def json_body():
    """Request JSON as a dict ({} when absent or not an object)."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_error_handlers(app):
    @app.errorhandler(EarlyPayError)
    def handle_early_pay_error(e):
        if e.status_code >= 500:
            logger.error('%s: %s', type(e).__name__, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'success': False, 'error': 'Not found'}), 404

    @app.errorhandler(429)
    def ratelimit_handler(e):
        # Retry-After header is set by Flask-Limiter; read it back
        retry_after = e.get_headers().get('Retry-After') if hasattr(e, 'get_headers') else None
        retry_after_seconds = int(retry_after) if retry_after else 60
        return jsonify({
            'success': False,
            'error': 'Too many requests. Please try again later.',
            'retry_after': retry_after_seconds,
        }), 429

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({'success': False, 'error': 'Internal server error'}), 500


from .early_pay import early_pay_bp  # noqa: E402
from .payouts import payouts_bp, webhook_bp  # noqa: E402
from .earnings import earnings_bp  # noqa: E402

__all__ = [
    'early_pay_bp',
    'payouts_bp',
    'webhook_bp',
    'earnings_bp',
    'register_error_handlers',
    'require_api_key',
    'json_body',
]
