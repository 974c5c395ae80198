"""
Request ID middleware for request tracing and logging
"""
import logging
import uuid

from flask import has_request_context, request


class RequestIdMiddleware:
    """
    WSGI middleware to add unique request ID to each request
    Lets a webhook delivery or payout submission be followed through the logs
    """

    def __init__(self, app):
        self.app = app

    def __call__(self, environ, start_response):
        # Reuse the caller's ID (PayPal sends its own transmission id)
        request_id = (
            environ.get('HTTP_X_REQUEST_ID')
            or environ.get('HTTP_PAYPAL_TRANSMISSION_ID')
            or str(uuid.uuid4())
        )
        environ['request_id'] = request_id

        def custom_start_response(status, headers, exc_info=None):
            headers.append(('X-Request-ID', request_id))
            return start_response(status, headers, exc_info)

        return self.app(environ, custom_start_response)


class RequestIdFilter(logging.Filter):
    """Stamp log records with the current request ID ('-' outside requests)."""

    def filter(self, record):
        request_id = '-'
        if has_request_context():
            request_id = request.environ.get('request_id', '-')
        record.request_id = request_id
        return True
