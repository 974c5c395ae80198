"""
Payout endpoints: submit an approved request to PayPal, and the PayPal
webhook that reports what happened to it afterwards.
"""
import logging

from flask import Blueprint, current_app, jsonify, request

from bookd import db
from bookd.errors import GatewayError
from bookd.extensions import limiter
from bookd.routes import require_api_key, json_body
from bookd.services import build_orchestrator, build_reconciler, get_gateway

logger = logging.getLogger(__name__)

payouts_bp = Blueprint('payouts', __name__)


def _submit_limit():
    return current_app.config['SUBMIT_PAYOUT_RATE_LIMIT']


@payouts_bp.route('/submit', methods=['POST'])
@limiter.limit(_submit_limit)
@require_api_key
def submit_payout():
    """
    Pay an approved early pay request out to the trucker
    POST /api/payouts/submit {requestId}

    200 paid, 202 outcome unknown (left pending), 400/404 preconditions,
    502 PayPal rejected the payout or authentication failed
    """
    data = json_body()
    request_id = data.get('requestId')
    if not request_id:
        return jsonify({'success': False, 'error': 'Missing requestId'}), 400

    result = build_orchestrator().submit_payout(request_id)

    if result.success:
        logger.info('PayPal payout created: %s for request %s', result.batch_id, request_id)
        return jsonify(result.to_dict()), 200
    if result.outcome_unknown:
        return jsonify(result.to_dict()), 202
    return jsonify(result.to_dict()), 502


# ---------------------------------------------------------------------------
# PayPal Webhook
# ---------------------------------------------------------------------------
webhook_bp = Blueprint('webhooks', __name__)


@webhook_bp.route('/paypal', methods=['POST'])
def paypal_webhook():
    """
    Handle PayPal Payouts webhook events.
    Events: PAYMENT.PAYOUTSBATCH.SUCCESS/DENIED,
            PAYMENT.PAYOUTS-ITEM.SUCCEEDED/DENIED/FAILED/UNCLAIMED/RETURNED

    Always acknowledges with 200 once the body is accepted, so PayPal does
    not redeliver events we chose to ignore.
    """
    event = request.get_json(silent=True)
    if not isinstance(event, dict):
        return jsonify({'error': 'Invalid JSON'}), 400

    # Verify webhook signature when a webhook id is configured
    if current_app.config.get('PAYPAL_WEBHOOK_ID'):
        try:
            verified = get_gateway().verify_webhook_signature(request.headers, event)
        except GatewayError as e:
            logger.warning('PayPal signature verification unavailable: %s', e.message)
            verified = False
        if not verified:
            return jsonify({'error': 'Invalid signature'}), 400

    logger.info('PayPal webhook received: %s (%s)', event.get('event_type'), event.get('id'))

    try:
        outcome = build_reconciler().apply_gateway_event(event)
    except Exception:
        db.session.rollback()
        logger.exception('Failed to apply PayPal event %s (%s)', event.get('id'), event.get('event_type'))
        return jsonify({'received': True}), 200

    return jsonify({'received': True, 'action': outcome.action.value}), 200
