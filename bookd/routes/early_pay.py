"""Early pay request endpoints"""
from flask import Blueprint, jsonify

from bookd.routes import require_api_key, json_body
from bookd.services import build_early_pay_service
from bookd.utils.validators import parse_amount

early_pay_bp = Blueprint('early_pay', __name__)


def _serialize(req):
    data = req.to_dict(exclude=['submission_key'])
    data['broker_tier'] = req.broker.tier.value if req.broker else None
    return data


@early_pay_bp.route('/quote', methods=['POST'])
@require_api_key
def quote():
    """
    Preview the fee breakdown for an amount
    POST /api/early-pay/quote {truckerId, brokerId, amount}
    """
    data = json_body()
    amount = parse_amount(data.get('amount'))
    fee = build_early_pay_service().quote(data.get('truckerId'), data.get('brokerId'), amount)
    return jsonify({'success': True, 'quote': fee.to_dict()}), 200


@early_pay_bp.route('/requests', methods=['POST'])
@require_api_key
def create_request():
    """
    Create an early pay request
    POST /api/early-pay/requests {truckerId, brokerId, amount, loadReference?}
    """
    data = json_body()
    amount = parse_amount(data.get('amount'))
    req = build_early_pay_service().create_request(
        data.get('truckerId'),
        data.get('brokerId'),
        amount,
        load_reference=data.get('loadReference'),
    )
    return jsonify({'success': True, 'request': _serialize(req)}), 201


@early_pay_bp.route('/requests/<request_id>', methods=['GET'])
@require_api_key
def get_request(request_id):
    req = build_early_pay_service().get_request(request_id)
    return jsonify({'success': True, 'request': _serialize(req)}), 200


@early_pay_bp.route('/requests/<request_id>/approve', methods=['POST'])
@require_api_key
def approve_request(request_id):
    req = build_early_pay_service().approve_request(request_id)
    return jsonify({'success': True, 'request': _serialize(req)}), 200


@early_pay_bp.route('/requests/<request_id>/reject', methods=['POST'])
@require_api_key
def reject_request(request_id):
    req = build_early_pay_service().reject_request(request_id)
    return jsonify({'success': True, 'request': _serialize(req)}), 200
