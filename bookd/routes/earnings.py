"""Referral earnings endpoints"""
from flask import Blueprint, jsonify, request

from bookd import db
from bookd.errors import TruckerNotFound
from bookd.models import EarningsLedgerEntry, Trucker, LedgerStatus
from bookd.routes import require_api_key, json_body
from bookd.services import build_ledger
from bookd.utils.helpers import money_str


earnings_bp = Blueprint('earnings', __name__)


def _trucker_or_404(trucker_id):
    if db.session.get(Trucker, trucker_id) is None:
        raise TruckerNotFound()


@earnings_bp.route('/<trucker_id>/balance', methods=['GET'])
@require_api_key
def get_balance(trucker_id):
    """
    Pending/payable referral earnings (matures due entries first)
    GET /api/earnings/<trucker_id>/balance
    """
    _trucker_or_404(trucker_id)
    balance = build_ledger().get_payable_balance(trucker_id)
    db.session.commit()
    return jsonify({
        'success': True,
        'truckerId': trucker_id,
        'pending': money_str(balance['pending']),
        'payable': money_str(balance['payable']),
        'total': money_str(balance['total']),
    }), 200


@earnings_bp.route('/<trucker_id>/entries', methods=['GET'])
@require_api_key
def list_entries(trucker_id):
    """
    Ledger entries for a trucker, newest first
    GET /api/earnings/<trucker_id>/entries?status=payable&limit=50
    """
    _trucker_or_404(trucker_id)

    query = db.select(EarningsLedgerEntry).where(EarningsLedgerEntry.trucker_id == trucker_id)

    status = request.args.get('status')
    if status:
        try:
            query = query.where(EarningsLedgerEntry.status == LedgerStatus(status))
        except ValueError:
            return jsonify({'success': False, 'error': 'Unknown status: {}'.format(status)}), 400

    limit = min(request.args.get('limit', 50, type=int), 200)
    entries = db.session.execute(
        query.order_by(EarningsLedgerEntry.collected_at.desc()).limit(limit)
    ).scalars().all()

    return jsonify({
        'success': True,
        'entries': [entry.to_dict() for entry in entries],
    }), 200


@earnings_bp.route('/entries/<entry_id>/claw-back', methods=['POST'])
@require_api_key
def claw_back(entry_id):
    """
    Reverse an unpaid earnings entry
    POST /api/earnings/entries/<entry_id>/claw-back {reason}
    """
    reason = json_body().get('reason') or 'Reversed by operator'
    try:
        entry = build_ledger().claw_back(entry_id, reason)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({'success': True, 'entry': entry.to_dict()}), 200
