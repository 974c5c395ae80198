"""
PayPal webhook tests: event mapping, monotone payout status, duplicates
and the webhook endpoint
"""
import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from bookd import db
from bookd.models import (
    EarlyPayRequest, Broker, GatewayEvent, BrokerTier, RequestStatus, PayoutStatus, EventOutcome,
)
from bookd.services import build_reconciler, parse_event
from bookd.services.webhooks import (
    BATCH_SUCCESS, BATCH_DENIED, ITEM_SUCCEEDED, ITEM_DENIED, ITEM_FAILED, ITEM_UNCLAIMED, ITEM_RETURNED,
)


def item_event(event_type, request_id, batch_id=None, event_id=None, errors=None):
    resource = {
        'payout_item_id': 'ITEM-1',
        'payout_batch_id': batch_id,
        'payout_item': {'sender_item_id': request_id, 'receiver': 'driver@example.com'},
    }
    if errors is not None:
        resource['errors'] = errors
    return {'id': event_id, 'event_type': event_type, 'resource': resource}


def batch_event(event_type, batch_id, event_id=None, errors=None, sender_batch_id=None):
    header = {'payout_batch_id': batch_id, 'batch_status': 'SUCCESS'}
    if errors is not None:
        header['errors'] = errors
    if sender_batch_id:
        header['sender_batch_header'] = {'sender_batch_id': sender_batch_id}
    return {'id': event_id, 'event_type': event_type, 'resource': {'batch_header': header}}


def reload(request_id):
    db.session.expire_all()
    return db.session.get(EarlyPayRequest, request_id)


@pytest.fixture
def reconciler(app, gateway):
    return build_reconciler()


class TestEventMapping:
    """Test each PayPal event type against a funded, pending payout"""

    def test_item_succeeded(self, reconciler, funded_request):
        outcome = reconciler.apply_gateway_event(item_event(ITEM_SUCCEEDED, funded_request.id))

        assert outcome.action == EventOutcome.APPLIED
        assert outcome.request_id == funded_request.id
        assert reload(funded_request.id).payout_status == PayoutStatus.SUCCESS

    def test_batch_success_matched_by_batch_id(self, reconciler, funded_request):
        outcome = reconciler.apply_gateway_event(batch_event(BATCH_SUCCESS, 'BATCH-F1'))

        assert outcome.action == EventOutcome.APPLIED
        assert reload(funded_request.id).payout_status == PayoutStatus.SUCCESS

    def test_batch_denied_message(self, reconciler, funded_request):
        reconciler.apply_gateway_event(batch_event(
            BATCH_DENIED, 'BATCH-F1', errors=[{'name': 'INSUFFICIENT_FUNDS', 'message': 'Sender has insufficient funds'}],
        ))

        req = reload(funded_request.id)
        assert req.payout_status == PayoutStatus.FAILED
        assert req.payout_error == 'Sender has insufficient funds'

    def test_batch_denied_default_message(self, reconciler, funded_request):
        reconciler.apply_gateway_event(batch_event(BATCH_DENIED, 'BATCH-F1'))

        assert reload(funded_request.id).payout_error == 'Payout denied'

    def test_item_failed_dict_errors(self, reconciler, funded_request):
        reconciler.apply_gateway_event(item_event(
            ITEM_FAILED, funded_request.id, errors={'name': 'RECEIVER_UNREGISTERED', 'message': 'Receiver is unregistered'},
        ))

        req = reload(funded_request.id)
        assert req.payout_status == PayoutStatus.FAILED
        assert req.payout_error == 'Receiver is unregistered'

    def test_item_denied_default_message(self, reconciler, funded_request):
        reconciler.apply_gateway_event(item_event(ITEM_DENIED, funded_request.id))

        assert reload(funded_request.id).payout_error == 'Payout failed'

    def test_unclaimed_then_claimed(self, reconciler, funded_request):
        reconciler.apply_gateway_event(item_event(ITEM_UNCLAIMED, funded_request.id))
        req = reload(funded_request.id)
        assert req.payout_status == PayoutStatus.UNCLAIMED
        assert req.payout_error == 'Recipient has not claimed the payment'

        outcome = reconciler.apply_gateway_event(item_event(ITEM_SUCCEEDED, funded_request.id))

        assert outcome.action == EventOutcome.APPLIED
        assert reload(funded_request.id).payout_status == PayoutStatus.SUCCESS

    def test_unclaimed_then_returned(self, reconciler, funded_request):
        reconciler.apply_gateway_event(item_event(ITEM_UNCLAIMED, funded_request.id))
        reconciler.apply_gateway_event(item_event(ITEM_RETURNED, funded_request.id))

        req = reload(funded_request.id)
        assert req.payout_status == PayoutStatus.FAILED
        assert req.payout_error == 'Payment returned - unclaimed for 30 days'
        assert req.status == RequestStatus.FUNDED


class TestMonotonicity:
    """Test terminal payout states are never left"""

    def test_failed_after_success_is_discarded(self, reconciler, funded_request):
        reconciler.apply_gateway_event(item_event(ITEM_SUCCEEDED, funded_request.id))

        outcome = reconciler.apply_gateway_event(item_event(ITEM_FAILED, funded_request.id))

        assert outcome.action == EventOutcome.DISCARDED
        req = reload(funded_request.id)
        assert req.payout_status == PayoutStatus.SUCCESS
        assert req.payout_error is None

    def test_unclaimed_after_failed_is_discarded(self, reconciler, funded_request):
        reconciler.apply_gateway_event(item_event(ITEM_FAILED, funded_request.id))

        outcome = reconciler.apply_gateway_event(item_event(ITEM_UNCLAIMED, funded_request.id))

        assert outcome.action == EventOutcome.DISCARDED
        assert reload(funded_request.id).payout_status == PayoutStatus.FAILED

    def test_same_state_is_noop(self, reconciler, funded_request):
        reconciler.apply_gateway_event(item_event(ITEM_SUCCEEDED, funded_request.id))

        outcome = reconciler.apply_gateway_event(batch_event(BATCH_SUCCESS, 'BATCH-F1'))

        assert outcome.action == EventOutcome.NOOP
        assert reload(funded_request.id).payout_status == PayoutStatus.SUCCESS

    def test_never_submitted_is_discarded(self, reconciler, broker_factory, trucker_factory, request_factory):
        req = request_factory(trucker_factory(), broker_factory())

        outcome = reconciler.apply_gateway_event(item_event(ITEM_SUCCEEDED, req.id))

        assert outcome.action == EventOutcome.DISCARDED
        req = reload(req.id)
        assert req.payout_status == PayoutStatus.NONE
        assert req.status == RequestStatus.APPROVED


class TestUnfundedRequests:
    """Test events for approved requests whose funding never committed"""

    @pytest.fixture
    def timed_out(self, broker_factory, trucker_factory, request_factory):
        broker = broker_factory(tier=BrokerTier.PRO)
        return request_factory(
            trucker_factory(), broker,
            payout_status=PayoutStatus.PENDING,
            submission_key='BOOKD_T1_1',
        )

    def test_success_completes_funding(self, reconciler, timed_out):
        outcome = reconciler.apply_gateway_event(item_event(ITEM_SUCCEEDED, timed_out.id, batch_id='BATCH-T1'))

        assert outcome.action == EventOutcome.APPLIED
        req = reload(timed_out.id)
        assert req.status == RequestStatus.FUNDED
        assert req.payout_status == PayoutStatus.SUCCESS
        assert req.payout_batch_id == 'BATCH-T1'
        assert db.session.get(Broker, req.broker_id).total_earned == Decimal('40.00')

    def test_batch_event_matched_by_submission_key(self, reconciler, timed_out):
        outcome = reconciler.apply_gateway_event(
            batch_event(BATCH_SUCCESS, 'BATCH-T1', sender_batch_id='BOOKD_T1_1'),
        )

        assert outcome.action == EventOutcome.APPLIED
        assert reload(timed_out.id).status == RequestStatus.FUNDED

    def test_failure_clears_key(self, reconciler, timed_out):
        outcome = reconciler.apply_gateway_event(item_event(ITEM_FAILED, timed_out.id))

        assert outcome.action == EventOutcome.APPLIED
        req = reload(timed_out.id)
        assert req.status == RequestStatus.APPROVED
        assert req.payout_status == PayoutStatus.FAILED
        assert req.submission_key is None
        assert db.session.get(Broker, req.broker_id).total_earned == Decimal('0.00')


class TestIgnoredEvents:
    """Test events acknowledged without touching any request"""

    def test_duplicate_event_id(self, reconciler, funded_request):
        event = item_event(ITEM_UNCLAIMED, funded_request.id, event_id='WH-1')
        first = reconciler.apply_gateway_event(event)

        second = reconciler.apply_gateway_event(event)

        assert first.action == EventOutcome.APPLIED
        assert second.action == EventOutcome.DUPLICATE
        assert db.session.execute(select(func.count(GatewayEvent.id))).scalar_one() == 1

    def test_unknown_event_type(self, reconciler, funded_request):
        outcome = reconciler.apply_gateway_event({'id': 'WH-2', 'event_type': 'PAYMENT.SALE.COMPLETED', 'resource': {}})

        assert outcome.action == EventOutcome.IGNORED
        assert reload(funded_request.id).payout_status == PayoutStatus.PENDING
        audit = db.session.execute(select(GatewayEvent)).scalar_one()
        assert audit.event_type == 'PAYMENT.SALE.COMPLETED'
        assert audit.outcome == EventOutcome.IGNORED

    def test_unmatched_reference(self, reconciler, funded_request):
        outcome = reconciler.apply_gateway_event(item_event(ITEM_SUCCEEDED, 'not-a-request'))

        assert outcome.action == EventOutcome.IGNORED
        assert reload(funded_request.id).payout_status == PayoutStatus.PENDING

    def test_missing_resource(self, reconciler):
        outcome = reconciler.apply_gateway_event({'event_type': ITEM_SUCCEEDED})

        assert outcome.action == EventOutcome.IGNORED

    def test_parse_unknown_type(self):
        assert parse_event({'event_type': 'CHECKOUT.ORDER.APPROVED', 'resource': {}}) is None


class TestWebhookEndpoint:
    """Test POST /api/webhooks/paypal"""

    def test_applies_event(self, client, gateway, funded_request):
        response = client.post('/api/webhooks/paypal', json=item_event(ITEM_SUCCEEDED, funded_request.id))

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['received'] is True
        assert data['action'] == 'applied'
        assert reload(funded_request.id).payout_status == PayoutStatus.SUCCESS

    def test_unknown_type_acknowledged(self, client, gateway):
        response = client.post('/api/webhooks/paypal', json={'event_type': 'SOMETHING.ELSE', 'resource': {}})

        assert response.status_code == 200
        assert json.loads(response.data)['received'] is True

    def test_stale_event_acknowledged(self, client, gateway, funded_request):
        client.post('/api/webhooks/paypal', json=item_event(ITEM_SUCCEEDED, funded_request.id))

        response = client.post('/api/webhooks/paypal', json=item_event(ITEM_FAILED, funded_request.id))

        assert response.status_code == 200
        assert reload(funded_request.id).payout_status == PayoutStatus.SUCCESS

    def test_invalid_json(self, client, gateway):
        response = client.post('/api/webhooks/paypal', data='not json', content_type='application/json')

        assert response.status_code == 400

    def test_bad_signature(self, app, client, gateway, funded_request):
        app.config['PAYPAL_WEBHOOK_ID'] = 'WH-CONFIGURED'
        gateway.signature_valid = False

        response = client.post('/api/webhooks/paypal', json=item_event(ITEM_SUCCEEDED, funded_request.id))

        assert response.status_code == 400
        assert reload(funded_request.id).payout_status == PayoutStatus.PENDING

    def test_no_api_key_needed(self, client, gateway):
        response = client.post('/api/webhooks/paypal', json={'event_type': 'X', 'resource': {}})

        assert response.status_code == 200
