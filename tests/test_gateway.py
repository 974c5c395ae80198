"""
PayPal client tests against a mocked HTTP session
"""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from bookd.errors import GatewayAuthError, GatewayRejected, GatewayTimeout
from bookd.services.gateway import PayPalGateway, PAYPAL_LIVE_URL, PAYPAL_SANDBOX_URL


def response(payload, status=200):
    resp = MagicMock()
    resp.ok = 200 <= status < 300
    resp.status_code = status
    resp.json.return_value = payload
    resp.text = str(payload)
    return resp


TOKEN = response({'access_token': 'A21AA-token', 'expires_in': 32400})


def created(batch_id='5UXD2E8A7EBQJ', key='BOOKD_1_1'):
    return response({
        'batch_header': {
            'payout_batch_id': batch_id,
            'batch_status': 'PENDING',
            'sender_batch_header': {'sender_batch_id': key},
        },
    }, status=201)


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def paypal(http):
    return PayPalGateway('client-id', 'secret', mode='sandbox', timeout=5, session=http)


class TestSubmitTransfer:
    """Test payout batch creation"""

    def test_posts_idempotent_batch(self, paypal, http):
        http.request.side_effect = [TOKEN, created()]

        receipt = paypal.submit_transfer('BOOKD_1_1', 'driver@example.com', Decimal('960'),
                                         sender_item_id='req-1')

        assert receipt.batch_id == '5UXD2E8A7EBQJ'
        assert receipt.batch_status == 'PENDING'
        assert receipt.sender_batch_id == 'BOOKD_1_1'

        method, url = http.request.call_args.args
        kwargs = http.request.call_args.kwargs
        assert method == 'POST'
        assert url == PAYPAL_SANDBOX_URL + '/v1/payments/payouts'
        assert kwargs['timeout'] == 5
        assert kwargs['headers']['PayPal-Request-Id'] == 'BOOKD_1_1'
        assert kwargs['headers']['Authorization'] == 'Bearer A21AA-token'
        body = kwargs['json']
        assert body['sender_batch_header']['sender_batch_id'] == 'BOOKD_1_1'
        item = body['items'][0]
        assert item['amount'] == {'value': '960.00', 'currency': 'USD'}
        assert item['receiver'] == 'driver@example.com'
        assert item['sender_item_id'] == 'req-1'
        assert item['recipient_wallet'] == 'PAYPAL'

    def test_venmo_wallet(self, paypal, http):
        http.request.side_effect = [TOKEN, created()]

        paypal.submit_transfer('BOOKD_1_1', '@driver', Decimal('50'), recipient_wallet='VENMO')

        assert http.request.call_args.kwargs['json']['items'][0]['recipient_wallet'] == 'VENMO'

    def test_token_is_cached(self, paypal, http):
        http.request.side_effect = [TOKEN, created(), created('SECOND', 'BOOKD_2_1')]

        paypal.submit_transfer('BOOKD_1_1', 'driver@example.com', Decimal('10'))
        paypal.submit_transfer('BOOKD_2_1', 'driver@example.com', Decimal('10'))

        urls = [call.args[1] for call in http.request.call_args_list]
        assert urls.count(PAYPAL_SANDBOX_URL + '/v1/oauth2/token') == 1

    def test_rejection_carries_message(self, paypal, http):
        http.request.side_effect = [TOKEN, response({
            'name': 'VALIDATION_ERROR',
            'message': 'Invalid request',
            'details': [{'issue': 'Receiver is invalid'}],
        }, status=400)]

        with pytest.raises(GatewayRejected) as exc:
            paypal.submit_transfer('BOOKD_1_1', 'bad', Decimal('10'))

        assert exc.value.status == 400
        assert exc.value.message == 'Invalid request (Receiver is invalid)'
        assert exc.value.payload['name'] == 'VALIDATION_ERROR'

    def test_missing_batch_id_is_rejected(self, paypal, http):
        http.request.side_effect = [TOKEN, response({'batch_header': {}}, status=201)]

        with pytest.raises(GatewayRejected):
            paypal.submit_transfer('BOOKD_1_1', 'driver@example.com', Decimal('10'))

    def test_timeout_is_outcome_unknown(self, paypal, http):
        http.request.side_effect = [TOKEN, requests.Timeout('read timed out')]

        with pytest.raises(GatewayTimeout):
            paypal.submit_transfer('BOOKD_1_1', 'driver@example.com', Decimal('10'))

    def test_connection_error_is_outcome_unknown(self, paypal, http):
        http.request.side_effect = [TOKEN, requests.ConnectionError('reset')]

        with pytest.raises(GatewayTimeout):
            paypal.submit_transfer('BOOKD_1_1', 'driver@example.com', Decimal('10'))


class TestAuthentication:
    """Test OAuth token handling"""

    def test_token_rejected(self, paypal, http):
        http.request.return_value = response({'error': 'invalid_client'}, status=401)

        with pytest.raises(GatewayAuthError):
            paypal.get_access_token()

    def test_missing_credentials(self, http):
        paypal = PayPalGateway(None, None, session=http)

        with pytest.raises(GatewayAuthError):
            paypal.submit_transfer('BOOKD_1_1', 'driver@example.com', Decimal('10'))
        http.request.assert_not_called()

    def test_live_mode_url(self, http):
        http.request.return_value = TOKEN
        paypal = PayPalGateway('client-id', 'secret', mode='live', session=http)

        paypal.get_access_token()

        assert http.request.call_args.args[1] == PAYPAL_LIVE_URL + '/v1/oauth2/token'
        assert http.request.call_args.kwargs['auth'] == ('client-id', 'secret')

    def test_from_config(self):
        paypal = PayPalGateway.from_config({
            'PAYPAL_CLIENT_ID': 'id',
            'PAYPAL_SECRET': 'secret',
            'PAYPAL_MODE': 'live',
            'PAYPAL_TIMEOUT_SECONDS': 3,
            'PAYPAL_WEBHOOK_ID': 'WH-1',
        })

        assert paypal.base_url == PAYPAL_LIVE_URL
        assert paypal.timeout == 3
        assert paypal.webhook_id == 'WH-1'


class TestBatchLookup:

    def test_item_status_and_error(self, paypal, http):
        http.request.side_effect = [TOKEN, response({
            'batch_header': {'payout_batch_id': 'B1', 'batch_status': 'SUCCESS'},
            'items': [{
                'transaction_status': 'RETURNED',
                'errors': {'name': 'RECEIVER_UNCONFIRMED', 'message': 'Receiver never claimed'},
            }],
        })]

        status = paypal.get_payout_batch('B1')

        assert status.batch_id == 'B1'
        assert status.batch_status == 'SUCCESS'
        assert status.item_status == 'RETURNED'
        assert status.error == 'Receiver never claimed'
        assert http.request.call_args.args == ('GET', PAYPAL_SANDBOX_URL + '/v1/payments/payouts/B1')

    def test_unknown_batch(self, paypal, http):
        http.request.side_effect = [TOKEN, response({'message': 'Batch not found'}, status=404)]

        with pytest.raises(GatewayRejected) as exc:
            paypal.get_payout_batch('NOPE')

        assert exc.value.status == 404


class TestWebhookSignature:

    def test_verification_off_without_webhook_id(self, paypal, http):
        assert paypal.verify_webhook_signature({}, {'id': 'WH-1'}) is True
        http.request.assert_not_called()

    def test_verification_success(self, http):
        http.request.side_effect = [TOKEN, response({'verification_status': 'SUCCESS'})]
        paypal = PayPalGateway('client-id', 'secret', webhook_id='WH-CONF', session=http)

        valid = paypal.verify_webhook_signature({'PAYPAL-TRANSMISSION-ID': 't-1'}, {'id': 'WH-1'})

        assert valid is True
        body = http.request.call_args.kwargs['json']
        assert body['webhook_id'] == 'WH-CONF'
        assert body['transmission_id'] == 't-1'

    def test_verification_failure(self, http):
        http.request.side_effect = [TOKEN, response({'verification_status': 'FAILURE'})]
        paypal = PayPalGateway('client-id', 'secret', webhook_id='WH-CONF', session=http)

        assert paypal.verify_webhook_signature({}, {'id': 'WH-1'}) is False
