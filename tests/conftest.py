"""
Pytest configuration and fixtures for the Bookd settlement engine tests
"""
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from bookd import create_app, db
from bookd.errors import GatewayTimeout
from bookd.models import (
    Broker, Trucker, TruckerRecruiter, TruckerBrokerRelationship, EarlyPayRequest,
    BrokerTier, PayoutMethod, RequestStatus, PayoutStatus,
)
from bookd.services.fees import compute_fee
from bookd.services.gateway import TransferReceipt, BatchStatus

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock the services accept in place of utcnow."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway:
    """
    In-memory stand-in for PayPalGateway.

    Replays the same receipt for a reused idempotency key, like PayPal does.
    Set next_error to make the next submission raise; set accept_then_timeout
    to create the batch and still raise GatewayTimeout.
    """

    def __init__(self):
        self.submissions = []
        self.receipts = {}
        self.batches = {}
        self.next_error = None
        self.token_error = None
        self.lookup_error = None
        self.accept_then_timeout = False
        self.signature_valid = True
        self._counter = 0

    def get_access_token(self):
        if self.token_error is not None:
            raise self.token_error
        return 'fake-token'

    def submit_transfer(self, idempotency_key, recipient, amount, **kwargs):
        self.submissions.append(dict(key=idempotency_key, recipient=recipient, amount=amount, **kwargs))
        if self.next_error is not None:
            error, self.next_error = self.next_error, None
            raise error

        receipt = self.receipts.get(idempotency_key)
        if receipt is None:
            self._counter += 1
            receipt = TransferReceipt(
                batch_id='BATCH{:04d}'.format(self._counter),
                batch_status='PENDING',
                sender_batch_id=idempotency_key,
            )
            self.receipts[idempotency_key] = receipt

        if self.accept_then_timeout:
            self.accept_then_timeout = False
            raise GatewayTimeout()
        return receipt

    def get_payout_batch(self, batch_id):
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.batches.get(batch_id) or BatchStatus(batch_id=batch_id, batch_status='PENDING')

    def verify_webhook_signature(self, headers, event):
        return self.signature_valid


@pytest.fixture
def app():
    """Create application instance for testing"""
    os.environ['FLASK_ENV'] = 'testing'
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture
def api_headers(app):
    return {
        'X-API-Key': app.config['API_KEY'],
        'Content-Type': 'application/json',
    }


@pytest.fixture
def gateway(app):
    fake = FakeGateway()
    app.extensions['bookd_gateway'] = fake
    return fake


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def broker_factory(app):
    def _create_broker(tier=BrokerTier.FREE, **kwargs):
        broker = Broker(company_name=kwargs.pop('company_name', 'Acme Freight'), tier=tier, **kwargs)
        db.session.add(broker)
        db.session.commit()
        return broker
    return _create_broker


@pytest.fixture
def trucker_factory(app):
    def _create_trucker(method=PayoutMethod.PAYPAL, credit='0.00', **kwargs):
        defaults = {
            'full_name': 'Test Trucker',
            'payment_method': method,
            'bonus_credit_remaining': Decimal(credit),
        }
        if method == PayoutMethod.PAYPAL:
            defaults['paypal_email'] = 'driver@example.com'
        elif method == PayoutMethod.VENMO:
            defaults['venmo_handle'] = '@driver'
        defaults.update(kwargs)
        trucker = Trucker(**defaults)
        db.session.add(trucker)
        db.session.commit()
        return trucker
    return _create_trucker


@pytest.fixture
def connect(app):
    """Record that a trucker brought a broker onto the platform."""
    def _connect(trucker, broker, created_at=None):
        link = TruckerBrokerRelationship(trucker_id=trucker.id, broker_id=broker.id, status='active')
        if created_at is not None:
            link.created_at = created_at
        db.session.add(link)
        db.session.commit()
        return link
    return _connect


@pytest.fixture
def recruit(app):
    def _recruit(recruiter, recruited):
        link = TruckerRecruiter(recruiter_id=recruiter.id, recruited_id=recruited.id)
        db.session.add(link)
        db.session.commit()
        return link
    return _recruit


@pytest.fixture
def request_factory(app):
    """Early pay requests priced with the default schedule."""
    def _create_request(trucker, broker, amount='1000.00', status=RequestStatus.APPROVED, **kwargs):
        fee = compute_fee(Decimal(amount), broker.tier, trucker.bonus_credit_remaining)
        req = EarlyPayRequest(
            trucker_id=trucker.id,
            broker_id=broker.id,
            amount_requested=fee.amount,
            broker_fee=fee.broker_fee,
            platform_fee=fee.platform_fee,
            credit_applied=fee.credit_applied,
            total_fee=fee.total_fee,
            amount_to_trucker=fee.amount_to_trucker,
            status=status,
            requested_at=NOW - timedelta(days=1),
            approved_at=NOW if status != RequestStatus.PENDING else None,
        )
        for key, value in kwargs.items():
            setattr(req, key, value)
        db.session.add(req)
        db.session.commit()
        return req
    return _create_request


@pytest.fixture
def funded_request(request_factory, trucker_factory, broker_factory):
    """A funded request whose payout is in flight as BATCH-F1."""
    broker = broker_factory(tier=BrokerTier.PRO)
    trucker = trucker_factory()
    return request_factory(
        trucker, broker,
        status=RequestStatus.FUNDED,
        payout_status=PayoutStatus.PENDING,
        payout_batch_id='BATCH-F1',
        submission_key='BOOKD_F1_1',
        funded_at=NOW,
        payout_submitted_at=NOW,
        payout_updated_at=NOW,
    )
