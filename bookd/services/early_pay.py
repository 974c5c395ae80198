"""Early pay request lifecycle: quote, create, approve, reject."""
import logging

from sqlalchemy import select, func

from bookd import db
from bookd.errors import TruckerNotFound, BrokerNotFound, RequestNotFound, AllowanceExceeded, InvalidTransition
from bookd.models import EarlyPayRequest, Trucker, Broker, RequestStatus
from bookd.services.fees import DEFAULT_SCHEDULE, compute_fee
from bookd.utils.helpers import month_start, utcnow

logger = logging.getLogger(__name__)


class EarlyPayService:

    def __init__(self, schedule=DEFAULT_SCHEDULE, session=None, clock=utcnow):
        self.schedule = schedule
        self.session = session or db.session
        self.clock = clock

    def _parties(self, trucker_id, broker_id):
        trucker = self.session.get(Trucker, trucker_id) if trucker_id else None
        if trucker is None:
            raise TruckerNotFound()
        broker = self.session.get(Broker, broker_id) if broker_id else None
        if broker is None:
            raise BrokerNotFound()
        return trucker, broker

    def quote(self, trucker_id, broker_id, amount):
        """Fee breakdown preview; nothing is stored."""
        trucker, broker = self._parties(trucker_id, broker_id)
        return compute_fee(amount, broker.tier, trucker.bonus_credit_remaining, schedule=self.schedule)

    def requests_this_month(self, broker_id, now=None):
        start = month_start(now or self.clock())
        return self.session.execute(
            select(func.count(EarlyPayRequest.id)).where(
                EarlyPayRequest.broker_id == broker_id,
                EarlyPayRequest.requested_at >= start,
                EarlyPayRequest.status != RequestStatus.REJECTED,
            )
        ).scalar_one()

    def create_request(self, trucker_id, broker_id, amount, load_reference=None):
        """
        Price and store a new pending request.

        Credit is evaluated against the trucker's current balance but only
        consumed when the request is funded.

        Raises:
            TruckerNotFound, BrokerNotFound, InvalidAmount
            AllowanceExceeded: the broker's tier allows no more requests
                this calendar month
        """
        trucker, broker = self._parties(trucker_id, broker_id)
        now = self.clock()

        allowance = self.schedule.allowance_for(broker.tier)
        if allowance is not None and self.requests_this_month(broker.id, now) >= allowance:
            raise AllowanceExceeded(
                "{} tier allows {} early pay requests per month".format(broker.tier.value.capitalize(), allowance)
            )

        fee = compute_fee(amount, broker.tier, trucker.bonus_credit_remaining, schedule=self.schedule)
        request = EarlyPayRequest(
            trucker_id=trucker.id,
            broker_id=broker.id,
            load_reference=load_reference,
            amount_requested=fee.amount,
            broker_fee=fee.broker_fee,
            platform_fee=fee.platform_fee,
            credit_applied=fee.credit_applied,
            total_fee=fee.total_fee,
            amount_to_trucker=fee.amount_to_trucker,
            status=RequestStatus.PENDING,
            requested_at=now,
        )
        self.session.add(request)
        self.session.commit()
        logger.info(
            "Early pay request %s created: trucker=%s broker=%s amount=%s fee=%s",
            request.id, trucker.id, broker.id, fee.amount, fee.total_fee,
        )
        return request

    def get_request(self, request_id):
        request = self.session.get(EarlyPayRequest, request_id)
        if request is None:
            raise RequestNotFound()
        return request

    def _move(self, request_id, target, **values):
        request = self.get_request(request_id)
        current = request.status
        current.check_transition(target)
        moved = EarlyPayRequest.conditional_update(
            request_id,
            [EarlyPayRequest.status == current],
            status=target,
            updated_at=self.clock(),
            **values
        )
        if not moved:
            self.session.rollback()
            raise InvalidTransition("Request changed concurrently")
        self.session.commit()
        logger.info("Early pay request %s: %s -> %s", request_id, current.value, target.value)
        return self.get_request(request_id)

    def approve_request(self, request_id):
        return self._move(request_id, RequestStatus.APPROVED, approved_at=self.clock())

    def reject_request(self, request_id):
        return self._move(request_id, RequestStatus.REJECTED, rejected_at=self.clock())
