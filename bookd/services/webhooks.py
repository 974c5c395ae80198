"""
PayPal webhook reconciler.

Applies payout batch/item events to early pay requests. Events can arrive
late, twice or out of order; payout status only ever moves forward along
the webhook transition table and terminal states are never left.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from bookd import db
from bookd.errors import StaleTerminalEvent
from bookd.models import (
    EarlyPayRequest, GatewayEvent, PayoutStatus, RequestStatus, EventOutcome, FlagKind, resolve_flags,
)
from bookd.utils.helpers import utcnow

logger = logging.getLogger(__name__)

BATCH_SUCCESS = 'PAYMENT.PAYOUTSBATCH.SUCCESS'
BATCH_DENIED = 'PAYMENT.PAYOUTSBATCH.DENIED'
ITEM_SUCCEEDED = 'PAYMENT.PAYOUTS-ITEM.SUCCEEDED'
ITEM_DENIED = 'PAYMENT.PAYOUTS-ITEM.DENIED'
ITEM_FAILED = 'PAYMENT.PAYOUTS-ITEM.FAILED'
ITEM_UNCLAIMED = 'PAYMENT.PAYOUTS-ITEM.UNCLAIMED'
ITEM_RETURNED = 'PAYMENT.PAYOUTS-ITEM.RETURNED'

# event type -> (target status, fixed message or None)
_BATCH_EVENTS = {
    BATCH_SUCCESS: (PayoutStatus.SUCCESS, None),
    BATCH_DENIED: (PayoutStatus.FAILED, None),
}
_ITEM_EVENTS = {
    ITEM_SUCCEEDED: (PayoutStatus.SUCCESS, None),
    ITEM_DENIED: (PayoutStatus.FAILED, None),
    ITEM_FAILED: (PayoutStatus.FAILED, None),
    ITEM_UNCLAIMED: (PayoutStatus.UNCLAIMED, "Recipient has not claimed the payment"),
    ITEM_RETURNED: (PayoutStatus.FAILED, "Payment returned - unclaimed for 30 days"),
}


@dataclass
class GatewayUpdate:
    """What an event says about one payout."""
    event_id: Optional[str]
    event_type: str
    target: PayoutStatus
    batch_id: Optional[str] = None
    sender_batch_id: Optional[str] = None
    item_reference: Optional[str] = None
    error: Optional[str] = None


@dataclass
class WebhookOutcome:
    action: EventOutcome
    request_id: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self):
        return {"action": self.action.value, "requestId": self.request_id, "detail": self.detail}


def _first_error(errors):
    if isinstance(errors, dict):
        return errors.get('message')
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get('message')
    return None


def parse_event(event):
    """
    Turn a raw webhook body into a GatewayUpdate.

    Returns None for event types we do not act on.

    Raises:
        ValueError: known event type with a malformed resource
    """
    event_type = event.get('event_type')
    resource = event.get('resource')
    event_id = event.get('id')

    if event_type in _BATCH_EVENTS:
        if not isinstance(resource, dict):
            raise ValueError("resource is missing")
        target, message = _BATCH_EVENTS[event_type]
        header = resource.get('batch_header') or {}
        batch_id = header.get('payout_batch_id')
        if not batch_id:
            raise ValueError("batch_header.payout_batch_id is missing")
        error = None
        if target == PayoutStatus.FAILED:
            error = _first_error(header.get('errors')) or "Payout denied"
        return GatewayUpdate(
            event_id=event_id,
            event_type=event_type,
            target=target,
            batch_id=batch_id,
            sender_batch_id=(header.get('sender_batch_header') or {}).get('sender_batch_id'),
            error=error,
        )

    if event_type in _ITEM_EVENTS:
        if not isinstance(resource, dict):
            raise ValueError("resource is missing")
        target, message = _ITEM_EVENTS[event_type]
        item = resource.get('payout_item') or {}
        reference = item.get('sender_item_id')
        batch_id = resource.get('payout_batch_id')
        if not reference and not batch_id:
            raise ValueError("payout_item.sender_item_id is missing")
        error = message
        if error is None and target == PayoutStatus.FAILED:
            error = _first_error(resource.get('errors')) or "Payout failed"
        return GatewayUpdate(
            event_id=event_id,
            event_type=event_type,
            target=target,
            batch_id=batch_id,
            item_reference=reference,
            error=error,
        )

    return None


class WebhookReconciler:

    def __init__(self, orchestrator, session=None, clock=utcnow):
        self.orchestrator = orchestrator
        self.session = session or db.session
        self.clock = clock

    def apply_gateway_event(self, event):
        """
        Apply one webhook event. Never raises for bad or unknown events;
        every event ends up recorded in gateway_events.
        """
        if not isinstance(event, dict):
            logger.warning("Ignoring webhook with non-object body")
            return WebhookOutcome(EventOutcome.IGNORED, detail="Body is not an object")

        event_type = event.get('event_type')
        event_id = event.get('id')

        if event_id and self._seen(event_id):
            logger.info("Duplicate PayPal event %s (%s) ignored", event_id, event_type)
            return WebhookOutcome(EventOutcome.DUPLICATE, detail="Event already processed")

        try:
            update = parse_event(event)
        except ValueError as exc:
            logger.warning("Malformed PayPal event %s (%s): %s", event_id, event_type, exc)
            return self._record(event_id, event_type, None, WebhookOutcome(EventOutcome.IGNORED, detail=str(exc)))

        if update is None:
            logger.info("Unhandled PayPal event type: %s", event_type)
            return self._record(event_id, event_type, None,
                                WebhookOutcome(EventOutcome.IGNORED, detail="Unhandled event type"))

        return self.apply_update(update)

    def apply_update(self, update):
        """Apply a parsed (or reconciliation-synthesized) update."""
        request = self._match(update)
        if request is None:
            logger.warning(
                "PayPal event %s matched no request (batch=%s item=%s)",
                update.event_type, update.batch_id, update.item_reference,
            )
            return self._record(update.event_id, update.event_type, update,
                                WebhookOutcome(EventOutcome.IGNORED, detail="No matching request"))

        outcome = self._transition(request, update)
        return self._record(update.event_id, update.event_type, update, outcome)

    # ------------------------------------------------------------------
    def _seen(self, event_id):
        return self.session.execute(
            select(GatewayEvent.id).where(GatewayEvent.event_id == event_id)
        ).first() is not None

    def _match(self, update):
        if update.item_reference:
            request = self.session.get(EarlyPayRequest, update.item_reference)
            if request is not None:
                return request
        if update.batch_id:
            request = self.session.execute(
                select(EarlyPayRequest).where(EarlyPayRequest.payout_batch_id == update.batch_id)
            ).scalar_one_or_none()
            if request is not None:
                return request
        if update.sender_batch_id:
            # Accepted batch whose id never made it onto the request
            return self.session.execute(
                select(EarlyPayRequest).where(EarlyPayRequest.submission_key == update.sender_batch_id)
            ).scalar_one_or_none()
        return None

    def _transition(self, request, update):
        request_id = request.id
        target = update.target
        try:
            if not request.payout_status.check_event(target):
                logger.info("Request %s already %s; event is a no-op", request_id, target.value)
                return WebhookOutcome(EventOutcome.NOOP, request_id, "Already {}".format(target.value))
        except StaleTerminalEvent as exc:
            logger.warning("Discarding %s for request %s: %s", update.event_type, request_id, exc)
            return WebhookOutcome(EventOutcome.DISCARDED, request_id, str(exc))

        if request.status == RequestStatus.APPROVED:
            return self._settle_unfunded(request, update)

        now = self.clock()
        values = dict(payout_status=target, payout_updated_at=now)
        if target == PayoutStatus.FAILED or target == PayoutStatus.UNCLAIMED:
            values['payout_error'] = update.error
        elif target == PayoutStatus.SUCCESS:
            values['payout_error'] = None

        applied = EarlyPayRequest.conditional_update(
            request_id,
            [EarlyPayRequest.payout_status.in_(PayoutStatus.event_sources(target))],
            **values
        )
        if not applied:
            logger.warning("Request %s payout status changed concurrently; %s discarded", request_id, update.event_type)
            return WebhookOutcome(EventOutcome.DISCARDED, request_id, "Payout status changed concurrently")

        if target == PayoutStatus.FAILED:
            logger.error("Payout for funded request %s failed: %s", request_id, update.error)
        else:
            logger.info("Request %s payout -> %s", request_id, target.value)
        return WebhookOutcome(EventOutcome.APPLIED, request_id, target.value)

    def _settle_unfunded(self, request, update):
        """Event for a request whose funding never committed (timeout or failed commit)."""
        request_id = request.id
        target = update.target

        if target == PayoutStatus.FAILED:
            now = self.clock()
            applied = EarlyPayRequest.conditional_update(
                request_id,
                [
                    EarlyPayRequest.status == RequestStatus.APPROVED,
                    EarlyPayRequest.payout_status.in_(PayoutStatus.event_sources(target)),
                ],
                payout_status=PayoutStatus.FAILED,
                payout_error=update.error,
                submission_key=None,
                payout_batch_id=None,
                payout_updated_at=now,
            )
            if not applied:
                return WebhookOutcome(EventOutcome.DISCARDED, request_id, "Payout status changed concurrently")
            resolve_flags(request_id, [FlagKind.FUNDING_INCOMPLETE, FlagKind.SUBMISSION_UNKNOWN],
                          "Payout failed: {}".format(update.error), now, session=self.session)
            logger.error("Unfunded payout for request %s failed: %s", request_id, update.error)
            return WebhookOutcome(EventOutcome.APPLIED, request_id, target.value)

        # The transfer exists: finish funding with the event's status
        batch_id = update.batch_id or request.payout_batch_id
        self.session.commit()
        funding = self.orchestrator.complete_funding(request_id, batch_id, payout_status=target)
        if not funding.funded:
            detail = funding.error or "Funding not applied"
            return WebhookOutcome(EventOutcome.DISCARDED, request_id, detail)
        logger.info("Request %s funded from %s", request_id, update.event_type)
        return WebhookOutcome(EventOutcome.APPLIED, request_id, "funded; {}".format(target.value))

    def _record(self, event_id, event_type, update, outcome):
        self.session.add(GatewayEvent(
            event_id=event_id,
            event_type=event_type,
            batch_id=update.batch_id if update else None,
            item_reference=update.item_reference if update else None,
            request_id=outcome.request_id,
            outcome=outcome.action,
            detail=outcome.detail,
        ))
        try:
            self.session.commit()
        except IntegrityError:
            # Same event id delivered concurrently; the other delivery applied it
            self.session.rollback()
            logger.info("Concurrent duplicate of PayPal event %s", event_id)
            return WebhookOutcome(EventOutcome.DUPLICATE, outcome.request_id, "Event already processed")
        return outcome
