"""
Periodic payout reconciliation.

Catches up on what webhooks and interrupted requests left behind:
accepted transfers whose funding never committed, payouts sitting in
pending for too long, and submissions whose outcome was never learned.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import timedelta

from sqlalchemy import select

from bookd import db
from bookd.errors import EarlyPayError
from bookd.models import EarlyPayRequest, PayoutStatus, RequestStatus, FlagKind, EventOutcome, raise_flag
from bookd.services.webhooks import GatewayUpdate
from bookd.utils.helpers import utcnow

logger = logging.getLogger(__name__)

RECONCILIATION_EVENT = 'RECONCILIATION.BATCH-STATUS'

_ITEM_STATUS = {
    'SUCCESS': PayoutStatus.SUCCESS,
    'UNCLAIMED': PayoutStatus.UNCLAIMED,
    'FAILED': PayoutStatus.FAILED,
    'RETURNED': PayoutStatus.FAILED,
    'BLOCKED': PayoutStatus.FAILED,
    'REFUNDED': PayoutStatus.FAILED,
    'REVERSED': PayoutStatus.FAILED,
    'DENIED': PayoutStatus.FAILED,
}


@dataclass
class ReconciliationSummary:
    checked: int = 0
    applied: int = 0
    funded: int = 0
    resubmitted: int = 0
    flagged: int = 0
    errors: int = 0

    def to_dict(self):
        return asdict(self)


def target_for_batch(status):
    """Payout status implied by a batch lookup, or None while still in flight."""
    if status.item_status:
        return _ITEM_STATUS.get(status.item_status.upper())
    batch_status = (status.batch_status or '').upper()
    if batch_status == 'SUCCESS':
        return PayoutStatus.SUCCESS
    if batch_status == 'DENIED':
        return PayoutStatus.FAILED
    return None


def _update_from_lookup(request, status, target):
    return GatewayUpdate(
        event_id=None,
        event_type=RECONCILIATION_EVENT,
        target=target,
        batch_id=status.batch_id,
        item_reference=request.id,
        error=status.error or ("Payout failed" if target == PayoutStatus.FAILED else None),
    )


class PayoutReconciliation:
    """One reconciliation pass; safe to run from several instances at once."""

    def __init__(self, orchestrator, reconciler, session=None, clock=utcnow):
        self.orchestrator = orchestrator
        self.reconciler = reconciler
        self.gateway = orchestrator.gateway
        self.session = session or db.session
        self.clock = clock

    def reconcile_payouts(self, older_than=timedelta(minutes=60)):
        now = self.clock()
        cutoff = now - older_than
        summary = ReconciliationSummary()

        for request_id in self._ids(
            EarlyPayRequest.status == RequestStatus.APPROVED,
            EarlyPayRequest.payout_status == PayoutStatus.PENDING,
            EarlyPayRequest.payout_batch_id.isnot(None),
        ):
            self._guard(summary, request_id, self._finish_funding)

        for request_id in self._ids(
            EarlyPayRequest.status == RequestStatus.FUNDED,
            EarlyPayRequest.payout_status.in_([PayoutStatus.PENDING, PayoutStatus.UNCLAIMED]),
            EarlyPayRequest.payout_batch_id.isnot(None),
            EarlyPayRequest.payout_updated_at < cutoff,
        ):
            self._guard(summary, request_id, self._check_in_flight)

        for request_id in self._ids(
            EarlyPayRequest.status == RequestStatus.APPROVED,
            EarlyPayRequest.payout_status == PayoutStatus.PENDING,
            EarlyPayRequest.payout_batch_id.is_(None),
            EarlyPayRequest.submission_key.isnot(None),
            EarlyPayRequest.payout_submitted_at < cutoff,
        ):
            self._guard(summary, request_id, self._resume)

        logger.info("Payout reconciliation: %s", summary.to_dict())
        return summary

    def _ids(self, *where):
        return self.session.execute(
            select(EarlyPayRequest.id).where(*where).order_by(EarlyPayRequest.payout_submitted_at.asc())
        ).scalars().all()

    def _guard(self, summary, request_id, step):
        summary.checked += 1
        try:
            step(summary, request_id)
        except EarlyPayError as exc:
            self.session.rollback()
            summary.errors += 1
            logger.warning("Reconciliation of request %s failed: %s", request_id, exc.message)
        except Exception:
            self.session.rollback()
            summary.errors += 1
            logger.exception("Reconciliation of request %s failed", request_id)

    def _flag(self, summary, request_id, kind, detail):
        raise_flag(request_id, kind, detail, session=self.session)
        self.session.commit()
        summary.flagged += 1

    def _finish_funding(self, summary, request_id):
        """Transfer accepted, funding never committed."""
        request = self.session.get(EarlyPayRequest, request_id)
        batch_id = request.payout_batch_id
        try:
            status = self.gateway.get_payout_batch(batch_id)
        except EarlyPayError as exc:
            # The batch id proves acceptance; fund now, status follows later
            logger.warning("Batch lookup for %s failed (%s); completing funding", batch_id, exc.message)
            status = None

        target = target_for_batch(status) if status else None
        if target == PayoutStatus.FAILED:
            outcome = self.reconciler.apply_update(_update_from_lookup(request, status, target))
            if outcome.action == EventOutcome.APPLIED:
                summary.applied += 1
            return

        funding = self.orchestrator.complete_funding(request_id, batch_id, payout_status=target or PayoutStatus.PENDING)
        if funding.funded:
            summary.funded += 1
        elif funding.error:
            summary.flagged += 1

    def _check_in_flight(self, summary, request_id):
        request = self.session.get(EarlyPayRequest, request_id)
        status = self.gateway.get_payout_batch(request.payout_batch_id)
        target = target_for_batch(status)
        if target is None or target == request.payout_status:
            self._flag(
                summary, request_id, FlagKind.STUCK_PAYOUT,
                "Batch {} still {} (item {})".format(status.batch_id, status.batch_status, status.item_status),
            )
            return

        outcome = self.reconciler.apply_update(_update_from_lookup(request, status, target))
        if outcome.action == EventOutcome.APPLIED:
            summary.applied += 1

    def _resume(self, summary, request_id):
        """Earlier submission timed out; retry with the stored key."""
        result = self.orchestrator.resume_submission(request_id)
        if result is None:
            return
        summary.resubmitted += 1
        if result.success:
            summary.funded += 1
        elif result.outcome_unknown:
            self._flag(summary, request_id, FlagKind.SUBMISSION_UNKNOWN,
                       "Resubmission outcome still unknown: {}".format(result.error))
