"""
Payout orchestrator.

Moves an approved early pay request to funded by paying the trucker through
PayPal (or Venmo via PayPal Payouts), then applying the funding side effects
in one transaction: status flip, broker earnings, promotional credit and the
referral ledger accrual.

A submission is keyed by an idempotency key claimed on the request before the
gateway call. Retries after an unknown outcome reuse the key, so PayPal
returns the original batch instead of paying twice.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from bookd import db
from bookd.errors import (
    RequestNotFound, NotApproved, PayoutMethodMissing, InvalidTransition,
    GatewayRejected, GatewayTimeout, GatewayAuthError,
)
from bookd.models import (
    EarlyPayRequest, Broker, Trucker, BrokerTier, PayoutMethod, PayoutStatus, RequestStatus,
    FlagKind, raise_flag, resolve_flags,
)
from bookd.services.ledger import AccrualResult, EarningsLedger
from bookd.utils.helpers import money_str, utcnow

logger = logging.getLogger(__name__)

# PayPal answers these when a sender_batch_id was already used; the original
# batch may well exist, so the outcome is unknown rather than failed
DUPLICATE_SUBMISSION_ERRORS = frozenset({'SENDER_BATCH_ID_ALREADY_USED', 'DUPLICATE_REQUEST_ID'})


def submission_key_for(request_id, now):
    return 'BOOKD_{}_{}'.format(request_id, int(now.timestamp() * 1000))


@dataclass
class FundingOutcome:
    funded: bool
    accrual: Optional[AccrualResult] = None
    error: Optional[str] = None


@dataclass
class PayoutResult:
    success: bool
    request_id: str
    payout_status: PayoutStatus
    batch_id: Optional[str] = None
    amount: Optional[Decimal] = None
    recipient: Optional[str] = None
    method: Optional[str] = None
    error: Optional[str] = None
    details: Optional[str] = None
    outcome_unknown: bool = False
    funding: Optional[FundingOutcome] = None

    def to_dict(self):
        if self.success:
            return {
                "success": True,
                "batchId": self.batch_id,
                "amount": money_str(self.amount),
                "recipient": self.recipient,
                "method": self.method,
            }
        data = {"success": False, "error": self.error, "payoutStatus": self.payout_status.value}
        if self.details:
            data["details"] = self.details
        if self.outcome_unknown:
            data["outcomeUnknown"] = True
        return data


class PayoutOrchestrator:

    def __init__(self, gateway, ledger=None, session=None, clock=utcnow, currency='USD',
                 note=None, email_subject=None, email_message=None):
        self.gateway = gateway
        self.session = session or db.session
        self.clock = clock
        self.ledger = ledger or EarningsLedger(session=self.session, clock=clock)
        self.currency = currency
        self.note = note
        self.email_subject = email_subject
        self.email_message = email_message

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def _load(self, request_id):
        if not request_id:
            raise RequestNotFound("Missing requestId")
        request = self.session.get(EarlyPayRequest, request_id)
        if request is None:
            raise RequestNotFound()
        return request

    @staticmethod
    def _destination(trucker):
        if trucker.payment_method == PayoutMethod.MANUAL:
            raise PayoutMethodMissing("Trucker has not set up automatic payments")
        destination = trucker.payout_destination
        if destination is None:
            if trucker.payment_method == PayoutMethod.PAYPAL:
                raise PayoutMethodMissing("Trucker has not set up PayPal email")
            raise PayoutMethodMissing("Trucker has not set up Venmo handle")
        return destination

    def _claim_submission(self, request):
        """
        Attach an idempotency key to the request and mark the payout pending.

        A key left behind by an earlier attempt with an unknown outcome is
        reused. Returns the key in force.
        """
        now = self.clock()
        method = request.trucker.payment_method
        claimed = EarlyPayRequest.conditional_update(
            request.id,
            [
                EarlyPayRequest.status == RequestStatus.APPROVED,
                EarlyPayRequest.payout_batch_id.is_(None),
                EarlyPayRequest.submission_key.is_(None),
                EarlyPayRequest.payout_status.in_([PayoutStatus.NONE, PayoutStatus.FAILED, PayoutStatus.PENDING]),
            ],
            submission_key=submission_key_for(request.id, now),
            payout_status=PayoutStatus.PENDING,
            payout_error=None,
            payout_method=method,
            payout_submitted_at=now,
            payout_updated_at=now,
        )
        if not claimed:
            claimed = EarlyPayRequest.conditional_update(
                request.id,
                [
                    EarlyPayRequest.status == RequestStatus.APPROVED,
                    EarlyPayRequest.payout_batch_id.is_(None),
                    EarlyPayRequest.submission_key.isnot(None),
                ],
                payout_status=PayoutStatus.PENDING,
                payout_error=None,
                payout_submitted_at=now,
                payout_updated_at=now,
            )
        if not claimed:
            self.session.rollback()
            raise InvalidTransition("Payout already in progress for this request")

        self.session.commit()
        return request.submission_key

    def submit_payout(self, request_id):
        """
        Pay an approved request out to the trucker.

        Returns:
            PayoutResult. success is False for a gateway rejection (request
            left payout_status=failed, still approved) and for a timeout
            (outcome_unknown, left pending for reconciliation).

        Raises:
            RequestNotFound, NotApproved, PayoutMethodMissing,
            InvalidTransition: preconditions; nothing is changed
            GatewayAuthError: no token, so nothing was sent
        """
        request = self._load(request_id)

        if request.status == RequestStatus.FUNDED:
            raise NotApproved("Request has already been funded")
        if request.status != RequestStatus.APPROVED:
            raise NotApproved()

        # Accepted earlier but funding never committed; finish it, never resend
        if request.payout_batch_id and request.payout_status == PayoutStatus.PENDING:
            logger.info("Request %s already has batch %s, completing funding", request.id, request.payout_batch_id)
            recipient, wallet = request.trucker.payout_destination or (None, None)
            funding = self.complete_funding(request.id, request.payout_batch_id)
            return self._result(request.id, funding, recipient, wallet)

        recipient, wallet = self._destination(request.trucker)

        if request.payout_status not in (PayoutStatus.NONE, PayoutStatus.FAILED, PayoutStatus.PENDING):
            raise InvalidTransition("Payout is {}".format(request.payout_status.value))

        # Authenticate first: an auth failure must leave the request untouched
        try:
            self.gateway.get_access_token()
        except GatewayTimeout:
            raise GatewayAuthError("PayPal did not answer the token request")

        snapshot = (request.payout_status, request.payout_error, request.submission_key)
        key = self._claim_submission(request)
        amount = request.amount_to_trucker

        try:
            receipt = self.gateway.submit_transfer(
                idempotency_key=key,
                recipient=recipient,
                amount=amount,
                currency=self.currency,
                note=self.note,
                recipient_wallet=wallet,
                sender_item_id=request.id,
                email_subject=self.email_subject,
                email_message=self.email_message,
            )
        except GatewayTimeout as exc:
            logger.warning("Payout for request %s timed out (key=%s); left pending for reconciliation", request.id, key)
            return PayoutResult(
                success=False,
                request_id=request.id,
                payout_status=PayoutStatus.PENDING,
                error=exc.message,
                outcome_unknown=True,
            )
        except GatewayAuthError:
            self._restore_submission(request.id, key, snapshot)
            raise
        except GatewayRejected as exc:
            if (exc.payload or {}).get('name') in DUPLICATE_SUBMISSION_ERRORS:
                return self._record_unknown(request.id, key, exc.message)
            self._release_submission(request.id, key, exc.message)
            return PayoutResult(
                success=False,
                request_id=request.id,
                payout_status=PayoutStatus.FAILED,
                error="Payout failed",
                details=exc.message,
            )

        logger.info("PayPal payout created: request=%s batch=%s status=%s", request.id, receipt.batch_id, receipt.batch_status)
        funding = self.complete_funding(request.id, receipt.batch_id)
        return self._result(request.id, funding, recipient, wallet, batch_id=receipt.batch_id, amount=amount)

    def _result(self, request_id, funding, recipient, wallet, batch_id=None, amount=None):
        request = self.session.get(EarlyPayRequest, request_id)
        return PayoutResult(
            success=True,
            request_id=request_id,
            payout_status=request.payout_status,
            batch_id=batch_id or request.payout_batch_id,
            amount=amount if amount is not None else request.amount_to_trucker,
            recipient=recipient,
            method=wallet,
            funding=funding,
        )

    def _release_submission(self, request_id, key, message):
        """The gateway refused the transfer: mark failed and free the key."""
        now = self.clock()
        EarlyPayRequest.conditional_update(
            request_id,
            [
                EarlyPayRequest.submission_key == key,
                EarlyPayRequest.payout_batch_id.is_(None),
                EarlyPayRequest.status == RequestStatus.APPROVED,
            ],
            payout_status=PayoutStatus.FAILED,
            payout_error=message,
            submission_key=None,
            payout_updated_at=now,
        )
        self.session.commit()
        logger.error("Payout for request %s failed: %s", request_id, message)

    def _restore_submission(self, request_id, key, snapshot):
        """Nothing reached PayPal: put the payout fields back as they were."""
        payout_status, payout_error, previous_key = snapshot
        EarlyPayRequest.conditional_update(
            request_id,
            [EarlyPayRequest.submission_key == key, EarlyPayRequest.payout_batch_id.is_(None)],
            payout_status=payout_status,
            payout_error=payout_error,
            submission_key=previous_key,
        )
        self.session.commit()
        logger.error("PayPal authentication failed; payout for request %s not sent", request_id)

    def _record_unknown(self, request_id, key, message):
        raise_flag(
            request_id,
            FlagKind.SUBMISSION_UNKNOWN,
            "Gateway reports key {} already used: {}".format(key, message),
            session=self.session,
        )
        self.session.commit()
        logger.warning("Payout key %s for request %s already used at PayPal; outcome unknown", key, request_id)
        return PayoutResult(
            success=False,
            request_id=request_id,
            payout_status=PayoutStatus.PENDING,
            error="Payout outcome unknown",
            details=message,
            outcome_unknown=True,
        )

    def resume_submission(self, request_id):
        """
        Resubmit a pending payout whose earlier attempt has no known outcome.

        Uses the stored key, so at most one transfer ever exists for it.
        """
        request = self._load(request_id)
        if (request.status != RequestStatus.APPROVED or request.payout_batch_id
                or request.payout_status != PayoutStatus.PENDING or not request.submission_key):
            logger.info("Request %s is not awaiting an unknown submission; skipping", request_id)
            return None
        return self.submit_payout(request_id)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------
    def complete_funding(self, request_id, batch_id, payout_status=PayoutStatus.PENDING):
        """
        Apply the funding side effects for an accepted transfer, once.

        On a failure the transaction is rolled back and the batch id is kept
        with a funding_incomplete flag so reconciliation can retry; the
        transfer itself is never undone.
        """
        try:
            outcome = self._apply_funding(request_id, batch_id, payout_status)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.exception("Funding commit failed for request %s (batch %s)", request_id, batch_id)
            self._record_incomplete_funding(request_id, batch_id, str(exc))
            return FundingOutcome(funded=False, error=str(exc))
        return outcome

    def _apply_funding(self, request_id, batch_id, payout_status):
        now = self.clock()
        flipped = EarlyPayRequest.conditional_update(
            request_id,
            [
                EarlyPayRequest.status == RequestStatus.APPROVED,
                EarlyPayRequest.payout_status.in_([PayoutStatus.PENDING, PayoutStatus.NONE]),
            ],
            status=RequestStatus.FUNDED,
            funded_at=now,
            payout_batch_id=batch_id,
            payout_status=payout_status,
            payout_error=None,
            payout_updated_at=now,
            updated_at=now,
        )
        if not flipped:
            logger.info("Request %s already funded or no longer fundable; funding skipped", request_id)
            return FundingOutcome(funded=False)

        request = self.session.get(EarlyPayRequest, request_id)
        Broker.increment_total_earned(request.broker_id, request.broker_fee)

        if request.credit_applied > 0 and not Trucker.consume_credit(request.trucker_id, request.credit_applied):
            logger.warning("Trucker %s lacks %s credit for request %s", request.trucker_id, request.credit_applied, request_id)
            raise_flag(
                request_id,
                FlagKind.CREDIT_SHORTFALL,
                "Credit of {} could not be consumed".format(money_str(request.credit_applied)),
                session=self.session,
            )

        accrual = None
        broker = self.session.get(Broker, request.broker_id)
        if broker.tier == BrokerTier.FREE:
            beneficiary = self.ledger.referring_trucker_for(broker.id)
            if beneficiary:
                accrual = self.ledger.accrue_broker_free_fee_earning(
                    beneficiary, broker.id, request_id, request.amount_requested,
                )

        resolve_flags(request_id, [FlagKind.FUNDING_INCOMPLETE, FlagKind.SUBMISSION_UNKNOWN],
                      "Funded with batch {}".format(batch_id), now, session=self.session)

        logger.info("Request %s funded: batch=%s broker=%s fee=%s", request_id, batch_id, broker.id, request.broker_fee)
        return FundingOutcome(funded=True, accrual=accrual)

    def _record_incomplete_funding(self, request_id, batch_id, detail):
        now = self.clock()
        try:
            EarlyPayRequest.conditional_update(
                request_id,
                [EarlyPayRequest.status == RequestStatus.APPROVED],
                payout_batch_id=batch_id,
                payout_status=PayoutStatus.PENDING,
                payout_updated_at=now,
            )
            raise_flag(request_id, FlagKind.FUNDING_INCOMPLETE,
                       "Batch {} accepted but funding failed: {}".format(batch_id, detail),
                       session=self.session)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("Could not record incomplete funding for request %s (batch %s)", request_id, batch_id)
