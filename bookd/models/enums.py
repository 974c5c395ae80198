"""
Closed status enumerations and their transition tables.

Every status write goes through one of the transition checks below, or
through a conditional UPDATE whose WHERE clause lists the allowed source
states taken from these tables.
"""
import enum

from bookd.errors import InvalidTransition, StaleTerminalEvent


class BrokerTier(str, enum.Enum):
    FREE = 'free'
    PRO = 'pro'
    ENTERPRISE = 'enterprise'


class PayoutMethod(str, enum.Enum):
    MANUAL = 'manual'
    PAYPAL = 'paypal'
    VENMO = 'venmo'


class RequestStatus(str, enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    FUNDED = 'funded'

    def check_transition(self, target):
        if target not in _REQUEST_TRANSITIONS[self]:
            raise InvalidTransition(
                'Cannot move request from {} to {}'.format(self.value, target.value)
            )
        return target


class PayoutStatus(str, enum.Enum):
    NONE = 'none'
    PENDING = 'pending'
    SUCCESS = 'success'
    FAILED = 'failed'
    UNCLAIMED = 'unclaimed'

    @property
    def is_terminal(self):
        return self in (PayoutStatus.SUCCESS, PayoutStatus.FAILED)

    @classmethod
    def event_sources(cls, target):
        """States a gateway event may move into target from."""
        return [source for source, targets in _PAYOUT_EVENT_TRANSITIONS.items() if target in targets]

    def check_event(self, target):
        """
        Validate a webhook-driven transition.

        Returns False for a same-state (idempotent) event, True when the
        transition should be applied.

        Raises:
            StaleTerminalEvent: the payout is terminal, or the event would
                move it backwards (or it was never submitted)
        """
        if self == target:
            return False
        if target not in _PAYOUT_EVENT_TRANSITIONS[self]:
            raise StaleTerminalEvent(self.value, target.value)
        return True


# The orchestrator may (re)submit from these payout states; pending is only
# resubmittable while no batch id is recorded (outcome unknown).
SUBMITTABLE_PAYOUT_STATES = (PayoutStatus.NONE, PayoutStatus.FAILED, PayoutStatus.PENDING)


class LedgerSourceType(str, enum.Enum):
    BROKER_FREE_FEE = 'broker_free_fee'
    RECRUITER_BONUS = 'recruiter_bonus'


class LedgerStatus(str, enum.Enum):
    PENDING = 'pending'
    PAYABLE = 'payable'
    PAID = 'paid'
    CLAWED_BACK = 'clawed_back'

    def check_transition(self, target):
        if target not in _LEDGER_TRANSITIONS[self]:
            raise InvalidTransition(
                'Cannot move earnings entry from {} to {}'.format(self.value, target.value)
            )
        return target


class FlagKind(str, enum.Enum):
    STUCK_PAYOUT = 'stuck_payout'
    FUNDING_INCOMPLETE = 'funding_incomplete'
    CREDIT_SHORTFALL = 'credit_shortfall'
    SUBMISSION_UNKNOWN = 'submission_unknown'


class EventOutcome(str, enum.Enum):
    APPLIED = 'applied'
    NOOP = 'noop'
    DUPLICATE = 'duplicate'
    DISCARDED = 'discarded'
    IGNORED = 'ignored'


_REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED},
    RequestStatus.APPROVED: {RequestStatus.FUNDED},
    RequestStatus.REJECTED: set(),
    RequestStatus.FUNDED: set(),
}

_PAYOUT_EVENT_TRANSITIONS = {
    PayoutStatus.NONE: set(),
    PayoutStatus.PENDING: {PayoutStatus.SUCCESS, PayoutStatus.FAILED, PayoutStatus.UNCLAIMED},
    PayoutStatus.UNCLAIMED: {PayoutStatus.FAILED, PayoutStatus.SUCCESS},
    PayoutStatus.SUCCESS: set(),
    PayoutStatus.FAILED: set(),
}

_LEDGER_TRANSITIONS = {
    LedgerStatus.PENDING: {LedgerStatus.PAYABLE, LedgerStatus.CLAWED_BACK},
    LedgerStatus.PAYABLE: {LedgerStatus.PAID, LedgerStatus.CLAWED_BACK},
    LedgerStatus.PAID: set(),
    LedgerStatus.CLAWED_BACK: set(),
}
