"""
Error taxonomy for the settlement engine.

Every error carries the HTTP status the API layer renders it with, so route
handlers can let them propagate to the blueprint-wide error handler.
"""


class EarlyPayError(Exception):
    """Base class for domain errors surfaced to API callers."""

    status_code = 400

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__

    def to_dict(self):
        return {"success": False, "error": self.message}


class InvalidAmount(EarlyPayError):
    """Amount must be greater than zero."""


class RequestNotFound(EarlyPayError):
    """Request not found"""

    status_code = 404


class TruckerNotFound(EarlyPayError):
    """Trucker not found"""

    status_code = 404


class BrokerNotFound(EarlyPayError):
    """Broker not found"""

    status_code = 404


class EntryNotFound(EarlyPayError):
    """Earnings entry not found"""

    status_code = 404


class NotApproved(EarlyPayError):
    """Request must be approved before payout"""


class PayoutMethodMissing(EarlyPayError):
    """Trucker has not set up automatic payments"""


class InvalidTransition(EarlyPayError):
    """Status transition not allowed"""

    status_code = 409


class AllowanceExceeded(EarlyPayError):
    """Broker has used this month's early pay allowance"""

    status_code = 429


class ConcurrencyConflict(EarlyPayError):
    """Concurrent update conflict, try again"""

    status_code = 409


class StaleTerminalEvent(Exception):
    """A gateway event tried to move a payout out of a terminal state."""

    def __init__(self, current, target):
        super().__init__("payout already {}; refusing {}".format(current, target))
        self.current = current
        self.target = target


class GatewayError(EarlyPayError):
    """Payment gateway error"""

    status_code = 502


class GatewayRejected(GatewayError):
    """Payout failed"""

    def __init__(self, message=None, status=None, payload=None):
        super().__init__(message)
        self.status = status
        self.payload = payload or {}


class GatewayAuthError(GatewayError):
    """Failed to authenticate with PayPal"""


class GatewayTimeout(GatewayError):
    """Payout outcome unknown; the gateway did not answer in time"""

    status_code = 202
