"""SQLAlchemy models package"""
from .enums import (
    BrokerTier, PayoutMethod, RequestStatus, PayoutStatus, LedgerSourceType,
    LedgerStatus, FlagKind, EventOutcome,
)
from .broker import Broker
from .trucker import Trucker, TruckerRecruiter, TruckerBrokerRelationship
from .early_pay_request import EarlyPayRequest
from .earnings import EarningsLedgerEntry, MonthlyEarningsTotal
from .reconciliation import ReconciliationFlag, GatewayEvent, raise_flag, resolve_flags

__all__ = [
    'BrokerTier',
    'PayoutMethod',
    'RequestStatus',
    'PayoutStatus',
    'LedgerSourceType',
    'LedgerStatus',
    'FlagKind',
    'EventOutcome',
    'Broker',
    'Trucker',
    'TruckerRecruiter',
    'TruckerBrokerRelationship',
    'EarlyPayRequest',
    'EarningsLedgerEntry',
    'MonthlyEarningsTotal',
    'ReconciliationFlag',
    'GatewayEvent',
    'raise_flag',
    'resolve_flags',
]
