"""
Early pay fee calculator.

Pure functions, no I/O. All arithmetic is Decimal and every monetary step is
rounded to cents half-up on its own, so the stored breakdown matches the
ledger postings exactly:

    broker_fee   = round(amount * broker_rate)
    platform_fee = round(amount * platform_rate)       (before credit)
    credit       = min(platform_fee, credit_remaining)
    amount_to_trucker = amount - broker_fee - platform_fee_before_credit

Credit lowers what the platform collects; it never raises the trucker's cut.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Optional

from bookd.errors import InvalidAmount
from bookd.models.enums import BrokerTier
from bookd.utils.helpers import ZERO, round_money, to_decimal


@dataclass(frozen=True)
class TierRates:
    broker: Decimal
    platform: Decimal

    @property
    def total(self):
        return self.broker + self.platform


def _default_rates():
    return MappingProxyType({
        BrokerTier.FREE: TierRates(Decimal('0.03'), Decimal('0.01')),
        BrokerTier.PRO: TierRates(Decimal('0.04'), Decimal('0')),
        BrokerTier.ENTERPRISE: TierRates(Decimal('0.04'), Decimal('0')),
    })


def _default_allowance():
    return MappingProxyType({
        BrokerTier.FREE: 10,
        BrokerTier.PRO: None,
        BrokerTier.ENTERPRISE: None,
    })


@dataclass(frozen=True)
class FeeSchedule:
    """Immutable tier table: fee split and monthly request allowance per tier."""

    rates: Mapping[BrokerTier, TierRates] = field(default_factory=_default_rates)
    monthly_allowance: Mapping[BrokerTier, Optional[int]] = field(default_factory=_default_allowance)

    def rates_for(self, tier):
        return self.rates[BrokerTier(tier)]

    def allowance_for(self, tier):
        return self.monthly_allowance.get(BrokerTier(tier))

    @classmethod
    def from_config(cls, config):
        """Build from Flask config (FEE_TIER_RATES / TIER_MONTHLY_REQUEST_ALLOWANCE)."""
        rates = {
            BrokerTier(tier): TierRates(to_decimal(values['broker']), to_decimal(values['platform']))
            for tier, values in config['FEE_TIER_RATES'].items()
        }
        allowance = {
            BrokerTier(tier): limit
            for tier, limit in config.get('TIER_MONTHLY_REQUEST_ALLOWANCE', {}).items()
        }
        return cls(rates=MappingProxyType(rates), monthly_allowance=MappingProxyType(allowance))


DEFAULT_SCHEDULE = FeeSchedule()


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    tier: BrokerTier
    broker_fee: Decimal
    platform_fee_before_credit: Decimal
    credit_applied: Decimal
    platform_fee: Decimal
    total_fee: Decimal
    amount_to_trucker: Decimal
    credit_remaining_after: Decimal

    @property
    def gross_fee(self):
        return self.broker_fee + self.platform_fee_before_credit

    def to_dict(self):
        return {
            "amount": str(self.amount),
            "tier": self.tier.value,
            "brokerFee": str(self.broker_fee),
            "platformFeeBeforeCredit": str(self.platform_fee_before_credit),
            "creditApplied": str(self.credit_applied),
            "platformFee": str(self.platform_fee),
            "totalFee": str(self.total_fee),
            "amountToTrucker": str(self.amount_to_trucker),
            "creditRemaining": str(self.credit_remaining_after),
        }


def compute_fee(amount, tier, credit_remaining=ZERO, schedule=DEFAULT_SCHEDULE):
    """
    Compute the fee breakdown for an early pay request.

    Args:
        amount: requested amount (> 0)
        tier: broker tier (BrokerTier or its string value)
        credit_remaining: trucker's promotional credit balance (>= 0)
        schedule: FeeSchedule with the tier rates

    Returns:
        FeeBreakdown

    Raises:
        InvalidAmount: amount is not a number or rounds to <= 0, or credit
            is negative
    """
    try:
        amount = round_money(amount)
        credit_remaining = round_money(credit_remaining if credit_remaining is not None else ZERO)
    except ValueError as exc:
        raise InvalidAmount(str(exc))

    if amount <= 0:
        raise InvalidAmount("Amount must be greater than zero")
    if credit_remaining < 0:
        raise InvalidAmount("Credit balance cannot be negative")

    tier = BrokerTier(tier)
    rates = schedule.rates_for(tier)

    # Each component rounded independently, then combined
    broker_fee = round_money(amount * rates.broker)
    platform_before = round_money(amount * rates.platform)

    credit_applied = min(platform_before, credit_remaining)
    platform_fee = platform_before - credit_applied

    total_fee = broker_fee + platform_fee
    amount_to_trucker = amount - broker_fee - platform_before

    return FeeBreakdown(
        amount=amount,
        tier=tier,
        broker_fee=broker_fee,
        platform_fee_before_credit=platform_before,
        credit_applied=credit_applied,
        platform_fee=platform_fee,
        total_fee=total_fee,
        amount_to_trucker=amount_to_trucker,
        credit_remaining_after=credit_remaining - credit_applied,
    )
