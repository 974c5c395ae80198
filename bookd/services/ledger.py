"""
Earnings ledger: capped, time-delayed, single-level cascading referral income.

A free-tier broker's fundings feed a referral pool (5% of the transaction)
of which the trucker who brought the broker onto the platform earns 10%,
capped per (trucker, broker, calendar month). The trucker's recruiter, if
any, earns a further 10% of that share, uncapped and not cascaded again.
Entries mature from pending to payable after a fixed delay.

The ledger never commits: every method runs inside the caller's
transaction so the funding step can apply status flip, broker earnings and
accrual as one unit.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update, func

from bookd import db
from bookd.errors import ConcurrencyConflict, EntryNotFound, InvalidAmount
from bookd.models import (
    EarningsLedgerEntry, MonthlyEarningsTotal, TruckerRecruiter, TruckerBrokerRelationship,
    LedgerSourceType, LedgerStatus,
)
from bookd.utils.helpers import ZERO, generate_uuid, month_period, round_money, to_decimal, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerPolicy:
    pool_rate: Decimal = Decimal('0.05')
    trucker_share_rate: Decimal = Decimal('0.10')
    monthly_cap: Decimal = Decimal('100.00')
    recruiter_bonus_rate: Decimal = Decimal('0.10')
    maturation: timedelta = timedelta(days=7)
    max_cas_retries: int = 5

    @classmethod
    def from_config(cls, config):
        return cls(
            pool_rate=to_decimal(config['REFERRAL_POOL_RATE']),
            trucker_share_rate=to_decimal(config['REFERRAL_TRUCKER_SHARE']),
            monthly_cap=to_decimal(config['REFERRAL_MONTHLY_CAP']),
            recruiter_bonus_rate=to_decimal(config['RECRUITER_BONUS_RATE']),
            maturation=timedelta(days=config['EARNINGS_MATURATION_DAYS']),
            max_cas_retries=config.get('LEDGER_CAS_MAX_RETRIES', 5),
        )


DEFAULT_POLICY = LedgerPolicy()


@dataclass
class AccrualResult:
    amount: Decimal
    capped: bool
    gross_fee: Decimal
    raw_share: Decimal
    entry: Optional[EarningsLedgerEntry] = None
    recruiter_entry: Optional[EarningsLedgerEntry] = None

    def to_dict(self):
        return {
            "amount": str(self.amount),
            "capped": self.capped,
            "grossFee": str(self.gross_fee),
            "rawShare": str(self.raw_share),
            "entryId": self.entry.id if self.entry else None,
            "recruiterEntryId": self.recruiter_entry.id if self.recruiter_entry else None,
        }


class EarningsLedger:

    def __init__(self, session=None, policy=DEFAULT_POLICY, clock=utcnow):
        self.session = session or db.session
        self.policy = policy
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def referring_trucker_for(self, broker_id):
        """The trucker who connected the broker: earliest active relationship."""
        return self.session.execute(
            select(TruckerBrokerRelationship.trucker_id)
            .where(
                TruckerBrokerRelationship.broker_id == broker_id,
                TruckerBrokerRelationship.status == 'active',
            )
            .order_by(TruckerBrokerRelationship.created_at.asc(), TruckerBrokerRelationship.id.asc())
            .limit(1)
        ).scalar_one_or_none()

    def recruiter_of(self, trucker_id):
        return self.session.execute(
            select(TruckerRecruiter.recruiter_id).where(TruckerRecruiter.recruited_id == trucker_id)
        ).scalar_one_or_none()

    def month_total(self, trucker_id, broker_id, period):
        """Sum of live broker_free_fee shares for the pair in period (from the entries)."""
        value = self.session.execute(
            select(func.coalesce(func.sum(EarningsLedgerEntry.trucker_share), 0))
            .where(
                EarningsLedgerEntry.trucker_id == trucker_id,
                EarningsLedgerEntry.source_broker_id == broker_id,
                EarningsLedgerEntry.source_type == LedgerSourceType.BROKER_FREE_FEE,
                EarningsLedgerEntry.period == period,
                EarningsLedgerEntry.status != LedgerStatus.CLAWED_BACK,
            )
        ).scalar_one()
        return round_money(value or 0)

    # ------------------------------------------------------------------
    # Monthly cap counter
    # ------------------------------------------------------------------
    def _ensure_month_row(self, trucker_id, broker_id, period, now):
        """Insert-or-ignore the counter row, seeded from existing entries."""
        values = dict(
            id=generate_uuid(),
            trucker_id=trucker_id,
            broker_id=broker_id,
            period=period,
            total=self.month_total(trucker_id, broker_id, period),
            version=0,
            created_at=now,
            updated_at=now,
        )
        dialect = self.session.get_bind().dialect.name
        if dialect == 'postgresql':
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == 'sqlite':
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError("insert-or-ignore not available for dialect {}".format(dialect))

        stmt = insert(MonthlyEarningsTotal).values(**values).on_conflict_do_nothing(
            index_elements=['trucker_id', 'broker_id', 'period']
        )
        self.session.execute(stmt)

    def _read_month_total(self, trucker_id, broker_id, period):
        return self.session.execute(
            select(MonthlyEarningsTotal.total, MonthlyEarningsTotal.version).where(
                MonthlyEarningsTotal.trucker_id == trucker_id,
                MonthlyEarningsTotal.broker_id == broker_id,
                MonthlyEarningsTotal.period == period,
            )
        ).one()

    def _swap_month_total(self, trucker_id, broker_id, period, expected_version, new_total, now):
        result = self.session.execute(
            update(MonthlyEarningsTotal)
            .where(
                MonthlyEarningsTotal.trucker_id == trucker_id,
                MonthlyEarningsTotal.broker_id == broker_id,
                MonthlyEarningsTotal.period == period,
                MonthlyEarningsTotal.version == expected_version,
            )
            .values(total=new_total, version=expected_version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _claim_headroom(self, trucker_id, broker_id, period, raw_share, now):
        """
        Reserve up to raw_share of the month's cap for the pair.

        Optimistic compare-and-swap on the counter's version: a concurrent
        accrual that moved the total first makes our swap match no row, and
        we re-read and clamp again.
        """
        self._ensure_month_row(trucker_id, broker_id, period, now)
        for attempt in range(1, self.policy.max_cas_retries + 1):
            row = self._read_month_total(trucker_id, broker_id, period)
            current = round_money(row.total)
            share = max(ZERO, min(raw_share, self.policy.monthly_cap - current))
            if share <= 0:
                return ZERO
            if self._swap_month_total(trucker_id, broker_id, period, row.version, current + share, now):
                return share
            logger.info(
                "Monthly cap counter moved under us (trucker=%s broker=%s period=%s attempt=%d)",
                trucker_id, broker_id, period, attempt,
            )
        raise ConcurrencyConflict("Monthly earnings total is under contention, try again")

    def _release_headroom(self, trucker_id, broker_id, period, amount, now):
        self._ensure_month_row(trucker_id, broker_id, period, now)
        for attempt in range(1, self.policy.max_cas_retries + 1):
            row = self._read_month_total(trucker_id, broker_id, period)
            current = round_money(row.total)
            new_total = max(ZERO, current - amount)
            if self._swap_month_total(trucker_id, broker_id, period, row.version, new_total, now):
                return new_total
        raise ConcurrencyConflict("Monthly earnings total is under contention, try again")

    # ------------------------------------------------------------------
    # Accrual
    # ------------------------------------------------------------------
    def accrue_broker_free_fee_earning(self, trucker_id, broker_id, request_id, transaction_amount):
        """
        Accrue the referral share of a free-tier broker's funded request.

        Returns an AccrualResult; amount is 0 and capped is True when the
        month's cap is already used up. capped is also True when the share
        was clamped to the remaining headroom.
        """
        now = self.clock()
        try:
            amount = round_money(transaction_amount)
        except ValueError as exc:
            raise InvalidAmount(str(exc))
        if amount <= 0:
            raise InvalidAmount("Transaction amount must be greater than zero")

        gross_fee = round_money(amount * self.policy.pool_rate)
        raw_share = round_money(gross_fee * self.policy.trucker_share_rate)
        period = month_period(now)

        share = self._claim_headroom(trucker_id, broker_id, period, raw_share, now)
        if share <= 0:
            logger.info(
                "Referral earning capped: trucker=%s broker=%s period=%s request=%s",
                trucker_id, broker_id, period, request_id,
            )
            return AccrualResult(amount=ZERO, capped=True, gross_fee=gross_fee, raw_share=raw_share)

        entry = EarningsLedgerEntry(
            trucker_id=trucker_id,
            source_type=LedgerSourceType.BROKER_FREE_FEE,
            source_broker_id=broker_id,
            source_request_id=request_id,
            gross_amount=gross_fee,
            trucker_share=share,
            status=LedgerStatus.PENDING,
            period=period,
            collected_at=now,
            becomes_payable_at=now + self.policy.maturation,
        )
        self.session.add(entry)
        self.session.flush()

        recruiter_entry = self.accrue_recruiter_bonus(trucker_id, share, source_request_id=request_id, now=now)

        logger.info(
            "Logged earning: $%s for trucker %s (broker=%s request=%s, raw=$%s)",
            share, trucker_id, broker_id, request_id, raw_share,
        )
        return AccrualResult(
            amount=share,
            capped=share < raw_share,
            gross_fee=gross_fee,
            raw_share=raw_share,
            entry=entry,
            recruiter_entry=recruiter_entry,
        )

    def accrue_recruiter_bonus(self, beneficiary_trucker_id, beneficiary_share, source_request_id=None, now=None):
        """Single-level bonus for the beneficiary's recruiter. Never capped, never cascaded."""
        recruiter_id = self.recruiter_of(beneficiary_trucker_id)
        if recruiter_id is None:
            return None

        bonus = round_money(to_decimal(beneficiary_share) * self.policy.recruiter_bonus_rate)
        if bonus <= 0:
            return None

        now = now or self.clock()
        entry = EarningsLedgerEntry(
            trucker_id=recruiter_id,
            source_type=LedgerSourceType.RECRUITER_BONUS,
            source_trucker_id=beneficiary_trucker_id,
            source_request_id=source_request_id,
            gross_amount=round_money(beneficiary_share),
            trucker_share=bonus,
            status=LedgerStatus.PENDING,
            period=month_period(now),
            collected_at=now,
            becomes_payable_at=now + self.policy.maturation,
        )
        self.session.add(entry)
        self.session.flush()
        logger.info("Logged recruiter bonus: $%s for recruiter %s (recruited=%s)", bonus, recruiter_id, beneficiary_trucker_id)
        return entry

    # ------------------------------------------------------------------
    # Maturation, balance, payout and clawback
    # ------------------------------------------------------------------
    def mature_entries(self, trucker_id=None, now=None):
        """
        Promote pending entries whose maturation time has passed to payable.

        One monotone conditional UPDATE: idempotent and safe to run from
        several instances at once. Returns the number of entries promoted.
        """
        now = now or self.clock()
        where = [
            EarningsLedgerEntry.status == LedgerStatus.PENDING,
            EarningsLedgerEntry.becomes_payable_at <= now,
        ]
        if trucker_id is not None:
            where.append(EarningsLedgerEntry.trucker_id == trucker_id)

        result = self.session.execute(
            update(EarningsLedgerEntry)
            .where(*where)
            .values(status=LedgerStatus.PAYABLE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Matured %d earnings entries%s", result.rowcount,
                        " for trucker {}".format(trucker_id) if trucker_id else "")
        return result.rowcount

    def get_payable_balance(self, trucker_id):
        """Return {'pending', 'payable', 'total'} for the trucker, after maturing due entries."""
        self.mature_entries(trucker_id=trucker_id)

        rows = self.session.execute(
            select(EarningsLedgerEntry.status, func.sum(EarningsLedgerEntry.trucker_share))
            .where(
                EarningsLedgerEntry.trucker_id == trucker_id,
                EarningsLedgerEntry.status.in_([LedgerStatus.PENDING, LedgerStatus.PAYABLE]),
            )
            .group_by(EarningsLedgerEntry.status)
        ).all()

        sums = {status: round_money(total or 0) for status, total in rows}
        pending = sums.get(LedgerStatus.PENDING, ZERO)
        payable = sums.get(LedgerStatus.PAYABLE, ZERO)
        return {"pending": pending, "payable": payable, "total": pending + payable}

    def mark_paid(self, trucker_id, payout_reference, now=None):
        """
        Mark the trucker's payable entries paid after the balance was paid out.

        Returns the amount marked paid.
        """
        now = now or self.clock()
        self.mature_entries(trucker_id=trucker_id, now=now)

        entries = self.session.execute(
            select(EarningsLedgerEntry.id, EarningsLedgerEntry.trucker_share)
            .where(
                EarningsLedgerEntry.trucker_id == trucker_id,
                EarningsLedgerEntry.status == LedgerStatus.PAYABLE,
            )
            .with_for_update()
        ).all()
        if not entries:
            return ZERO

        ids = [entry_id for entry_id, _ in entries]
        result = self.session.execute(
            update(EarningsLedgerEntry)
            .where(EarningsLedgerEntry.id.in_(ids), EarningsLedgerEntry.status == LedgerStatus.PAYABLE)
            .values(status=LedgerStatus.PAID, paid_at=now, payout_reference=payout_reference, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            raise ConcurrencyConflict("Earnings changed while being marked paid, try again")

        amount = sum((round_money(share) for _, share in entries), ZERO)
        logger.info("Marked %d entries ($%s) paid for trucker %s (ref=%s)", len(ids), amount, trucker_id, payout_reference)
        return amount

    def claw_back(self, entry_id, reason, now=None):
        """
        Reverse an unpaid entry (dispute/reversal).

        A broker_free_fee clawback gives the month's cap headroom back and
        reverses the recruiter bonus it generated, if still unpaid.
        """
        now = now or self.clock()
        entry = self.session.get(EarningsLedgerEntry, entry_id)
        if entry is None:
            raise EntryNotFound()

        previous = entry.status
        previous.check_transition(LedgerStatus.CLAWED_BACK)

        result = self.session.execute(
            update(EarningsLedgerEntry)
            .where(EarningsLedgerEntry.id == entry_id, EarningsLedgerEntry.status == previous)
            .values(status=LedgerStatus.CLAWED_BACK, clawed_back_at=now, clawback_reason=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict("Earnings entry changed concurrently, try again")

        if entry.source_type == LedgerSourceType.BROKER_FREE_FEE:
            self._release_headroom(entry.trucker_id, entry.source_broker_id, entry.period, round_money(entry.trucker_share), now)

            if entry.source_request_id:
                self.session.execute(
                    update(EarningsLedgerEntry)
                    .where(
                        EarningsLedgerEntry.source_type == LedgerSourceType.RECRUITER_BONUS,
                        EarningsLedgerEntry.source_trucker_id == entry.trucker_id,
                        EarningsLedgerEntry.source_request_id == entry.source_request_id,
                        EarningsLedgerEntry.status.in_([LedgerStatus.PENDING, LedgerStatus.PAYABLE]),
                    )
                    .values(
                        status=LedgerStatus.CLAWED_BACK,
                        clawed_back_at=now,
                        clawback_reason="Source earning clawed back: {}".format(reason),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

        self.session.expire(entry)
        logger.warning("Clawed back earnings entry %s ($%s): %s", entry_id, entry.trucker_share, reason)
        return entry
