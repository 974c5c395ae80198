"""Earnings ledger models"""
from bookd import db
from .base import BaseModel, enum_column, money_column
from .enums import LedgerSourceType, LedgerStatus


class EarningsLedgerEntry(BaseModel):
    """
    One unit of accrued referral/recruiting income. Append-only: only the
    status (and its timestamps) ever change after insert.
    """
    __tablename__ = 'earnings_ledger'

    trucker_id = db.Column(db.String(36), db.ForeignKey('truckers.id', ondelete='RESTRICT'), nullable=False)
    source_type = enum_column(LedgerSourceType, nullable=False)

    source_broker_id = db.Column(db.String(36), db.ForeignKey('brokers.id', ondelete='SET NULL'))
    source_request_id = db.Column(db.String(36), db.ForeignKey('early_pay_requests.id', ondelete='SET NULL'))
    source_trucker_id = db.Column(db.String(36), db.ForeignKey('truckers.id', ondelete='SET NULL'))

    gross_amount = money_column()
    trucker_share = money_column()

    status = enum_column(LedgerStatus, nullable=False, default=LedgerStatus.PENDING)
    period = db.Column(db.String(7), nullable=False)  # UTC YYYY-MM of collected_at
    collected_at = db.Column(db.DateTime(timezone=True), nullable=False)
    becomes_payable_at = db.Column(db.DateTime(timezone=True), nullable=False)

    paid_at = db.Column(db.DateTime(timezone=True))
    payout_reference = db.Column(db.String(128))
    clawed_back_at = db.Column(db.DateTime(timezone=True))
    clawback_reason = db.Column(db.Text)

    __table_args__ = (
        db.Index('idx_ledger_trucker_status', 'trucker_id', 'status'),
        db.Index('idx_ledger_maturation', 'status', 'becomes_payable_at'),
        db.Index('idx_ledger_cap', 'trucker_id', 'source_broker_id', 'source_type', 'period'),
        db.CheckConstraint('trucker_share >= 0', name='ck_trucker_share_non_negative'),
    )

    def __repr__(self):
        return f'<EarningsLedgerEntry {self.source_type.value if self.source_type else None} ${self.trucker_share} {self.status.value if self.status else None}>'


class MonthlyEarningsTotal(BaseModel):
    """
    Running broker_free_fee total per (trucker, broker, month).

    The version column is the compare-and-swap token that serializes cap
    checks for the pair within the month.
    """
    __tablename__ = 'monthly_earnings_totals'

    trucker_id = db.Column(db.String(36), db.ForeignKey('truckers.id', ondelete='CASCADE'), nullable=False)
    broker_id = db.Column(db.String(36), db.ForeignKey('brokers.id', ondelete='CASCADE'), nullable=False)
    period = db.Column(db.String(7), nullable=False)
    total = money_column()
    version = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint('trucker_id', 'broker_id', 'period', name='uq_monthly_total_key'),
    )
