"""Early pay request model"""
from sqlalchemy import update

from bookd import db
from .base import BaseModel, enum_column, money_column
from .enums import RequestStatus, PayoutStatus, PayoutMethod


class EarlyPayRequest(BaseModel):
    """
    EarlyPayRequest - a trucker's request to be paid an invoice amount early,
    net of the fee breakdown computed when it was created
    """
    __tablename__ = 'early_pay_requests'

    trucker_id = db.Column(db.String(36), db.ForeignKey('truckers.id', ondelete='RESTRICT'), nullable=False)
    broker_id = db.Column(db.String(36), db.ForeignKey('brokers.id', ondelete='RESTRICT'), nullable=False)
    load_reference = db.Column(db.String(255))

    amount_requested = money_column(default=None)

    # Fee breakdown
    broker_fee = money_column()
    platform_fee = money_column()
    credit_applied = money_column()
    total_fee = money_column()
    amount_to_trucker = money_column(default=None)

    status = enum_column(RequestStatus, nullable=False, default=RequestStatus.PENDING)

    # Payout lifecycle
    payout_status = enum_column(PayoutStatus, nullable=False, default=PayoutStatus.NONE)
    payout_error = db.Column(db.Text)
    payout_method = enum_column(PayoutMethod, nullable=True)
    payout_batch_id = db.Column(db.String(64), unique=True)
    submission_key = db.Column(db.String(128), unique=True)

    requested_at = db.Column(db.DateTime(timezone=True))
    approved_at = db.Column(db.DateTime(timezone=True))
    rejected_at = db.Column(db.DateTime(timezone=True))
    funded_at = db.Column(db.DateTime(timezone=True))
    payout_submitted_at = db.Column(db.DateTime(timezone=True))
    payout_updated_at = db.Column(db.DateTime(timezone=True))

    trucker = db.relationship('Trucker', lazy='joined')
    broker = db.relationship('Broker', lazy='joined')

    __table_args__ = (
        db.Index('idx_early_pay_trucker', 'trucker_id', 'status'),
        db.Index('idx_early_pay_broker', 'broker_id', 'status'),
        db.Index('idx_early_pay_payout', 'payout_status', 'payout_submitted_at'),
        db.CheckConstraint('amount_requested > 0', name='ck_amount_positive'),
    )

    def __repr__(self):
        return f'<EarlyPayRequest {self.id} {self.status.value if self.status else None}/{self.payout_status.value if self.payout_status else None}>'

    @classmethod
    def conditional_update(cls, request_id, where, **values):
        """
        UPDATE early_pay_requests SET ... WHERE id = request_id AND <where>.

        The single-statement compare-and-set every status change goes
        through. Returns True when exactly one row changed.
        """
        result = db.session.execute(
            update(cls)
            .where(cls.id == request_id, *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
