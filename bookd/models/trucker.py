"""Trucker, recruiter link and trucker/broker connection models"""
from sqlalchemy import update

from bookd import db
from .base import BaseModel, enum_column, money_column
from .enums import PayoutMethod


class Trucker(BaseModel):
    """
    Trucker - requests early pay, earns referral income, receives payouts
    """
    __tablename__ = 'truckers'

    full_name = db.Column(db.String(255))

    bonus_credit_remaining = money_column()
    bonus_credit_used = money_column()

    # Payout destination
    payment_method = enum_column(PayoutMethod, nullable=False, default=PayoutMethod.MANUAL)
    paypal_email = db.Column(db.String(255))
    venmo_handle = db.Column(db.String(255))

    def __repr__(self):
        return f'<Trucker {self.full_name}>'

    @property
    def payout_destination(self):
        """(recipient, wallet) for the configured method, or None if unusable."""
        if self.payment_method == PayoutMethod.PAYPAL and self.paypal_email:
            return self.paypal_email, 'PAYPAL'
        if self.payment_method == PayoutMethod.VENMO and self.venmo_handle:
            return self.venmo_handle, 'VENMO'
        return None

    @classmethod
    def consume_credit(cls, trucker_id, amount):
        """
        Move amount from bonus_credit_remaining to bonus_credit_used.

        Conditional on enough credit remaining, so concurrent fundings can
        never drive the balance negative. Returns True if the row was updated.
        """
        result = db.session.execute(
            update(cls)
            .where(cls.id == trucker_id, cls.bonus_credit_remaining >= amount)
            .values(
                bonus_credit_remaining=cls.bonus_credit_remaining - amount,
                bonus_credit_used=cls.bonus_credit_used + amount,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class TruckerRecruiter(BaseModel):
    """
    Recruiter link - the trucker who referred another trucker (at most one)
    """
    __tablename__ = 'trucker_recruiters'

    recruiter_id = db.Column(db.String(36), db.ForeignKey('truckers.id', ondelete='CASCADE'), nullable=False, index=True)
    recruited_id = db.Column(db.String(36), db.ForeignKey('truckers.id', ondelete='CASCADE'), nullable=False, unique=True)

    __table_args__ = (
        db.CheckConstraint('recruiter_id <> recruited_id', name='ck_recruiter_not_self'),
    )


class TruckerBrokerRelationship(BaseModel):
    """
    Trucker/broker connection; the earliest active one marks the trucker who
    brought the broker onto the platform
    """
    __tablename__ = 'trucker_broker_relationships'

    trucker_id = db.Column(db.String(36), db.ForeignKey('truckers.id', ondelete='CASCADE'), nullable=False, index=True)
    broker_id = db.Column(db.String(36), db.ForeignKey('brokers.id', ondelete='CASCADE'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='active')  # pending, active, ended

    __table_args__ = (
        db.UniqueConstraint('trucker_id', 'broker_id', name='uq_trucker_broker'),
    )
