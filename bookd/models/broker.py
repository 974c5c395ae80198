"""Broker model"""
from sqlalchemy import update

from bookd import db
from .base import BaseModel, enum_column, money_column
from .enums import BrokerTier


class Broker(BaseModel):
    """
    Broker - owes invoice money to truckers and carries a service tier
    """
    __tablename__ = 'brokers'

    company_name = db.Column(db.String(255))
    tier = enum_column(BrokerTier, nullable=False, default=BrokerTier.FREE)
    total_earned = money_column()

    relationships = db.relationship('TruckerBrokerRelationship', backref='broker', lazy='dynamic')

    def __repr__(self):
        return f'<Broker {self.company_name} ({self.tier.value if self.tier else None})>'

    @classmethod
    def increment_total_earned(cls, broker_id, amount):
        """
        Atomically add amount to total_earned in one statement.

        Runs inside the caller's transaction; returns the matched row count.
        """
        result = db.session.execute(
            update(cls)
            .where(cls.id == broker_id)
            .values(total_earned=cls.total_earned + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
