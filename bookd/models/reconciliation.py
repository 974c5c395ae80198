"""Audit and operator-review models for payout reconciliation"""
from bookd import db
from .base import BaseModel, enum_column
from .enums import FlagKind, EventOutcome


class ReconciliationFlag(BaseModel):
    """
    An inconsistency that needs an operator (or the reconciliation job) to
    look at it. At most one open flag per (request, kind).
    """
    __tablename__ = 'reconciliation_flags'

    request_id = db.Column(db.String(36), db.ForeignKey('early_pay_requests.id', ondelete='CASCADE'), nullable=False, index=True)
    kind = enum_column(FlagKind, nullable=False)
    detail = db.Column(db.Text)
    resolved_at = db.Column(db.DateTime(timezone=True))
    resolution = db.Column(db.Text)

    def __repr__(self):
        return f'<ReconciliationFlag {self.kind.value if self.kind else None} request={self.request_id}>'


class GatewayEvent(BaseModel):
    """
    Every webhook event received from the payout processor, with what was
    done about it
    """
    __tablename__ = 'gateway_events'

    event_id = db.Column(db.String(128), unique=True)  # PayPal event id, may be absent
    event_type = db.Column(db.String(128))
    batch_id = db.Column(db.String(64), index=True)
    item_reference = db.Column(db.String(64), index=True)
    request_id = db.Column(db.String(36), index=True)
    outcome = enum_column(EventOutcome, nullable=False)
    detail = db.Column(db.Text)


def raise_flag(request_id, kind, detail=None, session=None):
    """Open a flag unless one of the same kind is already open. Does not commit."""
    session = session or db.session
    existing = session.execute(
        db.select(ReconciliationFlag).where(
            ReconciliationFlag.request_id == request_id,
            ReconciliationFlag.kind == kind,
            ReconciliationFlag.resolved_at.is_(None),
        )
    ).scalar_one_or_none()
    if existing is not None:
        existing.detail = detail or existing.detail
        return existing
    flag = ReconciliationFlag(request_id=request_id, kind=kind, detail=detail)
    session.add(flag)
    return flag


def resolve_flags(request_id, kinds, resolution, now, session=None):
    """Close the open flags of the given kinds for a request. Does not commit."""
    session = session or db.session
    result = session.execute(
        db.update(ReconciliationFlag)
        .where(
            ReconciliationFlag.request_id == request_id,
            ReconciliationFlag.kind.in_(list(kinds)),
            ReconciliationFlag.resolved_at.is_(None),
        )
        .values(resolved_at=now, resolution=resolution, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
