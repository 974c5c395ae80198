"""
Base model with common fields and methods
"""
import enum
from datetime import datetime
from decimal import Decimal

from bookd import db
from bookd.utils.helpers import generate_uuid, utcnow, as_utc, money_str


class BaseModel(db.Model):
    """Abstract base model with common fields"""
    __abstract__ = True

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self, exclude=None):
        """
        Convert model to dictionary

        Args:
            exclude (list): List of fields to exclude

        Returns:
            dict: Model as dictionary
        """
        exclude = exclude or []
        data = {}

        for column in self.__table__.columns:
            if column.name not in exclude:
                value = getattr(self, column.name)

                # Money goes out as "12.34" strings so clients never see floats
                if isinstance(value, Decimal):
                    value = money_str(value)
                elif isinstance(value, enum.Enum):
                    value = value.value
                elif isinstance(value, datetime):
                    value = as_utc(value).isoformat()

                data[column.name] = value

        return data


def enum_column(enum_cls, **kwargs):
    """String-backed column restricted to the members of enum_cls."""
    return db.Column(
        db.Enum(
            enum_cls,
            native_enum=False,
            validate_strings=True,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs
    )


def money_column(**kwargs):
    kwargs.setdefault('nullable', False)
    kwargs.setdefault('default', Decimal('0.00'))
    return db.Column(db.Numeric(12, 2, asdecimal=True), **kwargs)
