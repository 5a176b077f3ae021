"""
Database models.

Exports all SQLAlchemy models for easy imports.
"""

from btc_deposits.models.base import Base
from btc_deposits.models.enums import (
    PaymentEventType,
    PaymentStatus,
)
from btc_deposits.models.payment import PaymentRecord
from btc_deposits.models.payment_event import PaymentEvent
from btc_deposits.models.watched_address import WatchedAddress


__all__ = [
    "Base",
    "PaymentEvent",
    "PaymentEventType",
    "PaymentRecord",
    "PaymentStatus",
    "WatchedAddress",
]
