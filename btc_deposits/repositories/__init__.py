"""
Repositories.

Narrow keyed-store interfaces over the payment and address tables.
"""

from btc_deposits.repositories.payment_event_repository import PaymentEventRepository
from btc_deposits.repositories.payment_repository import PaymentRepository
from btc_deposits.repositories.watched_address_repository import (
    WatchedAddressRepository,
)


__all__ = [
    "PaymentEventRepository",
    "PaymentRepository",
    "WatchedAddressRepository",
]
