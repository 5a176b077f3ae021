"""
Chain explorer access.

HTTP client, retry policy and result types.
"""

from btc_deposits.services.chain.backoff import BackoffPolicy
from btc_deposits.services.chain.client import ChainQueryClient
from btc_deposits.services.chain.types import (
    AddressActivity,
    ChainTransaction,
    ChainUnavailable,
)


__all__ = [
    "AddressActivity",
    "BackoffPolicy",
    "ChainQueryClient",
    "ChainTransaction",
    "ChainUnavailable",
]
