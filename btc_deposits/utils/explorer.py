"""
Explorer and wallet URI helpers.
"""

from decimal import Decimal
from urllib.parse import urlencode

from btc_deposits.config.constants import (
    EXPLORER_URLS,
    QR_CODE_SERVICE_URL,
    QR_CODE_SIZE,
    SATOSHIS_PER_BTC,
)


def satoshis_to_btc(amount: int) -> Decimal:
    """Convert satoshis to BTC."""
    return (Decimal(amount) / Decimal(SATOSHIS_PER_BTC)).normalize()


def address_explorer_url(network: str, address: str) -> str:
    """Block explorer page for an address."""
    return f"{EXPLORER_URLS[network]}/address/{address}"


def tx_explorer_url(network: str, tx_id: str | None) -> str | None:
    """Block explorer page for a transaction."""
    if not tx_id:
        return None
    return f"{EXPLORER_URLS[network]}/tx/{tx_id}"


def payment_uri(address: str, amount: int | None = None) -> str:
    """
    BIP21 payment URI.

    Args:
        address: Deposit address
        amount: Requested amount in satoshis (optional)
    """
    if amount:
        return f"bitcoin:{address}?amount={satoshis_to_btc(amount):f}"
    return f"bitcoin:{address}"


def qr_code_url(data: str) -> str:
    """QR code image URL for arbitrary data (typically a payment URI)."""
    return f"{QR_CODE_SERVICE_URL}?{urlencode({'size': QR_CODE_SIZE, 'data': data})}"
