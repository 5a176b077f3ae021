"""
Exception types.

Chain and mint failures are reported as values, not raised; these cover
lookups, allocation and mint misconfiguration.
"""


class DepositMonitorError(Exception):
    """Base exception for the deposit monitor."""
    pass


class PaymentNotFoundError(DepositMonitorError):
    """Raised when a payment record does not exist."""

    def __init__(self, payment_id: str) -> None:
        super().__init__(f"Payment {payment_id} not found")
        self.payment_id = payment_id


class AddressAllocationError(DepositMonitorError):
    """Raised when a deposit address cannot be allocated."""
    pass


class MintTriggerError(DepositMonitorError):
    """Raised when the mint trigger is misconfigured."""
    pass
