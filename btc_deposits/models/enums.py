"""
Enumerations for payment and address state.
"""

from enum import Enum


class PaymentStatus(str, Enum):
    """
    Payment lifecycle status.

    Forward chain: awaiting_deposit -> deposit_detected -> deposit_confirmed
    -> mint_triggered. expired is reachable only from awaiting_deposit and
    deposit_detected. mint_failed parks a confirmed payment whose automatic
    mint attempts ran out.
    """

    AWAITING_DEPOSIT = "awaiting_deposit"
    DEPOSIT_DETECTED = "deposit_detected"
    DEPOSIT_CONFIRMED = "deposit_confirmed"
    MINT_TRIGGERED = "mint_triggered"
    MINT_FAILED = "mint_failed"
    EXPIRED = "expired"


# Statuses polled against the chain
OBSERVABLE_STATUSES = (
    PaymentStatus.AWAITING_DEPOSIT.value,
    PaymentStatus.DEPOSIT_DETECTED.value,
)


class PaymentEventType(str, Enum):
    """Durable state-change event types."""

    CREATED = "payment_created"
    DEPOSIT_DETECTED = "payment_deposit_detected"
    OBSERVATION_UPDATED = "payment_observation_updated"
    DEPOSIT_CONFIRMED = "payment_deposit_confirmed"
    MINT_ATTEMPT_FAILED = "payment_mint_attempt_failed"
    MINT_TRIGGERED = "payment_mint_triggered"
    MINT_FAILED = "payment_mint_failed"
    EXPIRED = "payment_expired"
