"""
Payment record model.

Represents a merchant payment request settled by a Bitcoin deposit.
"""

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from btc_deposits.models.base import Base
from btc_deposits.models.enums import PaymentStatus


if TYPE_CHECKING:
    from btc_deposits.models.payment_event import PaymentEvent
    from btc_deposits.models.watched_address import WatchedAddress


class PaymentRecord(Base):
    """Payment record - one deposit address, one lifecycle."""

    __tablename__ = "bitcoin_payments"
    __table_args__ = (
        CheckConstraint(
            "requested_amount > 0", name="check_payment_requested_amount_positive"
        ),
        CheckConstraint(
            "observed_received >= 0", name="check_payment_observed_non_negative"
        ),
        CheckConstraint(
            "max_confirmations >= 0", name="check_payment_confirmations_non_negative"
        ),
        CheckConstraint(
            "mint_attempts >= 0", name="check_payment_mint_attempts_non_negative"
        ),
        Index("idx_bitcoin_payments_status_expires", "status", "expires_at"),
        Index("idx_bitcoin_payments_last_checked", "last_checked_at"),
        Index("idx_bitcoin_payments_last_polled", "last_polled_at"),
    )

    # Externally assigned identifier
    payment_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(
        String(128), nullable=False, index=True
    )

    # Requested amount in satoshis
    requested_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=PaymentStatus.AWAITING_DEPOSIT.value,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    deposit_address: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True
    )

    # Chain observations
    observed_received: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )  # confirmed + mempool value seen at the address
    confirmed_received: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )  # chain-included value only
    max_confirmations: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    confirmed_tx_ids: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list
    )

    # Mint bookkeeping
    mint_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mint_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_mint_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    mint_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timestamps
    last_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )  # last successful observation
    last_polled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )  # last query attempt, drives polling order
    deposit_detected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deposit_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    mint_triggered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    # Relationships
    watched_address: Mapped["WatchedAddress"] = relationship(
        "WatchedAddress",
        back_populates="payment",
        uselist=False,
        cascade="all, delete-orphan",
    )
    events: Mapped[list["PaymentEvent"]] = relationship(
        "PaymentEvent",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentEvent.id",
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<PaymentRecord(payment_id={self.payment_id}, "
            f"status={self.status}, observed={self.observed_received}, "
            f"confirmations={self.max_confirmations})>"
        )
