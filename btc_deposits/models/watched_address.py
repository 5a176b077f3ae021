"""
Watched address model.

Deposit address exclusively owned by one payment.
"""

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from btc_deposits.config.constants import DEFAULT_ADDRESS_TYPE
from btc_deposits.models.base import Base


if TYPE_CHECKING:
    from btc_deposits.models.payment import PaymentRecord


class WatchedAddress(Base):
    """Deposit address polled for incoming value."""

    __tablename__ = "bitcoin_addresses"
    __table_args__ = (
        Index("idx_bitcoin_addresses_monitored_created", "is_monitored", "created_at"),
    )

    payment_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("bitcoin_payments.payment_id", ondelete="CASCADE"),
        primary_key=True,
    )
    address: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True, index=True
    )
    address_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEFAULT_ADDRESS_TYPE
    )
    network: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    is_monitored: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
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

    payment: Mapped["PaymentRecord"] = relationship(
        "PaymentRecord",
        back_populates="watched_address",
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<WatchedAddress(payment_id={self.payment_id}, "
            f"network={self.network}, is_monitored={self.is_monitored})>"
        )
