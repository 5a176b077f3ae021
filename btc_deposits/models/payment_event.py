"""
Payment event model.

Append-only log of payment state changes.
"""

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from btc_deposits.models.base import Base


if TYPE_CHECKING:
    from btc_deposits.models.payment import PaymentRecord


class PaymentEvent(Base):
    """Durable state-change event."""

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("bitcoin_payments.payment_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    event_data: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    payment: Mapped["PaymentRecord"] = relationship(
        "PaymentRecord",
        back_populates="events",
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"event_type={self.event_type})>"
        )
