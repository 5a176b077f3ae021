"""
Payment event repository.

Append-only access to the payment state-change log.
"""

from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from btc_deposits.models.enums import PaymentEventType
from btc_deposits.models.payment_event import PaymentEvent
from btc_deposits.repositories.base import BaseRepository


class PaymentEventRepository(BaseRepository[PaymentEvent]):
    """Repository for PaymentEvent entity."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository."""
        super().__init__(PaymentEvent, session)

    async def record(
        self,
        payment_id: str,
        event_type: PaymentEventType,
        from_status: str | None = None,
        to_status: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> PaymentEvent:
        """Append event in the current transaction."""
        event = PaymentEvent(
            payment_id=payment_id,
            event_type=event_type.value,
            from_status=from_status,
            to_status=to_status,
            event_data=data or {},
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def list_for_payment(self, payment_id: str) -> Sequence[PaymentEvent]:
        """Get events for payment, oldest first."""
        result = await self.session.execute(
            select(PaymentEvent)
            .where(PaymentEvent.payment_id == payment_id)
            .order_by(PaymentEvent.id.asc())
        )
        return result.scalars().all()
