"""
Payment repository.

Data access layer for PaymentRecord model. All status mutation goes
through conditional writes keyed on the current status.
"""

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from btc_deposits.models.enums import OBSERVABLE_STATUSES, PaymentStatus
from btc_deposits.models.payment import PaymentRecord
from btc_deposits.models.watched_address import WatchedAddress
from btc_deposits.repositories.base import BaseRepository
from btc_deposits.utils.datetime_utils import utc_now


def _greatest(column: Any, value: int) -> Any:
    """Portable GREATEST(column, value)."""
    return case((column > value, column), else_=value)


class PaymentRepository(BaseRepository[PaymentRecord]):
    """Repository for PaymentRecord entity."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository."""
        super().__init__(PaymentRecord, session)

    async def get(self, payment_id: str) -> PaymentRecord | None:
        """
        Get payment by ID with its watched address.

        Always reads the committed row, never a cached identity.
        """
        result = await self.session.execute(
            select(PaymentRecord)
            .where(PaymentRecord.payment_id == payment_id)
            .options(selectinload(PaymentRecord.watched_address))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def conditional_update(
        self,
        payment_id: str,
        expected_status: str | Sequence[str],
        *,
        unclaimed_only: bool = False,
        **values: Any,
    ) -> bool:
        """
        Compare-and-swap update on status.

        Args:
            payment_id: Payment ID
            expected_status: Status (or statuses) the row must currently hold
            unclaimed_only: Additionally require mint_claimed_at IS NULL
            **values: Column values to write

        Returns:
            True if exactly one row was updated, False on conflict
        """
        if isinstance(expected_status, str):
            status_clause = PaymentRecord.status == expected_status
        else:
            status_clause = PaymentRecord.status.in_(list(expected_status))

        stmt = update(PaymentRecord).where(
            PaymentRecord.payment_id == payment_id,
            status_clause,
        )
        if unclaimed_only:
            stmt = stmt.where(PaymentRecord.mint_claimed_at.is_(None))

        values.setdefault("updated_at", utc_now())
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def record_observation(
        self,
        payment_id: str,
        expected_status: str,
        *,
        observed_received: int,
        max_confirmations: int,
        **values: Any,
    ) -> bool:
        """
        Conditionally persist a chain observation.

        Counters are merged with the stored values on the database side so
        that a stale writer can never lower them.

        Returns:
            True if the row was updated, False on status conflict
        """
        if "last_checked_at" in values:
            values.setdefault("last_polled_at", values["last_checked_at"])
        return await self.conditional_update(
            payment_id,
            expected_status,
            observed_received=_greatest(
                PaymentRecord.observed_received, observed_received
            ),
            max_confirmations=_greatest(
                PaymentRecord.max_confirmations, max_confirmations
            ),
            **values,
        )

    async def mark_polled(
        self, payment_id: str, expected_status: str, polled_at: datetime
    ) -> bool:
        """
        Advance the polling order key after a query that brought no data.

        Status, counters and last_checked_at are left as they are.
        """
        return await self.conditional_update(
            payment_id, expected_status, last_polled_at=polled_at
        )

    async def scan_active(
        self, limit: int, now: datetime | None = None
    ) -> Sequence[PaymentRecord]:
        """
        Get payments that need chain polling.

        Monitored, not yet expired, awaiting or detected; least recently
        polled first so every payment is eventually polled, including
        behind addresses the explorer keeps failing on.

        Args:
            limit: Max number of payments
            now: Reference time (defaults to now)

        Returns:
            List of payments with watched address loaded
        """
        now = now or utc_now()
        result = await self.session.execute(
            select(PaymentRecord)
            .join(WatchedAddress, WatchedAddress.payment_id == PaymentRecord.payment_id)
            .where(
                and_(
                    WatchedAddress.is_monitored.is_(True),
                    PaymentRecord.expires_at > now,
                    PaymentRecord.status.in_(OBSERVABLE_STATUSES),
                )
            )
            .options(selectinload(PaymentRecord.watched_address))
            .order_by(
                PaymentRecord.last_polled_at.asc().nulls_first(),
                PaymentRecord.created_at.asc(),
            )
            .limit(limit)
        )
        return result.scalars().all()

    async def scan_overdue(
        self, limit: int, now: datetime | None = None
    ) -> Sequence[PaymentRecord]:
        """Get unsettled payments whose expiry has passed."""
        now = now or utc_now()
        result = await self.session.execute(
            select(PaymentRecord)
            .where(
                and_(
                    PaymentRecord.expires_at <= now,
                    PaymentRecord.status.in_(OBSERVABLE_STATUSES),
                )
            )
            .options(selectinload(PaymentRecord.watched_address))
            .order_by(PaymentRecord.expires_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    async def scan_mint_pending(
        self, limit: int, max_attempts: int
    ) -> Sequence[PaymentRecord]:
        """
        Get confirmed payments waiting for a mint attempt.

        Args:
            limit: Max number of payments
            max_attempts: Skip payments that used up automatic attempts

        Returns:
            List of unclaimed confirmed payments, oldest confirmation first
        """
        result = await self.session.execute(
            select(PaymentRecord)
            .where(
                and_(
                    PaymentRecord.status == PaymentStatus.DEPOSIT_CONFIRMED.value,
                    PaymentRecord.mint_claimed_at.is_(None),
                    PaymentRecord.mint_attempts < max_attempts,
                )
            )
            .order_by(PaymentRecord.deposit_confirmed_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    async def count_by_status(self) -> dict[str, int]:
        """Count payments grouped by status."""
        result = await self.session.execute(
            select(PaymentRecord.status, func.count())
            .group_by(PaymentRecord.status)
        )
        counts = {status.value: 0 for status in PaymentStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def count_stale_mint_claims(self, claimed_before: datetime) -> int:
        """
        Count confirmed payments whose mint claim was taken before a cutoff.

        Such a claim usually belongs to a worker that died mid-mint and
        needs an operator re-trigger with force.
        """
        result = await self.session.execute(
            select(func.count())
            .select_from(PaymentRecord)
            .where(
                and_(
                    PaymentRecord.status == PaymentStatus.DEPOSIT_CONFIRMED.value,
                    PaymentRecord.mint_claimed_at.is_not(None),
                    PaymentRecord.mint_claimed_at < claimed_before,
                )
            )
        )
        return result.scalar_one()
