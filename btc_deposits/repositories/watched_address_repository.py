"""
Watched address repository.

Data access layer for WatchedAddress model.
"""

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from btc_deposits.models.watched_address import WatchedAddress
from btc_deposits.repositories.base import BaseRepository
from btc_deposits.utils.datetime_utils import utc_now


class WatchedAddressRepository(BaseRepository[WatchedAddress]):
    """Repository for WatchedAddress entity."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository."""
        super().__init__(WatchedAddress, session)

    async def get_by_payment_id(self, payment_id: str) -> WatchedAddress | None:
        """Get watched address owned by payment."""
        return await self.get_by_id(payment_id)

    async def get_by_address(self, address: str) -> WatchedAddress | None:
        """Get watched address by address string."""
        return await self.get_by(address=address)

    async def set_monitored(self, payment_id: str, is_monitored: bool) -> bool:
        """
        Set monitoring flag.

        Args:
            payment_id: Owning payment ID
            is_monitored: New flag value

        Returns:
            True if a row was updated
        """
        stmt = (
            update(WatchedAddress)
            .where(WatchedAddress.payment_id == payment_id)
            .values(is_monitored=is_monitored, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def get_stats(self) -> dict[str, int]:
        """
        Get address statistics.

        Returns:
            Dict with total, monitored and per-network counts
        """
        stmt = select(
            func.count(),
            func.count().filter(WatchedAddress.is_monitored.is_(True)),
            func.count().filter(WatchedAddress.network == "mainnet"),
            func.count().filter(WatchedAddress.network == "testnet"),
        ).select_from(WatchedAddress)
        result = await self.session.execute(stmt)
        total, monitored, mainnet, testnet = result.one()
        return {
            "total_addresses": total or 0,
            "monitored_addresses": monitored or 0,
            "mainnet_addresses": mainnet or 0,
            "testnet_addresses": testnet or 0,
        }
