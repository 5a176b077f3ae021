"""
Address registry.

Deterministic mapping from (payment, merchant) to a watched deposit
address, plus the monitoring flag.
"""

import hashlib
import hmac
from typing import Protocol

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from btc_deposits.config.constants import ADDRESS_PREFIXES, DEFAULT_ADDRESS_TYPE
from btc_deposits.models.watched_address import WatchedAddress
from btc_deposits.repositories.watched_address_repository import (
    WatchedAddressRepository,
)
from btc_deposits.utils.exceptions import AddressAllocationError
from btc_deposits.utils.security import mask_address


class AddressDeriver(Protocol):
    """Derives a deposit address from payment identity."""

    address_type: str

    def derive(self, payment_id: str, merchant_id: str) -> str:
        """Return the deposit address for this payment."""
        ...


def _identity(payment_id: str, merchant_id: str) -> bytes:
    """Unambiguous byte encoding of a (payment, merchant) pair."""
    parts = [part.encode("utf-8") for part in (payment_id, merchant_id)]
    return b"".join(b"%d:%s" % (len(part), part) for part in parts)


class SeededAddressDeriver:
    """
    Seed-keyed deterministic address derivation.

    HMAC-SHA256 over the length-prefixed payment and merchant IDs, hashed
    again and encoded under the network's bech32 prefix. Length prefixes
    keep ("a-b", "c") and ("a", "b-c") apart. Re-deriving after a crash
    yields the same address. Encoding is a placeholder; a wallet-backed deriver
    can be plugged in through AddressDeriver.
    """

    address_type = DEFAULT_ADDRESS_TYPE

    def __init__(self, seed: str, network: str) -> None:
        if not seed:
            raise AddressAllocationError("Address seed is not configured")
        if network not in ADDRESS_PREFIXES:
            raise AddressAllocationError(f"Unsupported network: {network}")
        self._seed = seed.encode("utf-8")
        self.network = network

    def derive(self, payment_id: str, merchant_id: str) -> str:
        """Derive deposit address."""
        digest = hmac.new(
            self._seed,
            _identity(payment_id, merchant_id),
            hashlib.sha256,
        ).digest()
        body = hashlib.sha256(digest).digest()[:20].hex()[:32]
        return f"{ADDRESS_PREFIXES[self.network]}{body}"


class AddressRegistry:
    """
    Registry of watched deposit addresses.

    Network is fixed per registry (static configuration).
    """

    def __init__(
        self,
        session: AsyncSession,
        network: str,
        deriver: AddressDeriver,
    ) -> None:
        """Initialize registry."""
        self.session = session
        self.network = network
        self.deriver = deriver
        self.address_repo = WatchedAddressRepository(session)

    @classmethod
    def from_settings(cls, session: AsyncSession, settings) -> "AddressRegistry":
        """Build registry from application settings."""
        return cls(
            session,
            settings.bitcoin_network,
            SeededAddressDeriver(settings.bitcoin_address_seed, settings.bitcoin_network),
        )

    def derive(self, payment_id: str, merchant_id: str) -> str:
        """Derive address without persisting."""
        return self.deriver.derive(payment_id, merchant_id)

    async def allocate(self, payment_id: str, merchant_id: str) -> str:
        """
        Allocate (or return the existing) deposit address.

        Idempotent: repeated calls for the same payment return the same
        address. Runs in the caller's transaction; does not commit.

        Args:
            payment_id: Payment ID
            merchant_id: Merchant ID

        Returns:
            Deposit address

        Raises:
            AddressAllocationError: If the derived address is owned by
                another payment or the stored network differs
        """
        existing = await self.address_repo.get_by_payment_id(payment_id)
        if existing:
            if existing.network != self.network:
                raise AddressAllocationError(
                    f"Payment {payment_id} has a {existing.network} address, "
                    f"registry is configured for {self.network}"
                )
            return existing.address

        address = self.derive(payment_id, merchant_id)

        owner = await self.address_repo.get_by_address(address)
        if owner and owner.payment_id != payment_id:
            raise AddressAllocationError(
                f"Derived address for payment {payment_id} is already "
                f"owned by payment {owner.payment_id}"
            )

        await self.address_repo.create(
            payment_id=payment_id,
            address=address,
            address_type=self.deriver.address_type,
            network=self.network,
            is_monitored=True,
        )

        logger.info(
            f"Allocated deposit address {mask_address(address)} "
            f"for payment {payment_id} on {self.network}"
        )
        return address

    async def get(self, payment_id: str) -> WatchedAddress | None:
        """Get watched address for payment."""
        return await self.address_repo.get_by_payment_id(payment_id)

    async def mark_unmonitored(self, payment_id: str) -> bool:
        """
        Stop polling the payment's address.

        Runs in the caller's transaction so the flag flips atomically with
        the status change that requires it.
        """
        updated = await self.address_repo.set_monitored(payment_id, False)
        if updated:
            logger.debug(f"Stopped monitoring address for payment {payment_id}")
        else:
            logger.warning(f"No watched address to unmonitor for payment {payment_id}")
        return updated
