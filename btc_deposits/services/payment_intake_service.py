"""
Payment intake service.

Creates a payment record together with its watched deposit address in
one transaction.
"""

from datetime import datetime

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from btc_deposits.models.enums import PaymentEventType, PaymentStatus
from btc_deposits.models.payment import PaymentRecord
from btc_deposits.repositories.payment_event_repository import (
    PaymentEventRepository,
)
from btc_deposits.repositories.payment_repository import PaymentRepository
from btc_deposits.services.address_registry import AddressRegistry
from btc_deposits.utils.datetime_utils import as_utc
from btc_deposits.utils.exceptions import AddressAllocationError
from btc_deposits.utils.security import mask_address


class PaymentIntakeService:
    """Registers new payment requests."""

    def __init__(self, session: AsyncSession, registry: AddressRegistry) -> None:
        self.session = session
        self.registry = registry
        self.payment_repo = PaymentRepository(session)
        self.event_repo = PaymentEventRepository(session)

    @classmethod
    def from_settings(cls, session: AsyncSession, settings) -> "PaymentIntakeService":
        return cls(session, AddressRegistry.from_settings(session, settings))

    async def create_payment(
        self,
        payment_id: str,
        merchant_id: str,
        requested_amount: int,
        expires_at: datetime,
    ) -> PaymentRecord:
        """
        Create payment in awaiting_deposit with an allocated address.

        Idempotent on payment_id: an existing payment is returned as is.

        Args:
            payment_id: Externally assigned payment ID
            merchant_id: Merchant ID
            requested_amount: Requested amount in satoshis
            expires_at: Deadline for the deposit

        Returns:
            Payment record

        Raises:
            ValueError: If the amount is not positive
            AddressAllocationError: If the address cannot be allocated, or
                the payment exists for a different merchant
        """
        if requested_amount <= 0:
            raise ValueError("requested_amount must be positive")

        existing = await self.payment_repo.get(payment_id)
        if existing is not None:
            if existing.merchant_id != merchant_id:
                raise AddressAllocationError(
                    f"Payment {payment_id} already exists for another merchant"
                )
            return existing

        address = self.registry.derive(payment_id, merchant_id)
        owner = await self.payment_repo.get_by(deposit_address=address)
        if owner is not None:
            raise AddressAllocationError(
                f"Derived address for payment {payment_id} is already "
                f"owned by payment {owner.payment_id}"
            )

        try:
            payment = await self.payment_repo.create(
                payment_id=payment_id,
                merchant_id=merchant_id,
                requested_amount=requested_amount,
                status=PaymentStatus.AWAITING_DEPOSIT.value,
                expires_at=as_utc(expires_at),
                deposit_address=address,
                observed_received=0,
                confirmed_received=0,
                max_confirmations=0,
                confirmed_tx_ids=[],
                mint_attempts=0,
            )
            await self.registry.allocate(payment_id, merchant_id)
            await self.event_repo.record(
                payment_id,
                PaymentEventType.CREATED,
                to_status=PaymentStatus.AWAITING_DEPOSIT.value,
                data={
                    "merchant_id": merchant_id,
                    "requested_amount": requested_amount,
                    "address": address,
                    "network": self.registry.network,
                },
            )
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            logger.error(
                f"Integrity constraint violation creating payment {payment_id}: {e}"
            )
            raise AddressAllocationError(
                f"Payment {payment_id} or its deposit address already exists"
            ) from e
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            f"Created payment {payment_id} for merchant {merchant_id}: "
            f"{requested_amount} sats to {mask_address(address)}"
        )
        return await self.payment_repo.get(payment_id) or payment
