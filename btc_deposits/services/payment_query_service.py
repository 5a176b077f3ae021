"""
Payment query service.

Read-only views over persisted state for the request-handling layer.
Never waits on chain polling; callers see the last committed state.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from btc_deposits.repositories.payment_event_repository import (
    PaymentEventRepository,
)
from btc_deposits.repositories.payment_repository import PaymentRepository
from btc_deposits.repositories.watched_address_repository import (
    WatchedAddressRepository,
)
from btc_deposits.services.chain.client import ChainQueryClient
from btc_deposits.services.chain.types import ChainUnavailable
from btc_deposits.utils.datetime_utils import as_utc, utc_now
from btc_deposits.utils.exceptions import PaymentNotFoundError
from btc_deposits.utils.explorer import (
    address_explorer_url,
    payment_uri,
    qr_code_url,
    tx_explorer_url,
)


@dataclass(frozen=True)
class PaymentStatusView:
    """Status snapshot of one payment."""

    payment_id: str
    status: str
    observed_received: int
    max_confirmations: int
    required_confirmations: int
    confirmed_received: int
    confirmed_tx_ids: tuple[str, ...]
    mint_attempts: int
    last_mint_error: str | None
    expires_at: str
    last_checked_at: str | None


@dataclass(frozen=True)
class DepositAddressView:
    """Deposit address with wallet and explorer links."""

    payment_id: str
    address: str
    address_type: str
    network: str
    is_monitored: bool
    payment_uri: str
    qr_code_url: str
    explorer_url: str


class PaymentQueryService:
    """Status, address and statistics queries."""

    def __init__(
        self,
        session: AsyncSession,
        required_confirmations: int = 6,
        mint_claim_stale_seconds: float = 600.0,
    ) -> None:
        self.session = session
        self.required_confirmations = required_confirmations
        self.mint_claim_stale_seconds = mint_claim_stale_seconds
        self.payment_repo = PaymentRepository(session)
        self.address_repo = WatchedAddressRepository(session)
        self.event_repo = PaymentEventRepository(session)

    @classmethod
    def from_settings(cls, session: AsyncSession, settings) -> "PaymentQueryService":
        return cls(
            session,
            required_confirmations=settings.required_confirmations,
            mint_claim_stale_seconds=settings.mint_claim_stale_seconds,
        )

    async def get_address_for(self, payment_id: str) -> DepositAddressView:
        """
        Get deposit address for payment.

        Raises:
            PaymentNotFoundError: If payment or its address does not exist
        """
        payment = await self.payment_repo.get(payment_id)
        if payment is None or payment.watched_address is None:
            raise PaymentNotFoundError(payment_id)

        watched = payment.watched_address
        uri = payment_uri(watched.address, payment.requested_amount)
        return DepositAddressView(
            payment_id=payment_id,
            address=watched.address,
            address_type=watched.address_type,
            network=watched.network,
            is_monitored=watched.is_monitored,
            payment_uri=uri,
            qr_code_url=qr_code_url(uri),
            explorer_url=address_explorer_url(watched.network, watched.address),
        )

    async def get_status(self, payment_id: str) -> PaymentStatusView:
        """
        Get payment status.

        Raises:
            PaymentNotFoundError: If payment does not exist
        """
        payment = await self.payment_repo.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)

        return PaymentStatusView(
            payment_id=payment.payment_id,
            status=payment.status,
            observed_received=payment.observed_received,
            max_confirmations=payment.max_confirmations,
            required_confirmations=self.required_confirmations,
            confirmed_received=payment.confirmed_received,
            confirmed_tx_ids=tuple(payment.confirmed_tx_ids or ()),
            mint_attempts=payment.mint_attempts,
            last_mint_error=payment.last_mint_error,
            expires_at=as_utc(payment.expires_at).isoformat(),
            last_checked_at=(
                as_utc(payment.last_checked_at).isoformat()
                if payment.last_checked_at
                else None
            ),
        )

    async def get_transactions(self, payment_id: str) -> list[dict[str, str | None]]:
        """Confirmed transactions of a payment with explorer links."""
        payment = await self.payment_repo.get(payment_id)
        if payment is None or payment.watched_address is None:
            raise PaymentNotFoundError(payment_id)

        network = payment.watched_address.network
        return [
            {"tx_id": tx_id, "explorer_url": tx_explorer_url(network, tx_id)}
            for tx_id in payment.confirmed_tx_ids or []
        ]

    async def get_events(self, payment_id: str) -> list[dict[str, Any]]:
        """Get state-change history for payment, oldest first."""
        events = await self.event_repo.list_for_payment(payment_id)
        return [
            {
                "event_type": event.event_type,
                "from_status": event.from_status,
                "to_status": event.to_status,
                "data": event.event_data,
                "created_at": as_utc(event.created_at).isoformat(),
            }
            for event in events
        ]

    async def get_service_stats(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Address and payment counters.

        stale_mint_claims counts confirmed payments whose mint claim is
        older than mint_claim_stale_seconds; these need a forced re-trigger.
        """
        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.mint_claim_stale_seconds)
        stats = await self.address_repo.get_stats()
        stats["payments_by_status"] = await self.payment_repo.count_by_status()
        stats["stale_mint_claims"] = await self.payment_repo.count_stale_mint_claims(
            cutoff
        )
        return stats


async def get_network_status(client: ChainQueryClient, settings) -> dict[str, Any]:
    """
    Network status for monitoring dashboards.

    Args:
        client: Chain query client
        settings: Application settings

    Returns:
        Dict with network, tip height (None if unavailable) and policy
    """
    tip = await client.fetch_tip_height()
    available = not isinstance(tip, ChainUnavailable)
    return {
        "network": settings.bitcoin_network,
        "api_endpoint": client.base_url,
        "available": available,
        "block_height": tip if available else None,
        "error": None if available else tip.reason,
        "required_confirmations": settings.required_confirmations,
    }
