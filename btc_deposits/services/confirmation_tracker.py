"""
Confirmation tracker.

Turns raw address activity into a settlement view: value received,
confirmation depth, and whether the required depth is reached.
"""

from dataclasses import dataclass, field

from loguru import logger

from btc_deposits.services.chain.client import ChainQueryClient
from btc_deposits.services.chain.types import AddressActivity, ChainUnavailable
from btc_deposits.utils.security import mask_address


@dataclass(frozen=True)
class ConfirmationResult:
    """
    Evaluation of one deposit address.

    Attributes:
        address: Evaluated address
        has_deposit: Any funding seen, mempool included
        total_received: Value of chain-included transactions only
        pending_received: Value of mempool (unconfirmed) transactions
        max_confirmations: Deepest confirmation among chain-included txs
        fully_confirmed: max_confirmations >= required confirmations
        confirmed_tx_ids: Transactions at or beyond the required depth
        settled_received: Value of confirmed_tx_ids
        tip_height: Chain tip at evaluation time
    """

    address: str
    has_deposit: bool
    total_received: int
    pending_received: int
    max_confirmations: int
    fully_confirmed: bool
    confirmed_tx_ids: tuple[str, ...] = field(default_factory=tuple)
    settled_received: int = 0
    tip_height: int = 0

    @property
    def observed_total(self) -> int:
        """Everything visible at the address, for status display."""
        return self.total_received + self.pending_received


class ConfirmationTracker:
    """Evaluates deposit addresses through the chain client."""

    def __init__(
        self, client: ChainQueryClient, required_confirmations: int = 6
    ) -> None:
        """
        Initialize tracker.

        Args:
            client: Chain query client
            required_confirmations: Default depth for full confirmation
        """
        if required_confirmations < 1:
            raise ValueError("required_confirmations must be >= 1")
        self.client = client
        self.required_confirmations = required_confirmations

    async def evaluate(
        self, address: str, required_confirmations: int | None = None
    ) -> ConfirmationResult | ChainUnavailable:
        """
        Evaluate address.

        Args:
            address: Deposit address
            required_confirmations: Override for the configured depth

        Returns:
            ConfirmationResult, or ChainUnavailable when the chain could
            not be queried (no new information, not zero activity)
        """
        required = required_confirmations or self.required_confirmations
        activity = await self.client.fetch_address_activity(address)

        if isinstance(activity, ChainUnavailable):
            logger.debug(
                f"No chain data for {mask_address(address)} this cycle: "
                f"{activity.reason}"
            )
            return activity

        result = self.summarize(activity, required)
        logger.debug(
            f"Address {mask_address(address)}: has_deposit={result.has_deposit}, "
            f"confirmed={result.total_received}, pending={result.pending_received}, "
            f"confirmations={result.max_confirmations}/{required}"
        )
        return result

    @staticmethod
    def summarize(activity: AddressActivity, required: int) -> ConfirmationResult:
        """Aggregate activity into a ConfirmationResult."""
        total_received = 0
        pending_received = 0
        settled_received = 0
        max_confirmations = 0
        confirmed_tx_ids: list[str] = []

        for tx in activity.transactions:
            if not tx.is_confirmed:
                pending_received += tx.value
                continue

            total_received += tx.value
            max_confirmations = max(max_confirmations, tx.confirmations)
            if tx.confirmations >= required:
                confirmed_tx_ids.append(tx.tx_id)
                settled_received += tx.value

        has_deposit = (
            activity.received_total > 0
            or total_received + pending_received > 0
        )

        return ConfirmationResult(
            address=activity.address,
            has_deposit=has_deposit,
            total_received=total_received,
            pending_received=pending_received,
            max_confirmations=max_confirmations,
            fully_confirmed=max_confirmations >= required,
            confirmed_tx_ids=tuple(confirmed_tx_ids),
            settled_received=settled_received,
            tip_height=activity.tip_height,
        )
