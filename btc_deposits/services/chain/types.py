"""
Chain query result types.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ChainTransaction:
    """Funding transaction observed at an address."""

    tx_id: str
    value: int
    confirmations: int
    block_height: int | None = None

    @property
    def is_confirmed(self) -> bool:
        """True when the transaction is included in a block."""
        return self.block_height is not None and self.confirmations > 0


@dataclass(frozen=True)
class AddressActivity:
    """Activity summary for one address."""

    address: str
    received_total: int
    tip_height: int
    transactions: list[ChainTransaction] = field(default_factory=list)

    @classmethod
    def empty(cls, address: str, tip_height: int) -> "AddressActivity":
        """Activity of an address that was never used."""
        return cls(address=address, received_total=0, tip_height=tip_height)


@dataclass(frozen=True)
class ChainUnavailable:
    """
    Chain explorer could not be reached within the retry budget.

    Means "no new information this cycle", never "zero activity".
    """

    reason: str
    attempts: int = 0
    rate_limited: bool = False
