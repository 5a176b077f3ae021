"""Test doubles and builders shared across test modules."""

import asyncio

from btc_deposits.services.chain.types import (
    AddressActivity,
    ChainTransaction,
    ChainUnavailable,
)
from btc_deposits.services.mint_trigger import MintResult


TIP_HEIGHT = 800_000


class FakeChainClient:
    """
    Scripted chain client.

    Each address maps to a queue of results; the last result repeats once
    the queue is drained. Unknown addresses have no activity.
    """

    def __init__(self) -> None:
        self.base_url = "https://explorer.test/api"
        self.scripts: dict[str, list] = {}
        self.calls: list[str] = []

    def script(self, address: str, *results) -> None:
        self.scripts[address] = list(results)

    async def fetch_address_activity(self, address: str):
        self.calls.append(address)
        queue = self.scripts.get(address)
        if not queue:
            return AddressActivity.empty(address, TIP_HEIGHT)
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_tip_height(self):
        return TIP_HEIGHT

    async def close(self) -> None:
        pass


class FakeMintTrigger:
    """
    Mint trigger returning scripted results and recording calls.

    delay keeps the call in flight, like a slow downstream service.
    """

    def __init__(self, *results: MintResult, delay: float = 0.0) -> None:
        self.results = list(results) or [MintResult.ok("mint-ref")]
        self.delay = delay
        self.calls: list[tuple[str, int, list[str]]] = []

    async def trigger_mint(self, payment_id, confirmed_total, confirmed_tx_ids):
        self.calls.append((payment_id, confirmed_total, list(confirmed_tx_ids)))
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        pass


def activity(address: str, *txs: tuple[str, int, int]) -> AddressActivity:
    """
    Build address activity from (tx_id, value, confirmations) tuples.

    confirmations=0 means the transaction is still in the mempool.
    """
    transactions = [
        ChainTransaction(
            tx_id=tx_id,
            value=value,
            confirmations=confirmations,
            block_height=(TIP_HEIGHT - confirmations + 1) if confirmations else None,
        )
        for tx_id, value, confirmations in txs
    ]
    return AddressActivity(
        address=address,
        received_total=sum(value for _, value, _ in txs),
        tip_height=TIP_HEIGHT,
        transactions=transactions,
    )


def unavailable(reason: str = "HTTP 429 rate limited") -> ChainUnavailable:
    return ChainUnavailable(reason=reason, attempts=3, rate_limited="429" in reason)


