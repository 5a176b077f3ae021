"""
Chain query client.

Stateless HTTP client over the Esplora block-explorer API
(Blockstream). Owns timeouts, retry/backoff and rate-limit handling;
never raises on network failure, returns ChainUnavailable instead.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import aiohttp
from loguru import logger

from btc_deposits.config.constants import (
    CHAIN_API_USER_AGENT,
    CHAIN_RETRYABLE_STATUSES,
)
from btc_deposits.services.chain.backoff import BackoffPolicy
from btc_deposits.services.chain.types import (
    AddressActivity,
    ChainTransaction,
    ChainUnavailable,
)
from btc_deposits.utils.security import mask_address


class _NotFound:
    """Marker for HTTP 404 responses."""

    pass


NOT_FOUND = _NotFound()


class ChainQueryClient:
    """
    Client for the chain explorer API.

    Endpoints used:
    - GET /blocks/tip/height
    - GET /address/{address}
    - GET /address/{address}/utxo
    - GET /tx/{txid}

    Usage:
        async with ChainQueryClient(base_url, backoff=policy) as client:
            activity = await client.fetch_address_activity(address)
            if isinstance(activity, ChainUnavailable):
                ...  # no new information this cycle
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        backoff: BackoffPolicy | None = None,
        rate_limit_default_wait: float = 60.0,
        rate_limit_max_wait: float = 120.0,
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize chain client.

        Args:
            base_url: Explorer API base URL
            timeout: Hard timeout per HTTP request (seconds)
            backoff: Retry policy shared by all endpoints
            rate_limit_default_wait: Cool-down on 429 without Retry-After
            rate_limit_max_wait: Ceiling for any 429 cool-down
            session: Optional externally managed aiohttp session
            sleep: Sleep coroutine (injectable for tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.backoff = backoff or BackoffPolicy()
        self.rate_limit_default_wait = rate_limit_default_wait
        self.rate_limit_max_wait = rate_limit_max_wait
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "ChainQueryClient":
        """Build client from application settings."""
        return cls(
            settings.chain_api_base_url,
            timeout=settings.chain_request_timeout_seconds,
            backoff=BackoffPolicy.from_settings(settings),
            rate_limit_default_wait=settings.chain_rate_limit_default_wait_seconds,
            rate_limit_max_wait=settings.chain_rate_limit_max_wait_seconds,
        )

    async def __aenter__(self) -> "ChainQueryClient":
        await self._get_session()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": CHAIN_API_USER_AGENT}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def _retry_after(self, header: str | None) -> float:
        """
        Parse Retry-After header (delta-seconds or HTTP-date).

        Falls back to the default cool-down when absent or malformed.
        """
        wait = self.rate_limit_default_wait
        if header:
            header = header.strip()
            if header.isdigit():
                wait = float(header)
            else:
                try:
                    retry_at = parsedate_to_datetime(header)
                    wait = (retry_at - datetime.now(UTC)).total_seconds()
                except (TypeError, ValueError):
                    logger.debug(f"Malformed Retry-After header: {header!r}")
        return max(0.0, min(wait, self.rate_limit_max_wait))

    async def _get(self, path: str, *, as_text: bool = False) -> Any:
        """
        GET with retries.

        Returns:
            Parsed JSON (or text), NOT_FOUND on 404, or ChainUnavailable
            once the retry budget is exhausted.
        """
        url = f"{self.base_url}{path}"
        rate_limited = False
        last_error = "no attempt made"
        attempt = 0

        while True:
            attempt += 1
            delay: float | None = None

            try:
                session = await self._get_session()
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status == 404:
                        return NOT_FOUND

                    if response.status == 200:
                        if as_text:
                            return (await response.text()).strip()
                        return await response.json(content_type=None)

                    if response.status == 429:
                        rate_limited = True
                        last_error = "HTTP 429 rate limited"
                        delay = max(
                            self._retry_after(response.headers.get("Retry-After")),
                            self.backoff.delay_for(attempt),
                        )
                        delay = min(delay, self.rate_limit_max_wait)
                        logger.warning(
                            f"Chain API rate limited on {path.split('/')[1]} "
                            f"(attempt {attempt}/{self.backoff.max_attempts}), "
                            f"cooling down {delay:.1f}s"
                        )
                    elif (
                        response.status in CHAIN_RETRYABLE_STATUSES
                        or response.status >= 500
                    ):
                        last_error = f"HTTP {response.status}"
                    else:
                        # Other 4xx will not improve with retries
                        logger.warning(
                            f"Chain API rejected request {path}: HTTP {response.status}"
                        )
                        return ChainUnavailable(
                            reason=f"HTTP {response.status}",
                            attempts=attempt,
                            rate_limited=rate_limited,
                        )

            except TimeoutError:
                last_error = f"timeout after {self.timeout}s"
            except aiohttp.ClientError as e:
                last_error = f"{type(e).__name__}: {e}"
            except ValueError as e:
                # Malformed JSON body
                last_error = f"invalid response body: {e}"

            if not self.backoff.has_attempts_left(attempt):
                break

            if delay is None:
                delay = self.backoff.delay_for(attempt)
                logger.warning(
                    f"Chain API request failed "
                    f"(attempt {attempt}/{self.backoff.max_attempts}): "
                    f"{last_error}. Retrying in {delay:.1f}s..."
                )
            await self._sleep(delay)

        logger.warning(
            f"Chain API unavailable after {attempt} attempts: {last_error}"
        )
        return ChainUnavailable(
            reason=last_error, attempts=attempt, rate_limited=rate_limited
        )

    async def fetch_tip_height(self) -> int | ChainUnavailable:
        """
        Get current chain tip height.

        Returns:
            Block height or ChainUnavailable
        """
        result = await self._get("/blocks/tip/height", as_text=True)
        if isinstance(result, ChainUnavailable):
            return result
        if result is NOT_FOUND:
            return ChainUnavailable(reason="tip height endpoint not found")
        try:
            return int(result)
        except ValueError:
            return ChainUnavailable(reason=f"invalid tip height: {result!r}")

    @staticmethod
    def confirmations_at(tip_height: int, block_height: int | None) -> int:
        """Confirmation count: tip - block + 1 when mined, else 0."""
        if block_height is None:
            return 0
        return max(0, tip_height - block_height + 1)

    async def fetch_transaction_confirmations(
        self, tx_id: str, tip_height: int | None = None
    ) -> int | ChainUnavailable:
        """
        Get confirmation depth of a transaction.

        Args:
            tx_id: Transaction ID
            tip_height: Known tip height (fetched when omitted)

        Returns:
            Confirmation count (0 if unconfirmed or unknown) or ChainUnavailable
        """
        tx = await self._get(f"/tx/{tx_id}")
        if isinstance(tx, ChainUnavailable):
            return tx
        if tx is NOT_FOUND:
            return 0

        status = tx.get("status") or {}
        if not status.get("confirmed"):
            return 0

        if tip_height is None:
            tip = await self.fetch_tip_height()
            if isinstance(tip, ChainUnavailable):
                return tip
            tip_height = tip

        return self.confirmations_at(tip_height, status.get("block_height"))

    async def fetch_address_activity(
        self, address: str
    ) -> AddressActivity | ChainUnavailable:
        """
        Get funding activity for an address.

        An address that was never used (404) yields empty activity.

        Args:
            address: Bitcoin address

        Returns:
            AddressActivity or ChainUnavailable
        """
        tip_height = await self.fetch_tip_height()
        if isinstance(tip_height, ChainUnavailable):
            return tip_height

        summary = await self._get(f"/address/{address}")
        if isinstance(summary, ChainUnavailable):
            return summary
        if summary is NOT_FOUND:
            logger.debug(f"Address {mask_address(address)} has no activity yet")
            return AddressActivity.empty(address, tip_height)

        chain_stats = summary.get("chain_stats") or {}
        mempool_stats = summary.get("mempool_stats") or {}
        received_total = int(chain_stats.get("funded_txo_sum", 0)) + int(
            mempool_stats.get("funded_txo_sum", 0)
        )

        utxos = await self._get(f"/address/{address}/utxo")
        if isinstance(utxos, ChainUnavailable):
            return utxos
        if utxos is NOT_FOUND:
            utxos = []

        transactions = await self._aggregate_utxos(utxos, tip_height)
        if isinstance(transactions, ChainUnavailable):
            return transactions

        return AddressActivity(
            address=address,
            received_total=received_total,
            tip_height=tip_height,
            transactions=transactions,
        )

    async def _aggregate_utxos(
        self, utxos: list[dict[str, Any]], tip_height: int
    ) -> list[ChainTransaction] | ChainUnavailable:
        """Merge outputs of the same transaction and compute depth."""
        values: dict[str, int] = {}
        heights: dict[str, int | None] = {}
        confirmed: dict[str, bool] = {}

        for utxo in utxos:
            tx_id = utxo["txid"]
            status = utxo.get("status") or {}
            values[tx_id] = values.get(tx_id, 0) + int(utxo.get("value", 0))
            heights[tx_id] = status.get("block_height")
            confirmed[tx_id] = bool(status.get("confirmed"))

        transactions = []
        for tx_id, value in values.items():
            block_height = heights[tx_id] if confirmed[tx_id] else None
            if confirmed[tx_id] and block_height is None:
                # Mined but height missing from the listing
                depth = await self.fetch_transaction_confirmations(tx_id, tip_height)
                if isinstance(depth, ChainUnavailable):
                    return depth
                if depth > 0:
                    block_height = tip_height - depth + 1
            transactions.append(
                ChainTransaction(
                    tx_id=tx_id,
                    value=value,
                    confirmations=self.confirmations_at(tip_height, block_height),
                    block_height=block_height,
                )
            )
        return transactions
