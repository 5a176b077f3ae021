"""
Mint trigger.

Boundary to the downstream token issuance service. The receiving side
is assumed idempotent on payment_id; this side guarantees at most one
automatic call per confirmed transition.
"""

from dataclasses import dataclass
from typing import Protocol

import aiohttp
from loguru import logger


@dataclass(frozen=True)
class MintResult:
    """Outcome of a mint trigger call."""

    success: bool
    reference: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, reference: str | None = None) -> "MintResult":
        return cls(success=True, reference=reference)

    @classmethod
    def failed(cls, error: str) -> "MintResult":
        return cls(success=False, error=error)


class MintTrigger(Protocol):
    """Requests issuance of the pegged token for a confirmed deposit."""

    async def trigger_mint(
        self,
        payment_id: str,
        confirmed_total: int,
        confirmed_tx_ids: list[str],
    ) -> MintResult:
        ...


class HttpMintTrigger:
    """
    Mint trigger over HTTP.

    POSTs {payment_id, confirmed_total, confirmed_tx_ids} as JSON with
    the payment ID as Idempotency-Key. Any 2xx is success.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """
        Initialize HTTP mint trigger.

        Args:
            url: Mint endpoint URL
            timeout: Request timeout in seconds
            session: Optional externally managed aiohttp session
        """
        self.url = url
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this trigger created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def trigger_mint(
        self,
        payment_id: str,
        confirmed_total: int,
        confirmed_tx_ids: list[str],
    ) -> MintResult:
        """Send mint request."""
        payload = {
            "payment_id": payment_id,
            "confirmed_total": confirmed_total,
            "confirmed_tx_ids": confirmed_tx_ids,
        }

        try:
            session = await self._get_session()
            async with session.post(
                self.url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Idempotency-Key": payment_id},
            ) as response:
                if 200 <= response.status < 300:
                    reference = None
                    if response.content_type == "application/json":
                        data = await response.json()
                        if isinstance(data, dict):
                            reference = data.get("reference") or data.get("tx_id")
                    logger.info(
                        f"Mint triggered for payment {payment_id}: "
                        f"{confirmed_total} sats, reference={reference}"
                    )
                    return MintResult.ok(reference)

                body = (await response.text())[:500]
                return MintResult.failed(f"HTTP {response.status}: {body}")

        except TimeoutError:
            return MintResult.failed(f"timeout after {self.timeout}s")
        except aiohttp.ClientError as e:
            return MintResult.failed(f"{type(e).__name__}: {e}")


def build_mint_trigger(settings) -> HttpMintTrigger | None:
    """
    Build mint trigger from settings.

    Returns:
        HttpMintTrigger, or None when MINT_TRIGGER_URL is not configured
    """
    if not settings.mint_trigger_url:
        return None
    return HttpMintTrigger(
        settings.mint_trigger_url,
        timeout=settings.mint_trigger_timeout_seconds,
    )
