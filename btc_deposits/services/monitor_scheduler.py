"""
Monitor scheduler.

Periodic driver for deposit monitoring. Each tick runs three phases:

1. expire   - overdue unsettled payments move to expired
2. observe  - active payments are polled and transitions applied
3. mint     - confirmed payments are handed to the mint trigger

Observation fans out over a bounded worker pool with a per-item
timeout, so one stuck chain query cannot stall the rest of the batch.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from btc_deposits.config.constants import MINT_BATCH_SIZE
from btc_deposits.models.enums import OBSERVABLE_STATUSES, PaymentStatus
from btc_deposits.repositories.payment_repository import PaymentRepository
from btc_deposits.services.chain.types import ChainUnavailable
from btc_deposits.services.confirmation_tracker import ConfirmationTracker
from btc_deposits.services.mint_trigger import MintTrigger
from btc_deposits.services.payment_state_machine import (
    PaymentStateMachine,
    TransitionResult,
)
from btc_deposits.utils.datetime_utils import as_utc, utc_now
from btc_deposits.utils.exceptions import MintTriggerError
from btc_deposits.utils.security import mask_address


@dataclass
class TickStats:
    """Counters for one scheduler tick."""

    started_at: datetime | None = None
    finished_at: datetime | None = None
    scanned: int = 0
    detected: int = 0
    confirmed: int = 0
    expired: int = 0
    unavailable: int = 0
    conflicts: int = 0
    failed: int = 0
    timed_out: int = 0
    mints_triggered: int = 0
    mints_failed: int = 0

    def record(self, result: TransitionResult) -> None:
        """Fold a transition result into the counters."""
        if result.reason == "chain_unavailable":
            self.unavailable += 1
        elif result.reason == "conflict":
            self.conflicts += 1
        if not result.changed:
            return
        if result.to_status == PaymentStatus.DEPOSIT_DETECTED.value:
            self.detected += 1
        elif result.to_status == PaymentStatus.DEPOSIT_CONFIRMED.value:
            if result.from_status == PaymentStatus.AWAITING_DEPOSIT.value:
                self.detected += 1
            self.confirmed += 1
        elif result.to_status == PaymentStatus.EXPIRED.value:
            self.expired += 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("started_at", "finished_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class SchedulerState:
    """Loop state reported by health checks."""

    running: bool = False
    ticks: int = 0
    last_tick: TickStats | None = None
    last_error: str | None = None
    consecutive_failures: int = 0


class MonitorScheduler:
    """
    Recurring, bounded-concurrency deposit monitor.

    Usage:
        scheduler = MonitorScheduler(session_maker, tracker, settings, mint_trigger)
        stop = asyncio.Event()
        await scheduler.run(stop)   # returns once stop is set
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        tracker: ConfirmationTracker,
        settings,
        mint_trigger: MintTrigger | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            session_maker: Factory for per-item database sessions
            tracker: Confirmation tracker
            settings: Application settings
            mint_trigger: Downstream mint trigger (mint phase skipped if None)
            clock: Time source (injectable for tests)
            sleep: Sleep coroutine for inter-item staggering
        """
        self.session_maker = session_maker
        self.tracker = tracker
        self.settings = settings
        self.mint_trigger = mint_trigger
        self.clock = clock
        self._sleep = sleep
        self.state = SchedulerState()

    def _state_machine(self, session: AsyncSession) -> PaymentStateMachine:
        return PaymentStateMachine.from_settings(session, self.settings)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Run ticks on a fixed interval until stop_event is set.

        The first tick is delayed to avoid a burst of chain queries right
        after a restart. A tick in progress completes before the loop
        returns.
        """
        delay = self.settings.startup_delay_seconds
        interval = self.settings.monitor_interval_seconds
        self.state.running = True
        logger.info(
            f"Bitcoin deposit monitor starting in {delay:.0f}s "
            f"(interval={interval:.0f}s, batch={self.settings.monitor_batch_size}, "
            f"concurrency={self.settings.monitor_max_concurrency}, "
            f"network={self.settings.bitcoin_network})"
        )

        try:
            if await self._wait(stop_event, delay):
                return

            while not stop_event.is_set():
                try:
                    await self.tick()
                    self.state.consecutive_failures = 0
                    self.state.last_error = None
                except Exception as e:
                    self.state.consecutive_failures += 1
                    self.state.last_error = str(e)
                    logger.exception(f"Deposit monitor tick failed: {e}")

                if await self._wait(stop_event, interval):
                    break
        finally:
            self.state.running = False
            logger.info("Bitcoin deposit monitor stopped")

    @staticmethod
    async def _wait(stop_event: asyncio.Event, timeout: float) -> bool:
        """Sleep up to timeout; True if stop was requested."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    async def tick(self) -> TickStats:
        """Run one expire / observe / mint pass."""
        stats = TickStats(started_at=self.clock())

        await self._expire_phase(stats)
        await self._observe_phase(stats)
        if self.mint_trigger is not None:
            await self._mint_phase(stats)

        stats.finished_at = self.clock()
        self.state.ticks += 1
        self.state.last_tick = stats

        logger.info(
            f"Deposit monitor tick: scanned={stats.scanned}, "
            f"detected={stats.detected}, confirmed={stats.confirmed}, "
            f"expired={stats.expired}, unavailable={stats.unavailable}, "
            f"conflicts={stats.conflicts}, "
            f"failed={stats.failed + stats.timed_out}, "
            f"mints={stats.mints_triggered}/{stats.mints_triggered + stats.mints_failed}"
        )
        return stats

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _expire_phase(self, stats: TickStats) -> None:
        now = self.clock()
        async with self.session_maker() as session:
            overdue = await PaymentRepository(session).scan_overdue(
                self.settings.monitor_batch_size, now=now
            )
            payment_ids = [p.payment_id for p in overdue]

        for payment_id in payment_ids:
            try:
                result = await self._expire_one(payment_id, now)
                if result is not None:
                    stats.record(result)
            except Exception as e:
                stats.failed += 1
                logger.exception(f"Failed to expire payment {payment_id}: {e}")

    async def _expire_one(
        self, payment_id: str, now: datetime
    ) -> TransitionResult | None:
        """
        Expire one overdue payment.

        A detected deposit gets one last look at the chain first, so a
        deposit that reached full depth right at the deadline is honored.
        """
        async with self.session_maker() as session:
            machine = self._state_machine(session)
            payment = await machine.load(payment_id)

            if payment.status == PaymentStatus.DEPOSIT_DETECTED.value:
                result = await self.tracker.evaluate(payment.deposit_address)
                if isinstance(result, ChainUnavailable):
                    logger.debug(
                        f"Deferring expiry of payment {payment_id}: "
                        f"chain unavailable ({result.reason})"
                    )
                    return TransitionResult(
                        payment_id, payment.status, payment.status,
                        applied=False, reason="chain_unavailable",
                    )
                observed = await machine.apply_observation(payment, result, now=now)
                if observed.changed:
                    return observed
                payment = await machine.load(payment_id)

            if payment.status not in OBSERVABLE_STATUSES:
                return None
            return await machine.expire(payment, now=now)

    async def _observe_phase(self, stats: TickStats) -> None:
        now = self.clock()
        async with self.session_maker() as session:
            active = await PaymentRepository(session).scan_active(
                self.settings.monitor_batch_size, now=now
            )
            payment_ids = [p.payment_id for p in active]

        stats.scanned = len(payment_ids)
        if not payment_ids:
            return

        semaphore = asyncio.Semaphore(self.settings.monitor_max_concurrency)
        item_delay = self.settings.monitor_item_delay_seconds

        async def worker(index: int, payment_id: str) -> None:
            if item_delay:
                # Stagger launches to respect explorer rate limits
                await self._sleep(index * item_delay)
            async with semaphore:
                try:
                    result = await asyncio.wait_for(
                        self.process_payment(payment_id),
                        timeout=self.settings.monitor_item_timeout_seconds,
                    )
                    stats.record(result)
                except TimeoutError:
                    stats.timed_out += 1
                    logger.warning(
                        f"Monitoring payment {payment_id} timed out after "
                        f"{self.settings.monitor_item_timeout_seconds:.0f}s"
                    )
                except Exception as e:
                    stats.failed += 1
                    logger.exception(f"Error monitoring payment {payment_id}: {e}")

        await asyncio.gather(
            *(worker(i, payment_id) for i, payment_id in enumerate(payment_ids))
        )

    async def _mint_phase(self, stats: TickStats) -> None:
        async with self.session_maker() as session:
            pending = await PaymentRepository(session).scan_mint_pending(
                MINT_BATCH_SIZE, self.settings.mint_max_attempts
            )
            payment_ids = [p.payment_id for p in pending]

        for payment_id in payment_ids:
            try:
                result = await self.trigger_mint(payment_id)
            except Exception as e:
                stats.failed += 1
                logger.exception(f"Mint phase failed for payment {payment_id}: {e}")
                continue
            if result.changed and result.to_status == PaymentStatus.MINT_TRIGGERED.value:
                stats.mints_triggered += 1
            elif result.reason == "mint_failed":
                stats.mints_failed += 1
            elif result.reason == "conflict":
                stats.conflicts += 1

    # ------------------------------------------------------------------
    # Single-payment operations
    # ------------------------------------------------------------------

    async def process_payment(self, payment_id: str) -> TransitionResult:
        """
        Run one observe-and-transition pass for a payment.

        Also serves the manual "check now" path. Expired-by-time payments
        are left for the expire phase.

        Raises:
            PaymentNotFoundError: If payment does not exist
        """
        now = self.clock()
        async with self.session_maker() as session:
            machine = self._state_machine(session)
            payment = await machine.load(payment_id)

            if payment.status not in OBSERVABLE_STATUSES:
                return TransitionResult(
                    payment_id, payment.status, payment.status,
                    applied=False, reason="not_observable",
                )
            if now > as_utc(payment.expires_at):
                return TransitionResult(
                    payment_id, payment.status, payment.status,
                    applied=False, reason="overdue",
                )

            result = await self.tracker.evaluate(payment.deposit_address)
            if isinstance(result, ChainUnavailable):
                logger.debug(
                    f"Chain unavailable for {mask_address(payment.deposit_address)} "
                    f"(payment {payment_id}): {result.reason}"
                )
            return await machine.apply_observation(payment, result, now=now)

    async def trigger_mint(
        self, payment_id: str, *, manual: bool = False, force: bool = False
    ) -> TransitionResult:
        """
        Hand a confirmed payment to the mint trigger.

        Raises:
            MintTriggerError: If no mint trigger is configured
            PaymentNotFoundError: If payment does not exist
        """
        if self.mint_trigger is None:
            raise MintTriggerError("Mint trigger is not configured")

        async with self.session_maker() as session:
            machine = self._state_machine(session)
            return await machine.trigger_mint(
                payment_id,
                self.mint_trigger,
                manual=manual,
                force=force,
                now=self.clock(),
            )

    async def retry_pending_mints(self) -> TickStats:
        """Run the mint phase on its own, outside a full tick."""
        stats = TickStats(started_at=self.clock())
        if self.mint_trigger is not None:
            await self._mint_phase(stats)
        stats.finished_at = self.clock()
        return stats

    async def retrigger_mint(
        self, payment_id: str, force: bool = False
    ) -> TransitionResult:
        """Operator re-trigger for confirmed or mint_failed payments."""
        logger.info(f"Manual mint re-trigger requested for payment {payment_id}")
        return await self.trigger_mint(payment_id, manual=True, force=force)

    def health(self) -> dict[str, Any]:
        """Snapshot of loop state for health endpoints."""
        last = self.state.last_tick
        return {
            "running": self.state.running,
            "ticks": self.state.ticks,
            "consecutive_failures": self.state.consecutive_failures,
            "last_error": self.state.last_error,
            "last_tick": last.to_dict() if last else None,
            "mint_enabled": self.mint_trigger is not None,
        }
