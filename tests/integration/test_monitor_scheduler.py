"""Integration tests for the monitor scheduler."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from btc_deposits.models.enums import PaymentStatus
from btc_deposits.models.watched_address import WatchedAddress
from btc_deposits.repositories.payment_repository import PaymentRepository
from btc_deposits.services.confirmation_tracker import ConfirmationTracker
from btc_deposits.services.mint_trigger import MintResult
from btc_deposits.services.monitor_scheduler import MonitorScheduler
from btc_deposits.services.payment_state_machine import PaymentStateMachine
from btc_deposits.utils.datetime_utils import utc_now
from btc_deposits.utils.exceptions import MintTriggerError
from tests.helpers import FakeMintTrigger, activity, unavailable


async def load(session_maker, payment_id):
    async with session_maker() as session:
        return await PaymentRepository(session).get(payment_id)


@pytest.fixture
def scheduler(session_maker, tracker, test_settings, mint_trigger):
    return MonitorScheduler(session_maker, tracker, test_settings, mint_trigger=mint_trigger)


class TestTick:
    """Tests for a single scheduler tick."""

    @pytest.mark.asyncio
    async def test_detect_confirm_and_mint(
        self, scheduler, create_payment, session_maker, chain_client, mint_trigger
    ):
        payment = await create_payment("pay-1")
        address = payment.deposit_address
        chain_client.script(
            address,
            activity(address, ("tx-1", 50_000, 0)),
            activity(address, ("tx-1", 50_000, 2)),
        )

        first = await scheduler.tick()
        stored = await load(session_maker, "pay-1")
        assert first.detected == 1
        assert stored.status == PaymentStatus.DEPOSIT_DETECTED.value
        assert stored.observed_received == 50_000
        assert mint_trigger.calls == []

        second = await scheduler.tick()
        stored = await load(session_maker, "pay-1")
        assert second.confirmed == 1
        assert second.mints_triggered == 1
        assert stored.status == PaymentStatus.MINT_TRIGGERED.value
        assert mint_trigger.calls == [("pay-1", 50_000, ["tx-1"])]

        # Settled address is no longer polled
        await scheduler.tick()
        assert chain_client.calls.count(address) == 2
        assert len(mint_trigger.calls) == 1

    @pytest.mark.asyncio
    async def test_overdue_payment_expires_without_mint(
        self, scheduler, create_payment, session_maker, chain_client, mint_trigger
    ):
        await create_payment("pay-late", expires_in=timedelta(minutes=-1))

        stats = await scheduler.tick()

        stored = await load(session_maker, "pay-late")
        assert stats.expired == 1
        assert stored.status == PaymentStatus.EXPIRED.value
        assert chain_client.calls == []
        assert mint_trigger.calls == []
        async with session_maker() as session:
            watched = await session.get(WatchedAddress, "pay-late")
            assert watched.is_monitored is False

    @pytest.mark.asyncio
    async def test_rate_limited_ticks_leave_payment_untouched(
        self, scheduler, create_payment, session_maker, chain_client
    ):
        payment = await create_payment("pay-429")
        chain_client.script(payment.deposit_address, unavailable())
        before = await load(session_maker, "pay-429")

        for _ in range(3):
            stats = await scheduler.tick()
            assert stats.unavailable == 1
            assert stats.failed == 0

        after = await load(session_maker, "pay-429")
        assert after.status == PaymentStatus.AWAITING_DEPOSIT.value
        assert after.observed_received == before.observed_received == 0
        assert after.last_checked_at is None
        assert after.last_polled_at is not None

    @pytest.mark.asyncio
    async def test_one_failing_payment_does_not_abort_batch(
        self, scheduler, create_payment, session_maker, chain_client
    ):
        broken = await create_payment("pay-broken")
        healthy = await create_payment("pay-healthy")
        chain_client.script(broken.deposit_address, RuntimeError("unexpected payload"))
        chain_client.script(
            healthy.deposit_address,
            activity(healthy.deposit_address, ("tx-9", 10_000, 0)),
        )

        stats = await scheduler.tick()

        assert stats.failed == 1
        assert stats.detected == 1
        stored = await load(session_maker, "pay-healthy")
        assert stored.status == PaymentStatus.DEPOSIT_DETECTED.value

    @pytest.mark.asyncio
    async def test_stuck_query_times_out_per_item(
        self, session_maker, create_payment, chain_client, test_settings
    ):
        stuck = await create_payment("pay-stuck")
        healthy = await create_payment("pay-ok")
        chain_client.script(
            healthy.deposit_address,
            activity(healthy.deposit_address, ("tx-1", 10_000, 0)),
        )
        original = chain_client.fetch_address_activity

        async def fetch(address):
            if address == stuck.deposit_address:
                await asyncio.Event().wait()
            return await original(address)

        chain_client.fetch_address_activity = fetch
        settings = test_settings.model_copy(
            update={"monitor_item_timeout_seconds": 0.2, "monitor_max_concurrency": 2}
        )
        scheduler = MonitorScheduler(
            session_maker, ConfirmationTracker(chain_client, 2), settings
        )

        stats = await asyncio.wait_for(scheduler.tick(), timeout=5)

        assert stats.timed_out == 1
        assert stats.detected == 1
        stored = await load(session_maker, "pay-stuck")
        assert stored.status == PaymentStatus.AWAITING_DEPOSIT.value

    @pytest.mark.asyncio
    async def test_two_workers_mint_once(
        self, session_maker, tracker, test_settings, create_payment, chain_client
    ):
        payment = await create_payment("pay-twice")
        chain_client.script(
            payment.deposit_address,
            activity(payment.deposit_address, ("tx-1", 50_000, 3)),
        )
        trigger = FakeMintTrigger()
        worker_a = MonitorScheduler(session_maker, tracker, test_settings, trigger)
        worker_b = MonitorScheduler(session_maker, tracker, test_settings, trigger)

        await worker_a.tick()
        await worker_b.tick()

        assert len(trigger.calls) == 1
        stored = await load(session_maker, "pay-twice")
        assert stored.status == PaymentStatus.MINT_TRIGGERED.value

    @pytest.mark.asyncio
    async def test_concurrent_workers_mint_once(
        self,
        session_maker,
        tracker,
        test_settings,
        create_payment,
        chain_client,
        monkeypatch,
    ):
        payment = await create_payment("pay-race")
        chain_client.script(
            payment.deposit_address,
            activity(payment.deposit_address, ("tx-1", 50_000, 3)),
        )
        await MonitorScheduler(session_maker, tracker, test_settings).tick()

        # Both workers hold the unclaimed snapshot before either claims it
        both_loaded = asyncio.Barrier(2)
        load_payment = PaymentStateMachine.load

        async def load_together(machine, payment_id):
            snapshot = await load_payment(machine, payment_id)
            await both_loaded.wait()
            return snapshot

        monkeypatch.setattr(PaymentStateMachine, "load", load_together)
        trigger = FakeMintTrigger(delay=0.1)
        worker_a = MonitorScheduler(session_maker, tracker, test_settings, trigger)
        worker_b = MonitorScheduler(session_maker, tracker, test_settings, trigger)

        stats_a, stats_b = await asyncio.wait_for(
            asyncio.gather(worker_a.tick(), worker_b.tick()), timeout=10
        )

        assert len(trigger.calls) == 1
        assert stats_a.failed == stats_b.failed == 0
        assert stats_a.conflicts + stats_b.conflicts == 1
        assert stats_a.mints_triggered + stats_b.mints_triggered == 1
        stored = await load(session_maker, "pay-race")
        assert stored.status == PaymentStatus.MINT_TRIGGERED.value
        assert stored.mint_attempts == 1

    @pytest.mark.asyncio
    async def test_rejected_addresses_do_not_starve_batch(
        self, session_maker, tracker, test_settings, create_payment, chain_client
    ):
        for payment_id in ("pay-bad-1", "pay-bad-2"):
            bad = await create_payment(payment_id)
            chain_client.script(bad.deposit_address, unavailable("HTTP 400 Bad Request"))
        good = await create_payment("pay-good")
        chain_client.script(
            good.deposit_address,
            activity(good.deposit_address, ("tx-1", 10_000, 0)),
        )
        settings = test_settings.model_copy(update={"monitor_batch_size": 2})
        scheduler = MonitorScheduler(session_maker, tracker, settings)

        first = await scheduler.tick()
        second = await scheduler.tick()

        assert first.unavailable == 2
        assert second.detected == 1
        assert good.deposit_address in chain_client.calls
        stored = await load(session_maker, "pay-good")
        assert stored.status == PaymentStatus.DEPOSIT_DETECTED.value

        rejected = await load(session_maker, "pay-bad-1")
        assert rejected.status == PaymentStatus.AWAITING_DEPOSIT.value
        assert rejected.observed_received == 0
        assert rejected.last_checked_at is None
        assert rejected.last_polled_at is not None

    @pytest.mark.asyncio
    async def test_mint_phase_skipped_without_trigger(
        self, session_maker, tracker, test_settings, create_payment, chain_client
    ):
        payment = await create_payment("pay-nomint")
        chain_client.script(
            payment.deposit_address,
            activity(payment.deposit_address, ("tx-1", 50_000, 3)),
        )
        scheduler = MonitorScheduler(session_maker, tracker, test_settings)

        stats = await scheduler.tick()

        assert stats.confirmed == 1
        stored = await load(session_maker, "pay-nomint")
        assert stored.status == PaymentStatus.DEPOSIT_CONFIRMED.value

    @pytest.mark.asyncio
    async def test_failed_mint_retried_next_tick(
        self, session_maker, tracker, test_settings, create_payment, chain_client
    ):
        payment = await create_payment("pay-flaky")
        chain_client.script(
            payment.deposit_address,
            activity(payment.deposit_address, ("tx-1", 50_000, 3)),
        )
        trigger = FakeMintTrigger(MintResult.failed("HTTP 502"), MintResult.ok("ref"))
        scheduler = MonitorScheduler(session_maker, tracker, test_settings, trigger)

        first = await scheduler.tick()
        second = await scheduler.tick()

        assert first.mints_failed == 1
        assert second.mints_triggered == 1
        stored = await load(session_maker, "pay-flaky")
        assert stored.status == PaymentStatus.MINT_TRIGGERED.value
        assert stored.mint_attempts == 2


class TestOverdueDetectedDeposit:
    """A detected deposit gets a final check before it can expire."""

    @pytest.fixture
    def late_scheduler(self, session_maker, tracker, test_settings, mint_trigger):
        return MonitorScheduler(
            session_maker,
            tracker,
            test_settings,
            mint_trigger=mint_trigger,
            clock=lambda: utc_now() + timedelta(hours=2),
        )

    async def _detected(self, create_payment, scheduler, chain_client, payment_id):
        payment = await create_payment(payment_id)
        address = payment.deposit_address
        chain_client.script(address, activity(address, ("tx-1", 50_000, 1)))
        await scheduler.tick()
        return address

    @pytest.mark.asyncio
    async def test_confirmed_at_deadline_is_honored(
        self, scheduler, late_scheduler, create_payment, session_maker, chain_client
    ):
        address = await self._detected(create_payment, scheduler, chain_client, "pay-edge")
        chain_client.script(address, activity(address, ("tx-1", 50_000, 2)))

        stats = await late_scheduler.tick()

        stored = await load(session_maker, "pay-edge")
        assert stats.expired == 0
        assert stats.confirmed == 1
        assert stored.status == PaymentStatus.MINT_TRIGGERED.value

    @pytest.mark.asyncio
    async def test_unconfirmed_deposit_expires(
        self, scheduler, late_scheduler, create_payment, session_maker, chain_client
    ):
        await self._detected(create_payment, scheduler, chain_client, "pay-short")

        stats = await late_scheduler.tick()

        stored = await load(session_maker, "pay-short")
        assert stats.expired == 1
        assert stored.status == PaymentStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_expiry_deferred_while_chain_unavailable(
        self, scheduler, late_scheduler, create_payment, session_maker, chain_client
    ):
        address = await self._detected(create_payment, scheduler, chain_client, "pay-wait")
        chain_client.script(address, unavailable())

        stats = await late_scheduler.tick()

        stored = await load(session_maker, "pay-wait")
        assert stats.expired == 0
        assert stored.status == PaymentStatus.DEPOSIT_DETECTED.value


class TestManualOperations:
    """Manual check and mint re-trigger."""

    @pytest.mark.asyncio
    async def test_process_payment_now(self, scheduler, create_payment, chain_client):
        payment = await create_payment("pay-now")
        chain_client.script(
            payment.deposit_address,
            activity(payment.deposit_address, ("tx-1", 20_000, 0)),
        )

        result = await scheduler.process_payment("pay-now")

        assert result.to_status == PaymentStatus.DEPOSIT_DETECTED.value

    @pytest.mark.asyncio
    async def test_retrigger_requires_mint_trigger(
        self, session_maker, tracker, test_settings, create_payment
    ):
        await create_payment("pay-cfg")
        scheduler = MonitorScheduler(session_maker, tracker, test_settings)

        with pytest.raises(MintTriggerError):
            await scheduler.retrigger_mint("pay-cfg")

    @pytest.mark.asyncio
    async def test_retry_pending_mints(
        self, session_maker, tracker, test_settings, create_payment, chain_client
    ):
        payment = await create_payment("pay-pending")
        chain_client.script(
            payment.deposit_address,
            activity(payment.deposit_address, ("tx-1", 50_000, 3)),
        )
        await MonitorScheduler(session_maker, tracker, test_settings).tick()
        trigger = FakeMintTrigger()
        scheduler = MonitorScheduler(session_maker, tracker, test_settings, trigger)

        stats = await scheduler.retry_pending_mints()

        assert stats.mints_triggered == 1
        assert trigger.calls == [("pay-pending", 50_000, ["tx-1"])]


class TestRunLoop:
    """Tests for the cancellable loop."""

    @pytest.mark.asyncio
    async def test_stops_on_event(self, scheduler):
        stop = asyncio.Event()
        task = asyncio.create_task(scheduler.run(stop))

        for _ in range(200):
            if scheduler.state.ticks >= 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert scheduler.state.ticks >= 2
        assert scheduler.state.running is False

    @pytest.mark.asyncio
    async def test_tick_failure_does_not_stop_loop(self, scheduler):
        scheduler._expire_phase = AsyncMock(side_effect=RuntimeError("db down"))
        stop = asyncio.Event()
        task = asyncio.create_task(scheduler.run(stop))

        for _ in range(200):
            if scheduler.state.consecutive_failures >= 2:
                break
            await asyncio.sleep(0.01)
        health = scheduler.health()
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert health["running"] is True
        assert health["consecutive_failures"] >= 2
        assert health["last_error"] == "db down"

    @pytest.mark.asyncio
    async def test_stop_during_startup_delay(self, session_maker, tracker, test_settings):
        settings = test_settings.model_copy(update={"monitor_startup_delay_seconds": 60})
        scheduler = MonitorScheduler(session_maker, tracker, settings)
        stop = asyncio.Event()
        stop.set()

        await asyncio.wait_for(scheduler.run(stop), timeout=5)

        assert scheduler.state.ticks == 0
