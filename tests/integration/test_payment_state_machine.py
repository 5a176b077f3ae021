"""Integration tests for the payment state machine on a real database."""

from datetime import timedelta

import pytest

from btc_deposits.models.enums import PaymentEventType, PaymentStatus
from btc_deposits.models.watched_address import WatchedAddress
from btc_deposits.repositories.payment_event_repository import PaymentEventRepository
from btc_deposits.repositories.payment_repository import PaymentRepository
from btc_deposits.services.confirmation_tracker import ConfirmationTracker
from btc_deposits.services.mint_trigger import MintResult
from btc_deposits.services.payment_state_machine import PaymentStateMachine
from btc_deposits.utils.datetime_utils import utc_now
from btc_deposits.utils.exceptions import PaymentNotFoundError
from tests.helpers import FakeMintTrigger, activity, unavailable


REQUIRED = 2


def observe(address, *txs):
    return ConfirmationTracker.summarize(activity(address, *txs), REQUIRED)


async def load(session_maker, payment_id):
    async with session_maker() as session:
        return await PaymentRepository(session).get(payment_id)


async def is_monitored(session_maker, payment_id):
    async with session_maker() as session:
        watched = await session.get(WatchedAddress, payment_id)
        return watched.is_monitored


async def event_types(session_maker, payment_id):
    async with session_maker() as session:
        events = await PaymentEventRepository(session).list_for_payment(payment_id)
        return [event.event_type for event in events]


async def apply(session_maker, settings, payment_id, result):
    async with session_maker() as session:
        machine = PaymentStateMachine.from_settings(session, settings)
        payment = await machine.load(payment_id)
        return await machine.apply_observation(payment, result)


async def confirm(session_maker, settings, payment_id, tx_id="tx-1", value=50_000):
    payment = await load(session_maker, payment_id)
    return await apply(
        session_maker, settings, payment_id,
        observe(payment.deposit_address, (tx_id, value, REQUIRED)),
    )


async def mint(session_maker, settings, payment_id, trigger, **kwargs):
    async with session_maker() as session:
        machine = PaymentStateMachine.from_settings(session, settings)
        return await machine.trigger_mint(payment_id, trigger, **kwargs)


class TestObservation:
    """Observe-and-transition behaviour."""

    @pytest.mark.asyncio
    async def test_fresh_payment_to_mint(self, create_payment, session_maker, test_settings):
        payment = await create_payment("pay-1")
        address = payment.deposit_address
        trigger = FakeMintTrigger(MintResult.ok("mint-1"))

        detected = await apply(
            session_maker, test_settings, "pay-1", observe(address, ("tx-1", 50_000, 0))
        )
        assert detected.to_status == PaymentStatus.DEPOSIT_DETECTED.value
        stored = await load(session_maker, "pay-1")
        assert stored.observed_received == 50_000
        assert stored.deposit_detected_at is not None

        confirmed = await apply(
            session_maker, test_settings, "pay-1", observe(address, ("tx-1", 50_000, 2))
        )
        assert confirmed.to_status == PaymentStatus.DEPOSIT_CONFIRMED.value
        assert await is_monitored(session_maker, "pay-1") is False

        minted = await mint(session_maker, test_settings, "pay-1", trigger)
        assert minted.to_status == PaymentStatus.MINT_TRIGGERED.value
        assert trigger.calls == [("pay-1", 50_000, ["tx-1"])]

        stored = await load(session_maker, "pay-1")
        assert stored.status == PaymentStatus.MINT_TRIGGERED.value
        assert stored.mint_reference == "mint-1"
        assert stored.mint_claimed_at is None
        assert await event_types(session_maker, "pay-1") == [
            PaymentEventType.CREATED.value,
            PaymentEventType.DEPOSIT_DETECTED.value,
            PaymentEventType.DEPOSIT_CONFIRMED.value,
            PaymentEventType.MINT_TRIGGERED.value,
        ]

    @pytest.mark.asyncio
    async def test_no_deposit_only_touches_last_checked(
        self, create_payment, session_maker, test_settings
    ):
        payment = await create_payment("pay-empty")

        result = await apply(
            session_maker, test_settings, "pay-empty", observe(payment.deposit_address)
        )

        stored = await load(session_maker, "pay-empty")
        assert result.changed is False
        assert stored.status == PaymentStatus.AWAITING_DEPOSIT.value
        assert stored.last_checked_at is not None

    @pytest.mark.asyncio
    async def test_deep_deposit_confirms_in_one_pass(
        self, create_payment, session_maker, test_settings
    ):
        payment = await create_payment("pay-fast")

        result = await apply(
            session_maker, test_settings, "pay-fast",
            observe(payment.deposit_address, ("tx-1", 70_000, 5)),
        )

        assert result.from_status == PaymentStatus.AWAITING_DEPOSIT.value
        assert result.to_status == PaymentStatus.DEPOSIT_CONFIRMED.value
        stored = await load(session_maker, "pay-fast")
        assert stored.confirmed_received == 70_000
        assert stored.confirmed_tx_ids == ["tx-1"]
        assert await event_types(session_maker, "pay-fast") == [
            PaymentEventType.CREATED.value,
            PaymentEventType.DEPOSIT_DETECTED.value,
            PaymentEventType.DEPOSIT_CONFIRMED.value,
        ]

    @pytest.mark.asyncio
    async def test_unavailable_never_changes_state(
        self, create_payment, session_maker, test_settings
    ):
        payment = await create_payment("pay-429")
        await apply(
            session_maker, test_settings, "pay-429",
            observe(payment.deposit_address, ("tx-1", 50_000, 1)),
        )
        before = await load(session_maker, "pay-429")

        for _ in range(3):
            result = await apply(session_maker, test_settings, "pay-429", unavailable())
            assert result.applied is False
            assert result.reason == "chain_unavailable"

        after = await load(session_maker, "pay-429")
        assert after.status == before.status == PaymentStatus.DEPOSIT_DETECTED.value
        assert after.observed_received == before.observed_received == 50_000
        assert after.max_confirmations == before.max_confirmations == 1
        assert after.last_checked_at == before.last_checked_at

    @pytest.mark.asyncio
    async def test_confirmations_never_decrease(
        self, create_payment, session_maker, test_settings
    ):
        payment = await create_payment("pay-mono")
        address = payment.deposit_address

        await apply(session_maker, test_settings, "pay-mono",
                    observe(address, ("tx-1", 50_000, 1)))
        # A lagging explorer node reports the transaction back in the mempool
        await apply(session_maker, test_settings, "pay-mono",
                    observe(address, ("tx-1", 50_000, 0)))
        await apply(session_maker, test_settings, "pay-mono", observe(address))

        stored = await load(session_maker, "pay-mono")
        assert stored.max_confirmations == 1
        assert stored.observed_received == 50_000
        assert stored.status == PaymentStatus.DEPOSIT_DETECTED.value

    @pytest.mark.asyncio
    async def test_confirmed_payment_ignores_observations(
        self, create_payment, session_maker, test_settings
    ):
        payment = await create_payment("pay-done")
        await confirm(session_maker, test_settings, "pay-done")

        result = await apply(
            session_maker, test_settings, "pay-done",
            observe(payment.deposit_address, ("tx-2", 99_000, 9)),
        )

        stored = await load(session_maker, "pay-done")
        assert result.reason == "not_observable"
        assert stored.confirmed_received == 50_000
        assert stored.confirmed_tx_ids == ["tx-1"]

    @pytest.mark.asyncio
    async def test_stale_snapshot_loses_race(
        self, create_payment, session_maker, test_settings
    ):
        payment = await create_payment("pay-race")
        address = payment.deposit_address
        await apply(session_maker, test_settings, "pay-race",
                    observe(address, ("tx-1", 50_000, 1)))
        result = observe(address, ("tx-1", 50_000, 2))

        async with session_maker() as first, session_maker() as second:
            machine_a = PaymentStateMachine.from_settings(first, test_settings)
            machine_b = PaymentStateMachine.from_settings(second, test_settings)
            snapshot_a = await machine_a.load("pay-race")
            snapshot_b = await machine_b.load("pay-race")

            won = await machine_a.apply_observation(snapshot_a, result)
            lost = await machine_b.apply_observation(snapshot_b, result)

        assert won.to_status == PaymentStatus.DEPOSIT_CONFIRMED.value
        assert lost.applied is False
        assert lost.reason == "conflict"
        assert lost.payment_id == "pay-race"
        assert lost.from_status == PaymentStatus.DEPOSIT_DETECTED.value
        assert (await event_types(session_maker, "pay-race")).count(
            PaymentEventType.DEPOSIT_CONFIRMED.value
        ) == 1

    @pytest.mark.asyncio
    async def test_unknown_payment(self, session_maker, test_settings):
        async with session_maker() as session:
            machine = PaymentStateMachine.from_settings(session, test_settings)
            with pytest.raises(PaymentNotFoundError):
                await machine.load("missing")


class TestExpiry:
    """Expiry transitions."""

    @pytest.mark.asyncio
    async def test_awaiting_payment_expires(self, create_payment, session_maker, test_settings):
        await create_payment("pay-exp", expires_in=timedelta(minutes=-1))

        async with session_maker() as session:
            machine = PaymentStateMachine.from_settings(session, test_settings)
            result = await machine.expire(await machine.load("pay-exp"))

        stored = await load(session_maker, "pay-exp")
        assert result.to_status == PaymentStatus.EXPIRED.value
        assert stored.status == PaymentStatus.EXPIRED.value
        assert stored.expired_at is not None
        assert await is_monitored(session_maker, "pay-exp") is False

    @pytest.mark.asyncio
    async def test_not_due_is_noop(self, create_payment, session_maker, test_settings):
        await create_payment("pay-later")

        async with session_maker() as session:
            machine = PaymentStateMachine.from_settings(session, test_settings)
            result = await machine.expire(await machine.load("pay-later"))

        assert result.applied is False
        assert result.reason == "not_due"

    @pytest.mark.asyncio
    async def test_stale_expiry_loses_to_confirmation(
        self, create_payment, session_maker, test_settings
    ):
        await create_payment("pay-close", expires_in=timedelta(minutes=-1))

        async with session_maker() as session:
            machine = PaymentStateMachine.from_settings(session, test_settings)
            stale = await machine.load("pay-close")

            # Another worker confirms while this one holds the awaiting snapshot
            await confirm(session_maker, test_settings, "pay-close")
            result = await machine.expire(stale)

        assert result.applied is False
        assert result.reason == "conflict"
        assert result.payment_id == "pay-close"
        stored = await load(session_maker, "pay-close")
        assert stored.status == PaymentStatus.DEPOSIT_CONFIRMED.value
        assert PaymentEventType.EXPIRED.value not in await event_types(
            session_maker, "pay-close"
        )

    @pytest.mark.asyncio
    async def test_confirmed_payment_never_expires(
        self, create_payment, session_maker, test_settings
    ):
        await create_payment("pay-keep", expires_in=timedelta(seconds=30))
        await confirm(session_maker, test_settings, "pay-keep")

        async with session_maker() as session:
            machine = PaymentStateMachine.from_settings(session, test_settings)
            payment = await machine.load("pay-keep")
            result = await machine.expire(payment, now=utc_now() + timedelta(days=1))

        assert result.reason == "not_expirable"
        stored = await load(session_maker, "pay-keep")
        assert stored.status == PaymentStatus.DEPOSIT_CONFIRMED.value


class TestMint:
    """Act-on-confirmed behaviour."""

    @pytest.mark.asyncio
    async def test_failure_then_manual_retry(self, create_payment, session_maker, test_settings):
        await create_payment("pay-retry")
        await confirm(session_maker, test_settings, "pay-retry")
        confirmed = await load(session_maker, "pay-retry")
        trigger = FakeMintTrigger(MintResult.failed("HTTP 503"), MintResult.ok("ref-2"))

        failed = await mint(session_maker, test_settings, "pay-retry", trigger)
        after_failure = await load(session_maker, "pay-retry")
        assert failed.reason == "mint_failed"
        assert after_failure.status == PaymentStatus.DEPOSIT_CONFIRMED.value
        assert after_failure.mint_attempts == 1
        assert after_failure.last_mint_error == "HTTP 503"
        assert after_failure.mint_claimed_at is None

        retried = await mint(session_maker, test_settings, "pay-retry", trigger, manual=True)
        final = await load(session_maker, "pay-retry")
        assert retried.to_status == PaymentStatus.MINT_TRIGGERED.value
        assert final.status == PaymentStatus.MINT_TRIGGERED.value
        assert final.last_mint_error is None
        assert final.confirmed_received == confirmed.confirmed_received
        assert final.confirmed_tx_ids == confirmed.confirmed_tx_ids
        assert final.max_confirmations == confirmed.max_confirmations
        assert final.deposit_confirmed_at == confirmed.deposit_confirmed_at
        assert len(trigger.calls) == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_park_payment(
        self, create_payment, session_maker, test_settings
    ):
        await create_payment("pay-park")
        await confirm(session_maker, test_settings, "pay-park")
        trigger = FakeMintTrigger(MintResult.failed("down"))

        for _ in range(test_settings.mint_max_attempts):
            await mint(session_maker, test_settings, "pay-park", trigger)

        stored = await load(session_maker, "pay-park")
        assert stored.status == PaymentStatus.MINT_FAILED.value
        assert stored.mint_attempts == test_settings.mint_max_attempts
        assert PaymentEventType.MINT_FAILED.value in await event_types(
            session_maker, "pay-park"
        )

        skipped = await mint(session_maker, test_settings, "pay-park", trigger)
        assert skipped.applied is False
        assert len(trigger.calls) == test_settings.mint_max_attempts

        trigger.results = [MintResult.ok("ref-late")]
        rescued = await mint(session_maker, test_settings, "pay-park", trigger, manual=True)
        assert rescued.to_status == PaymentStatus.MINT_TRIGGERED.value

    @pytest.mark.asyncio
    async def test_trigger_exception_recorded(self, create_payment, session_maker, test_settings):
        await create_payment("pay-raise")
        await confirm(session_maker, test_settings, "pay-raise")
        trigger = FakeMintTrigger(RuntimeError("connection reset"))

        result = await mint(session_maker, test_settings, "pay-raise", trigger)

        stored = await load(session_maker, "pay-raise")
        assert result.reason == "mint_failed"
        assert "connection reset" in stored.last_mint_error
        assert stored.status == PaymentStatus.DEPOSIT_CONFIRMED.value

    @pytest.mark.asyncio
    async def test_claimed_payment_not_minted_twice(
        self, create_payment, session_maker, test_settings
    ):
        await create_payment("pay-claim")
        await confirm(session_maker, test_settings, "pay-claim")
        trigger = FakeMintTrigger()

        # Another worker holds the claim
        async with session_maker() as session:
            claimed = await PaymentRepository(session).conditional_update(
                "pay-claim",
                PaymentStatus.DEPOSIT_CONFIRMED.value,
                unclaimed_only=True,
                mint_claimed_at=utc_now(),
                mint_attempts=1,
            )
            await session.commit()
        assert claimed is True

        busy = await mint(session_maker, test_settings, "pay-claim", trigger)
        assert busy.reason == "mint_in_flight"
        assert trigger.calls == []

        forced = await mint(
            session_maker, test_settings, "pay-claim", trigger, manual=True, force=True
        )
        assert forced.to_status == PaymentStatus.MINT_TRIGGERED.value
        assert len(trigger.calls) == 1

    @pytest.mark.asyncio
    async def test_minted_payment_not_minted_again(
        self, create_payment, session_maker, test_settings
    ):
        await create_payment("pay-once")
        await confirm(session_maker, test_settings, "pay-once")
        trigger = FakeMintTrigger()

        await mint(session_maker, test_settings, "pay-once", trigger)
        again = await mint(session_maker, test_settings, "pay-once", trigger, manual=True)

        assert again.reason == "already_minted"
        assert len(trigger.calls) == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_payment_not_minted(
        self, create_payment, session_maker, test_settings
    ):
        await create_payment("pay-early")
        trigger = FakeMintTrigger()

        result = await mint(session_maker, test_settings, "pay-early", trigger)

        assert result.reason == "not_confirmed"
        assert trigger.calls == []
