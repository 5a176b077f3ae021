"""
Payment state machine.

Owns the payment lifecycle:

    awaiting_deposit -> deposit_detected -> deposit_confirmed -> mint_triggered
           \\                  /
            +--> expired <---+

Every transition is one conditional write keyed on the status the caller
observed. A writer holding a stale snapshot loses the compare-and-swap,
rolls back, and the payment is picked up again next tick.

Two phases are kept apart: observe-and-transition (apply_observation,
expire) and act-on-confirmed (trigger_mint). The act phase never touches
confirmation fields, so it can be retried on its own.
"""

from dataclasses import dataclass

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from btc_deposits.models.enums import (
    OBSERVABLE_STATUSES,
    PaymentEventType,
    PaymentStatus,
)
from btc_deposits.models.payment import PaymentRecord
from btc_deposits.repositories.payment_event_repository import (
    PaymentEventRepository,
)
from btc_deposits.repositories.payment_repository import PaymentRepository
from btc_deposits.services.address_registry import AddressRegistry
from btc_deposits.services.chain.types import ChainUnavailable
from btc_deposits.services.confirmation_tracker import ConfirmationResult
from btc_deposits.services.mint_trigger import MintResult, MintTrigger
from btc_deposits.utils.datetime_utils import as_utc, utc_now
from btc_deposits.utils.exceptions import PaymentNotFoundError


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one state machine operation."""

    payment_id: str
    from_status: str
    to_status: str
    applied: bool
    reason: str = ""

    @property
    def changed(self) -> bool:
        """True if the status actually moved."""
        return self.applied and self.from_status != self.to_status


class PaymentStateMachine:
    """Applies observations and mint outcomes to payment records."""

    def __init__(
        self,
        session: AsyncSession,
        registry: AddressRegistry,
        required_confirmations: int = 6,
        mint_max_attempts: int = 5,
    ) -> None:
        """
        Initialize state machine.

        Args:
            session: Async database session (one unit of work)
            registry: Address registry bound to the same session
            required_confirmations: Depth reported in status views
            mint_max_attempts: Automatic mint attempts before parking
        """
        self.session = session
        self.registry = registry
        self.required_confirmations = required_confirmations
        self.mint_max_attempts = mint_max_attempts
        self.payment_repo = PaymentRepository(session)
        self.event_repo = PaymentEventRepository(session)

    @classmethod
    def from_settings(cls, session: AsyncSession, settings) -> "PaymentStateMachine":
        """Build state machine from application settings."""
        return cls(
            session,
            AddressRegistry.from_settings(session, settings),
            required_confirmations=settings.required_confirmations,
            mint_max_attempts=settings.mint_max_attempts,
        )

    async def load(self, payment_id: str) -> PaymentRecord:
        """
        Load current payment snapshot.

        Raises:
            PaymentNotFoundError: If payment does not exist
        """
        payment = await self.payment_repo.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    async def _conflict(
        self, payment_id: str, expected: str, target: str
    ) -> TransitionResult:
        """
        Roll back after a lost compare-and-swap.

        Rollback expires every loaded instance, so only plain values are
        used from here on.
        """
        await self.session.rollback()
        logger.debug(
            f"Transition conflict for payment {payment_id}: "
            f"expected {expected} -> {target}, status changed underneath"
        )
        return TransitionResult(
            payment_id, expected, expected, applied=False, reason="conflict"
        )

    # ------------------------------------------------------------------
    # Observe and transition
    # ------------------------------------------------------------------

    async def apply_observation(
        self,
        payment: PaymentRecord,
        result: ConfirmationResult | ChainUnavailable,
        now=None,
    ) -> TransitionResult:
        """
        Apply a confirmation tracker result to a payment.

        Args:
            payment: Snapshot the observation was taken against
            result: Tracker result or ChainUnavailable
            now: Reference time (defaults to now)

        Returns:
            TransitionResult; applied=False on unavailability or conflict
        """
        status = payment.status
        payment_id = payment.payment_id
        now = now or utc_now()

        if isinstance(result, ChainUnavailable):
            # No new information: only the polling order key moves
            if status in OBSERVABLE_STATUSES:
                if await self.payment_repo.mark_polled(payment_id, status, now):
                    await self.session.commit()
                else:
                    await self.session.rollback()
            return TransitionResult(
                payment_id, status, status, applied=False,
                reason="chain_unavailable",
            )

        if status not in OBSERVABLE_STATUSES:
            return TransitionResult(
                payment_id, status, status, applied=False, reason="not_observable"
            )

        observed = result.observed_total
        start_status = status

        if status == PaymentStatus.AWAITING_DEPOSIT.value:
            if not result.has_deposit:
                ok = await self.payment_repo.record_observation(
                    payment_id,
                    status,
                    observed_received=observed,
                    max_confirmations=result.max_confirmations,
                    last_checked_at=now,
                )
                if not ok:
                    return await self._conflict(payment_id, status, status)
                await self.session.commit()
                return TransitionResult(
                    payment_id, status, status, applied=True, reason="no_deposit"
                )

            ok = await self.payment_repo.record_observation(
                payment_id,
                status,
                observed_received=observed,
                max_confirmations=result.max_confirmations,
                status=PaymentStatus.DEPOSIT_DETECTED.value,
                deposit_detected_at=now,
                last_checked_at=now,
            )
            if not ok:
                return await self._conflict(
                    payment_id, status, PaymentStatus.DEPOSIT_DETECTED.value
                )
            await self.event_repo.record(
                payment_id,
                PaymentEventType.DEPOSIT_DETECTED,
                from_status=status,
                to_status=PaymentStatus.DEPOSIT_DETECTED.value,
                data={
                    "address": result.address,
                    "observed_received": observed,
                    "confirmed_received": result.total_received,
                    "confirmations": result.max_confirmations,
                },
            )
            logger.info(
                f"Bitcoin deposit detected for payment {payment_id}: "
                f"{observed} sats seen, {result.max_confirmations} confirmations"
            )
            status = PaymentStatus.DEPOSIT_DETECTED.value

            if not result.fully_confirmed:
                await self.session.commit()
                return TransitionResult(payment_id, start_status, status, applied=True)

        # status is deposit_detected from here on
        if result.fully_confirmed:
            return await self._confirm(payment, start_status, result, now)

        previous_confirmations = payment.max_confirmations
        ok = await self.payment_repo.record_observation(
            payment_id,
            status,
            observed_received=observed,
            max_confirmations=result.max_confirmations,
            last_checked_at=now,
        )
        if not ok:
            return await self._conflict(payment_id, status, status)
        if result.max_confirmations > previous_confirmations:
            await self.event_repo.record(
                payment_id,
                PaymentEventType.OBSERVATION_UPDATED,
                from_status=status,
                to_status=status,
                data={
                    "observed_received": observed,
                    "confirmations": result.max_confirmations,
                },
            )
        await self.session.commit()
        return TransitionResult(
            payment_id, status, status, applied=True, reason="awaiting_confirmations"
        )

    async def _confirm(
        self,
        payment: PaymentRecord,
        start_status: str,
        result: ConfirmationResult,
        now,
    ) -> TransitionResult:
        """deposit_detected -> deposit_confirmed, stop monitoring."""
        payment_id = payment.payment_id
        detected = PaymentStatus.DEPOSIT_DETECTED.value
        confirmed = PaymentStatus.DEPOSIT_CONFIRMED.value

        # Append-only merge of settled transaction IDs
        tx_ids = list(payment.confirmed_tx_ids or [])
        for tx_id in result.confirmed_tx_ids:
            if tx_id not in tx_ids:
                tx_ids.append(tx_id)

        ok = await self.payment_repo.record_observation(
            payment_id,
            detected,
            observed_received=result.observed_total,
            max_confirmations=result.max_confirmations,
            status=confirmed,
            confirmed_received=result.settled_received,
            confirmed_tx_ids=tx_ids,
            deposit_confirmed_at=now,
            last_checked_at=now,
        )
        if not ok:
            return await self._conflict(payment_id, detected, confirmed)

        await self.registry.mark_unmonitored(payment_id)
        await self.event_repo.record(
            payment_id,
            PaymentEventType.DEPOSIT_CONFIRMED,
            from_status=detected,
            to_status=confirmed,
            data={
                "address": result.address,
                "confirmed_received": result.settled_received,
                "confirmations": result.max_confirmations,
                "confirmed_tx_ids": tx_ids,
            },
        )
        await self.session.commit()

        logger.info(
            f"Bitcoin deposit fully confirmed for payment {payment_id}: "
            f"{result.settled_received} sats in {len(tx_ids)} tx(s), "
            f"{result.max_confirmations} confirmations"
        )
        return TransitionResult(payment_id, start_status, confirmed, applied=True)

    async def expire(self, payment: PaymentRecord, now=None) -> TransitionResult:
        """
        Expire an unsettled payment past its deadline.

        Only awaiting_deposit and deposit_detected can expire; a confirmed
        deposit is always honored.
        """
        now = now or utc_now()
        status = payment.status
        payment_id = payment.payment_id
        expired = PaymentStatus.EXPIRED.value

        if status not in OBSERVABLE_STATUSES:
            return TransitionResult(
                payment_id, status, status, applied=False, reason="not_expirable"
            )
        if now <= as_utc(payment.expires_at):
            return TransitionResult(
                payment_id, status, status, applied=False, reason="not_due"
            )

        ok = await self.payment_repo.conditional_update(
            payment_id, status, status=expired, expired_at=now
        )
        if not ok:
            return await self._conflict(payment_id, status, expired)

        await self.registry.mark_unmonitored(payment_id)
        await self.event_repo.record(
            payment_id,
            PaymentEventType.EXPIRED,
            from_status=status,
            to_status=expired,
            data={
                "expires_at": as_utc(payment.expires_at).isoformat(),
                "observed_received": payment.observed_received,
            },
        )
        await self.session.commit()

        logger.info(f"Payment {payment_id} expired from {status}")
        return TransitionResult(payment_id, status, expired, applied=True)

    # ------------------------------------------------------------------
    # Act on confirmed
    # ------------------------------------------------------------------

    async def trigger_mint(
        self,
        payment_id: str,
        mint_trigger: MintTrigger,
        *,
        manual: bool = False,
        force: bool = False,
        now=None,
    ) -> TransitionResult:
        """
        Invoke the mint trigger for a confirmed payment.

        The record is claimed with a conditional write before the call, so
        concurrent workers cannot both reach the trigger.

        Args:
            payment_id: Payment ID
            mint_trigger: Downstream mint trigger
            manual: Operator re-trigger (also accepts mint_failed)
            force: With manual, clear a stale in-flight claim first
            now: Reference time (defaults to now)

        Returns:
            TransitionResult

        Raises:
            PaymentNotFoundError: If payment does not exist
        """
        now = now or utc_now()
        payment = await self.load(payment_id)
        status = payment.status

        allowed = [PaymentStatus.DEPOSIT_CONFIRMED.value]
        if manual:
            allowed.append(PaymentStatus.MINT_FAILED.value)

        if status == PaymentStatus.MINT_TRIGGERED.value:
            return TransitionResult(
                payment_id, status, status, applied=False, reason="already_minted"
            )
        if status not in allowed:
            return TransitionResult(
                payment_id, status, status, applied=False, reason="not_confirmed"
            )
        if not manual and payment.mint_attempts >= self.mint_max_attempts:
            return TransitionResult(
                payment_id, status, status, applied=False, reason="attempts_exhausted"
            )

        if payment.mint_claimed_at is not None:
            if not (manual and force):
                return TransitionResult(
                    payment_id, status, status, applied=False, reason="mint_in_flight"
                )
            cleared = await self.payment_repo.conditional_update(
                payment_id, status, mint_claimed_at=None
            )
            if not cleared:
                return await self._conflict(payment_id, status, status)
            await self.session.commit()
            logger.warning(
                f"Cleared stale mint claim for payment {payment_id} "
                f"(claimed at {payment.mint_claimed_at})"
            )

        attempt = payment.mint_attempts + 1
        claimed = await self.payment_repo.conditional_update(
            payment_id,
            status,
            unclaimed_only=True,
            mint_claimed_at=now,
            mint_attempts=attempt,
        )
        if not claimed:
            return await self._conflict(payment_id, status, status)
        await self.session.commit()

        try:
            result = await mint_trigger.trigger_mint(
                payment_id,
                payment.confirmed_received,
                list(payment.confirmed_tx_ids or []),
            )
        except Exception as e:
            logger.exception(f"Mint trigger raised for payment {payment_id}: {e}")
            result = MintResult.failed(f"{type(e).__name__}: {e}")

        if result.success:
            return await self._record_mint_success(payment, status, attempt, result, now)
        return await self._record_mint_failure(
            payment, status, attempt, result, manual, now
        )

    async def _record_mint_success(
        self,
        payment: PaymentRecord,
        status: str,
        attempt: int,
        result: MintResult,
        now,
    ) -> TransitionResult:
        payment_id = payment.payment_id
        minted = PaymentStatus.MINT_TRIGGERED.value

        ok = await self.payment_repo.conditional_update(
            payment_id,
            status,
            status=minted,
            mint_claimed_at=None,
            mint_triggered_at=now,
            mint_reference=result.reference,
            last_mint_error=None,
        )
        if not ok:
            # Claim was cleared underneath (forced re-trigger); mint already sent
            await self.session.rollback()
            logger.error(
                f"Mint succeeded for payment {payment_id} but status changed "
                f"from {status}; manual review required"
            )
            return TransitionResult(
                payment_id, status, status, applied=False, reason="conflict"
            )

        await self.event_repo.record(
            payment_id,
            PaymentEventType.MINT_TRIGGERED,
            from_status=status,
            to_status=minted,
            data={
                "attempt": attempt,
                "reference": result.reference,
                "confirmed_total": payment.confirmed_received,
            },
        )
        await self.session.commit()

        logger.info(
            f"Payment {payment_id} mint triggered on attempt {attempt}, "
            f"reference={result.reference}"
        )
        return TransitionResult(payment_id, status, minted, applied=True)

    async def _record_mint_failure(
        self,
        payment: PaymentRecord,
        status: str,
        attempt: int,
        result: MintResult,
        manual: bool,
        now,
    ) -> TransitionResult:
        payment_id = payment.payment_id
        target = status
        exhausted = (
            not manual
            and status == PaymentStatus.DEPOSIT_CONFIRMED.value
            and attempt >= self.mint_max_attempts
        )
        if exhausted:
            target = PaymentStatus.MINT_FAILED.value

        values = {"mint_claimed_at": None, "last_mint_error": result.error}
        if target != status:
            values["status"] = target

        ok = await self.payment_repo.conditional_update(payment_id, status, **values)
        if not ok:
            return await self._conflict(payment_id, status, target)

        await self.event_repo.record(
            payment_id,
            PaymentEventType.MINT_FAILED if exhausted else PaymentEventType.MINT_ATTEMPT_FAILED,
            from_status=status,
            to_status=target,
            data={"attempt": attempt, "error": result.error, "manual": manual},
        )
        await self.session.commit()

        if exhausted:
            logger.error(
                f"Mint failed for payment {payment_id} after {attempt} attempts, "
                f"operator action required: {result.error}"
            )
        else:
            logger.warning(
                f"Mint attempt {attempt} failed for payment {payment_id}: "
                f"{result.error}"
            )
        return TransitionResult(
            payment_id, status, target, applied=True, reason="mint_failed"
        )
