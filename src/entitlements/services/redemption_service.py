from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..codes.generator import SecureCodeGenerator
from ..config import settings
from ..db.base import BaseDBManager
from ..exceptions import (
    BatchArchivedError,
    BatchExpiredError,
    CodeAlreadyUsedError,
    CodeNotFoundError,
    PaymentNotVerifiedError,
    StoreUnavailableError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.activation_code import ActivationCode
from ..models.base import utcnow
from ..models.code_batch import BatchStatus, CodeBatch
from ..models.plan import PLAN_DAYS, Plan, parse_plan
from ..models.results import ActivationResult, ClaimRecoveryResult, CodeInfo, RedemptionResult
from ..models.subscription import ActivationMethod
from .subscription_service import SubscriptionService


logger = logging.getLogger(__name__)


class RedemptionService:
    """
    Turns activation codes and verified payments into subscription time.

    A code is claimed with a conditional write before any entitlement is
    granted, so of two concurrent redemptions only one can win. The claim
    is pending until the subscription write that carries the code has been
    stored, then confirmed. If that write fails the claim is released
    again; a claim orphaned by a crash is settled by
    `recover_pending_claims`. Once the days are stored, later failures
    (ledger, counters) never hand the code back.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        subscription_service: SubscriptionService,
        generator: Optional[SecureCodeGenerator] = None,
        counter_retries: int = settings.COUNTER_INCREMENT_RETRIES,
        counter_backoff_seconds: float = settings.COUNTER_RETRY_BACKOFF_SECONDS,
        pending_claim_timeout_seconds: int = settings.PENDING_CLAIM_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._subscriptions = subscription_service
        self._generator = generator or SecureCodeGenerator()
        self._counter_retries = counter_retries
        self._counter_backoff_seconds = counter_backoff_seconds
        self._pending_claim_timeout = timedelta(seconds=pending_claim_timeout_seconds)
        self._clock = clock

    async def redeem_code(
        self,
        code_string: str,
        user_id: str,
        correlation_id: str | None = None,
    ) -> RedemptionResult:
        code = self._generator.normalize(code_string)

        activation = await self._db.get_activation_code(code)
        if activation is None:
            raise CodeNotFoundError("invalid activation code")
        if activation.is_used:
            raise CodeAlreadyUsedError(code, activation.used_at, activation.used_by)

        batch = await self._redeemable_batch(activation)

        async with self._db.transaction():
            claimed = await self._db.claim_activation_code(code, user_id, self._clock())
            if claimed is None:
                current = await self._db.get_activation_code(code)
                await self._ledger.log_error(
                    message="Activation code claim lost",
                    details={"code": code},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise CodeAlreadyUsedError(
                    code,
                    current.used_at if current else None,
                    current.used_by if current else None,
                )

            try:
                change = await self._subscriptions.write_entitlement(
                    user_id,
                    claimed.plan,
                    ActivationMethod.CODE,
                    code=code,
                    correlation_id=correlation_id,
                )
            except Exception:
                await self._release_unless_granted(code, user_id)
                raise
            await self._db.confirm_activation_code(code, user_id)

        # From here on the days are stored and the code stays spent.
        await self._subscriptions.record_entitlement(change, correlation_id=correlation_id)
        subscription, extended = change.subscription, change.extended

        if batch is not None and batch.id:
            await self._increment_batch_usage(batch.id, user_id, correlation_id)

        days_added = PLAN_DAYS[claimed.plan]
        await self._ledger.log_transaction(
            user_id=user_id,
            message="Activation code redeemed",
            details={
                "code": code,
                "plan": claimed.plan.value,
                "batch_id": claimed.batch_id,
                "days_added": days_added,
                "subscription_id": subscription.id,
            },
            correlation_id=correlation_id,
        )

        return RedemptionResult(
            subscription=subscription.to_view(self._clock()),
            extended=extended,
            code_info=CodeInfo(
                code=claimed.code,
                formatted_code=claimed.formatted_code,
                plan=claimed.plan,
                batch_name=claimed.batch_name,
                days_added=days_added,
            ),
        )

    async def activate_by_payment(
        self,
        plan: Plan | str,
        user_id: str,
        payment_verified: bool,
        payment_reference: str | None = None,
        correlation_id: str | None = None,
    ) -> ActivationResult:
        plan = parse_plan(plan)
        if not payment_verified:
            await self._ledger.log_error(
                message="Payment verification failed",
                details={"plan": plan.value, "payment_reference": payment_reference},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise PaymentNotVerifiedError("payment verification failed")

        subscription, extended = await self._subscriptions.apply_entitlement(
            user_id, plan, ActivationMethod.PAYMENT, correlation_id=correlation_id
        )
        await self._ledger.log_transaction(
            user_id=user_id,
            message="Payment activation applied",
            details={
                "plan": plan.value,
                "payment_reference": payment_reference,
                "subscription_id": subscription.id,
            },
            correlation_id=correlation_id,
        )
        return ActivationResult(subscription=subscription.to_view(self._clock()), extended=extended)

    async def _redeemable_batch(self, activation: ActivationCode) -> Optional[CodeBatch]:
        if not activation.batch_id:
            return None

        batch = await self._db.get_code_batch(activation.batch_id)
        # Codes of a batch still being generated are not issued yet
        if batch is None or batch.status == BatchStatus.ACTIVE:
            raise CodeNotFoundError("invalid activation code")
        if batch.status == BatchStatus.ARCHIVED:
            raise BatchArchivedError(batch.id or "")
        if batch.is_expired(self._clock()):
            raise BatchExpiredError(batch.id or "", batch.expires_at)
        return batch

    async def recover_pending_claims(self, older_than: timedelta | None = None) -> ClaimRecoveryResult:
        """
        Settle claims left pending by redemptions that never finished,
        e.g. because the process died between claiming and granting.

        A claim whose code made it into the user's subscription is
        confirmed and counted against its batch. Any other claim is
        released, so the code can be redeemed again. Only claims older
        than `older_than` are considered; younger ones may still be in
        flight. Meant to be run periodically by an external scheduler.
        """
        timeout = older_than if older_than is not None else self._pending_claim_timeout
        cutoff = self._clock() - timeout
        result = ClaimRecoveryResult()

        for claim in await self._db.get_pending_activation_codes(cutoff):
            user_id = claim.used_by or ""
            if await self._code_was_granted(claim.code, user_id):
                if await self._db.confirm_activation_code(claim.code, user_id):
                    result.confirmed.append(claim.code)
                    if claim.batch_id:
                        await self._increment_batch_usage(claim.batch_id, user_id, None)
            elif await self._db.release_activation_code(claim.code, user_id):
                result.released.append(claim.code)

        if result.confirmed or result.released:
            logger.warning(
                "Settled pending claims: %d confirmed, %d released",
                len(result.confirmed),
                len(result.released),
            )
            await self._ledger.log_system(
                message="Pending code claims settled",
                details={
                    "confirmed": result.confirmed,
                    "released": result.released,
                    "cutoff": cutoff.isoformat(),
                },
            )
        return result

    async def _code_was_granted(self, code: str, user_id: str) -> bool:
        history = await self._db.get_user_subscriptions(user_id)
        return any(code in s.granted_codes for s in history)

    async def _release_unless_granted(self, code: str, user_id: str) -> None:
        """
        Undo the claim after a failed grant, unless the grant was stored
        before the error surfaced. Anything undecidable stays pending for
        `recover_pending_claims`.
        """
        try:
            if await self._code_was_granted(code, user_id):
                logger.warning("Code %s already granted to user %s; keeping claim", code, user_id)
                return
            released = await self._db.release_activation_code(code, user_id)
        except StoreUnavailableError:
            logger.exception("Could not settle claim on code %s for user %s; left pending", code, user_id)
            return
        if released:
            logger.warning("Released claim on code %s after failed activation for user %s", code, user_id)

    async def _increment_batch_usage(
        self, batch_id: str, user_id: str, correlation_id: str | None
    ) -> None:
        for attempt in range(1, self._counter_retries + 1):
            try:
                if not await self._db.increment_batch_codes_used(batch_id):
                    logger.warning("Batch %s usage counter already at codes_generated", batch_id)
                return
            except StoreUnavailableError as exc:
                logger.warning(
                    "Batch %s usage increment failed (attempt %d/%d): %s",
                    batch_id,
                    attempt,
                    self._counter_retries,
                    exc,
                )
                if attempt < self._counter_retries:
                    await asyncio.sleep(self._counter_backoff_seconds * attempt)

        # The redemption itself succeeded; leave a record for reconcile_batch_usage.
        logger.error("Giving up on usage increment for batch %s", batch_id)
        await self._ledger.log_error(
            message="Batch usage increment failed",
            details={"batch_id": batch_id, "attempts": self._counter_retries},
            user_id=user_id,
            correlation_id=correlation_id,
        )
