from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, NamedTuple, Optional, Tuple

from ..cache.base import AsyncCacheBackend
from ..config import settings
from ..db.base import BaseDBManager
from ..exceptions import (
    ConcurrentUpdateError,
    DuplicateActiveSubscriptionError,
    TrialUnavailableError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.plan import PLAN_DAYS, TRIAL_PLAN, Plan, parse_plan
from ..models.subscription import ActivationMethod, Subscription, SubscriptionView


logger = logging.getLogger(__name__)


class EntitlementChange(NamedTuple):
    """A subscription write that has been stored."""

    subscription: Subscription
    extended: bool
    granted_plan: Plan
    previous_plan: Optional[Plan]
    activation_method: ActivationMethod


class SubscriptionService:
    """
    Persists subscription windows and serves the subscription read model.

    Writes use the record's `version` as a compare-and-swap token, so
    concurrent activations for one user re-read and re-apply instead of
    overwriting each other.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
        update_retries: int = settings.SUBSCRIPTION_UPDATE_RETRIES,
        cache_ttl_seconds: int = settings.STATUS_CACHE_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache
        self._update_retries = update_retries
        self._cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock

    async def start_trial(
        self, user_id: str, correlation_id: str | None = None
    ) -> SubscriptionView:
        """Open the signup trial. Only users without any subscription history qualify."""
        history = await self._db.get_user_subscriptions(user_id)
        if history:
            raise TrialUnavailableError(f"user {user_id} already has a subscription history")

        now = self._clock()
        trial = Subscription.open_window(user_id, TRIAL_PLAN, ActivationMethod.SIGNUP, now=now)
        try:
            trial = await self._db.add_subscription(trial)
        except DuplicateActiveSubscriptionError as exc:
            raise TrialUnavailableError(f"user {user_id} already has an active subscription") from exc

        await self._invalidate(user_id)
        await self._ledger.log_transaction(
            user_id=user_id,
            message="Trial subscription started",
            details={
                "subscription_id": trial.id,
                "plan": trial.plan.value,
                "expires_at": trial.expires_at.isoformat(),
            },
            correlation_id=correlation_id,
        )
        return trial.to_view(now)

    async def apply_entitlement(
        self,
        user_id: str,
        plan: Plan | str,
        activation_method: ActivationMethod,
        correlation_id: str | None = None,
    ) -> Tuple[Subscription, bool]:
        """
        Grant `plan`'s days to the user.

        Extends (and possibly upgrades) the active record, or opens a new
        window when there is none. Returns the stored subscription and
        whether an existing one was extended.
        """
        change = await self.write_entitlement(
            user_id, plan, activation_method, correlation_id=correlation_id
        )
        await self.record_entitlement(change, correlation_id=correlation_id)
        return change.subscription, change.extended

    async def write_entitlement(
        self,
        user_id: str,
        plan: Plan | str,
        activation_method: ActivationMethod,
        code: str | None = None,
        correlation_id: str | None = None,
    ) -> EntitlementChange:
        """
        The subscription write of `apply_entitlement` on its own.

        When `code` is given it is stored in `granted_codes` by the same
        write that adds the days, so a later reader can tell whether a
        claimed code was honoured. Cache and ledger are left to
        `record_entitlement`.
        """
        plan = parse_plan(plan)
        days = PLAN_DAYS[plan]

        for attempt in range(1, self._update_retries + 1):
            now = self._clock()
            current = await self._db.get_active_subscription(user_id)

            if current is None:
                subscription = Subscription.open_window(user_id, plan, activation_method, now=now)
                if code:
                    subscription.granted_codes.append(code)
                try:
                    subscription = await self._db.add_subscription(subscription)
                except DuplicateActiveSubscriptionError:
                    logger.info(
                        "Lost first-activation race for user %s (attempt %d), re-reading",
                        user_id,
                        attempt,
                    )
                    continue
                return EntitlementChange(subscription, False, plan, None, activation_method)

            expected_version = current.version
            previous_plan = current.plan
            current.upgrade_plan(plan)
            current.extend(days, now=now)
            if code:
                current.granted_codes.append(code)
            if not await self._db.update_subscription(current, expected_version):
                logger.info(
                    "Subscription %s changed concurrently (attempt %d), re-reading",
                    current.id,
                    attempt,
                )
                continue
            return EntitlementChange(current, True, plan, previous_plan, activation_method)

        await self._ledger.log_error(
            message="Subscription update retries exhausted",
            details={"plan": plan.value, "retries": self._update_retries},
            user_id=user_id,
            correlation_id=correlation_id,
        )
        raise ConcurrentUpdateError(
            f"could not update subscription for user {user_id} after {self._update_retries} attempts"
        )

    async def record_entitlement(
        self, change: EntitlementChange, correlation_id: str | None = None
    ) -> None:
        """Drop the cached status and write the ledger entry for a stored grant."""
        subscription = change.subscription
        await self._invalidate(subscription.user_id)
        await self._ledger.log_transaction(
            user_id=subscription.user_id,
            message="Subscription extended" if change.extended else "Subscription activated",
            details={
                "subscription_id": subscription.id,
                "activation_method": change.activation_method.value,
                "granted_plan": change.granted_plan.value,
                "previous_plan": change.previous_plan.value if change.previous_plan else None,
                "plan": subscription.plan.value,
                "days_added": PLAN_DAYS[change.granted_plan],
                "total_days": subscription.total_days,
                "expires_at": subscription.expires_at.isoformat(),
            },
            correlation_id=correlation_id,
        )

    async def get_subscription_status(self, user_id: str) -> Optional[SubscriptionView]:
        """
        The user's active subscription with derived fields, or None.

        A record whose window has lapsed is reconciled to `active=False`
        on the way out and reported as None.
        """
        now = self._clock()
        subscription = await self._load_active(user_id)
        if subscription is None:
            return None

        if subscription.is_expired(now):
            await self._deactivate(subscription, now)
            return None
        return subscription.to_view(now)

    async def get_subscription_history(self, user_id: str) -> List[SubscriptionView]:
        now = self._clock()
        return [s.to_view(now) for s in await self._db.get_user_subscriptions(user_id)]

    async def delete_user_subscriptions(self, user_id: str) -> int:
        """Cascade hook for account deletion; the only path that removes records."""
        deleted = await self._db.delete_user_subscriptions(user_id)
        await self._invalidate(user_id)
        await self._ledger.log_transaction(
            user_id=user_id,
            message="User subscriptions deleted",
            details={"deleted": deleted},
        )
        return deleted

    async def _deactivate(self, subscription: Subscription, now: datetime) -> None:
        expected_version = subscription.version
        if subscription.reconcile(now):
            updated = await self._db.update_subscription(subscription, expected_version)
            if updated:
                logger.info("Deactivated lapsed subscription %s", subscription.id)
        # Either we wrote it or someone else changed it; the cached copy is stale.
        await self._invalidate(subscription.user_id)

    async def _load_active(self, user_id: str) -> Optional[Subscription]:
        cache_key = self._status_cache_key(user_id)
        if self._cache:
            cached = await self._cache.get(cache_key)
            if isinstance(cached, dict):
                try:
                    return Subscription.model_validate(cached)
                except ValueError:
                    logger.warning("Discarding unreadable cached subscription for %s", user_id)
                    await self._cache.delete(cache_key)

        subscription = await self._db.get_active_subscription(user_id)
        if subscription is not None and self._cache:
            await self._cache.set(
                cache_key,
                subscription.model_dump(mode="json"),
                ttl_seconds=self._cache_ttl_seconds,
            )
        return subscription

    async def _invalidate(self, user_id: str) -> None:
        if self._cache:
            await self._cache.delete(self._status_cache_key(user_id))

    @staticmethod
    def _status_cache_key(user_id: str) -> str:
        return f"entitlements:subscription:user:{user_id}:active"
