from __future__ import annotations

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, IndexSpec, utcnow
from .plan import PLAN_DAYS, PLAN_PRIORITY, Plan, parse_plan


_DAY = timedelta(days=1)


class ActivationMethod(str, Enum):
    SIGNUP = "signup"
    CODE = "code"
    PAYMENT = "payment"


class Subscription(DBSerializableModel):
    """
    A user's entitlement window.

    `expires_at` is set once at creation (`activated_at + total_days`) and
    only moves forward through `extend`. The stored `active` flag can be
    stale; readers should rely on `is_expired` / `days_remaining`.
    """

    collection_name: ClassVar[str] = "subscriptions"
    indexes: ClassVar[List[IndexSpec]] = [
        IndexSpec(fields=["user_id"], unique=True, partial_filter={"active": True}),
        IndexSpec(fields=["active", "expires_at"]),
    ]

    id: Optional[str] = Field(default=None)
    user_id: str
    plan: Plan
    total_days: int = Field(description="Cumulative days granted, grows with extensions.")
    active: bool = True
    activated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    activation_method: ActivationMethod
    version: int = Field(default=0, description="Optimistic concurrency token.")
    granted_codes: List[str] = Field(
        default_factory=list,
        description="Activation codes whose days are included in this window.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def open_window(
        cls,
        user_id: str,
        plan: Plan | str,
        activation_method: ActivationMethod,
        now: Optional[datetime] = None,
    ) -> "Subscription":
        now = now or utcnow()
        plan = parse_plan(plan)
        days = PLAN_DAYS[plan]
        return cls(
            user_id=user_id,
            plan=plan,
            total_days=days,
            active=True,
            activated_at=now,
            expires_at=now + timedelta(days=days),
            activation_method=activation_method,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        if not self.active or self.is_expired(now):
            return 0
        return max(0, math.ceil((self.expires_at - now) / _DAY))

    def upgrade_plan(self, new_plan: Plan | str) -> bool:
        """
        Switch to `new_plan` only if it ranks strictly higher.

        Downgrades and same-tier requests are ignored. Because the trial
        ranks lowest, any paid plan replaces it.
        """
        new_plan = parse_plan(new_plan)
        if PLAN_PRIORITY[new_plan] > PLAN_PRIORITY[self.plan]:
            self.plan = new_plan
            return True
        return False

    def extend(
        self,
        additional_days: int,
        new_plan: Plan | str | None = None,
        now: Optional[datetime] = None,
    ) -> "Subscription":
        """
        Add `additional_days` to the window.

        A live window is stacked on (starts at the current `expires_at`);
        a lapsed one restarts from `now`.
        """
        if additional_days <= 0:
            raise ValueError("additional_days must be positive")
        now = now or utcnow()

        start = now if self.is_expired(now) else self.expires_at
        self.expires_at = start + timedelta(days=additional_days)
        self.total_days += additional_days
        self.active = True
        if new_plan is not None:
            self.upgrade_plan(new_plan)
        self.updated_at = now
        return self

    def reconcile(self, now: Optional[datetime] = None) -> bool:
        """Clear the stored `active` flag once the window has lapsed. Returns True if changed."""
        now = now or utcnow()
        if self.active and self.is_expired(now):
            self.active = False
            self.updated_at = now
            return True
        return False

    def to_view(self, now: Optional[datetime] = None) -> "SubscriptionView":
        now = now or utcnow()
        expired = self.is_expired(now)
        return SubscriptionView(
            id=self.id,
            user_id=self.user_id,
            plan=self.plan,
            total_days=self.total_days,
            active=self.active and not expired,
            activated_at=self.activated_at,
            expires_at=self.expires_at,
            activation_method=self.activation_method,
            days_remaining=self.days_remaining(now),
            is_expired=expired,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class SubscriptionView(BaseModel):
    """Read model: stored fields plus values derived at read time."""

    id: Optional[str] = None
    user_id: str
    plan: Plan
    total_days: int
    active: bool
    activated_at: datetime
    expires_at: datetime
    activation_method: ActivationMethod
    days_remaining: int
    is_expired: bool
    created_at: datetime
    updated_at: datetime
