from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from entitlements.cache.memory import InMemoryAsyncCache
from entitlements.codes.generator import SecureCodeGenerator
from entitlements.db.memory import InMemoryDBManager
from entitlements.logging.ledger_logger import LedgerLogger
from entitlements.services.code_service import CodeService
from entitlements.services.redemption_service import RedemptionService
from entitlements.services.subscription_service import SubscriptionService


T0 = datetime(2025, 1, 1, 12, 0, 0)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db():
    return InMemoryDBManager()


@pytest.fixture
def ledger(db, tmp_path):
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def subscriptions(db, ledger, clock):
    return SubscriptionService(db=db, ledger=ledger, cache=InMemoryAsyncCache(), clock=clock)


@pytest.fixture
def codes(db, ledger, clock):
    return CodeService(db=db, ledger=ledger, generator=SecureCodeGenerator(), clock=clock)


@pytest.fixture
def redemptions(db, ledger, subscriptions, clock):
    return RedemptionService(
        db=db,
        ledger=ledger,
        subscription_service=subscriptions,
        counter_backoff_seconds=0,
        clock=clock,
    )
