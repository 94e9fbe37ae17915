from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from entitlements.db.memory import InMemoryDBManager
from entitlements.exceptions import (
    BatchArchivedError,
    BatchExpiredError,
    CodeAlreadyUsedError,
    CodeNotFoundError,
    ConcurrentUpdateError,
    InvalidPlanError,
    MalformedCodeError,
    PaymentNotVerifiedError,
    StoreUnavailableError,
)
from entitlements.logging.ledger_logger import LedgerLogger
from entitlements.models.code_batch import BatchStatus
from entitlements.models.ledger import LedgerEventType
from entitlements.models.plan import Plan
from entitlements.models.results import RedemptionResult
from entitlements.models.subscription import ActivationMethod
from entitlements.services.code_service import CodeService
from entitlements.services.redemption_service import RedemptionService
from entitlements.services.subscription_service import SubscriptionService


class FlakyCounterDB(InMemoryDBManager):
    """Fails the first `failures` batch counter increments."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.increment_calls = 0

    async def increment_batch_codes_used(self, batch_id: str) -> bool:
        self.increment_calls += 1
        if self.increment_calls <= self.failures:
            raise StoreUnavailableError("connection reset")
        return await super().increment_batch_codes_used(batch_id)


class FailingSubscriptionService(SubscriptionService):
    async def write_entitlement(self, user_id, plan, activation_method, code=None, correlation_id=None):
        raise ConcurrentUpdateError("simulated contention")


class LostReplySubscriptionService(SubscriptionService):
    """Stores the grant, then reports a dropped connection."""

    async def write_entitlement(self, user_id, plan, activation_method, code=None, correlation_id=None):
        await super().write_entitlement(
            user_id, plan, activation_method, code=code, correlation_id=correlation_id
        )
        raise StoreUnavailableError("connection reset after write")


class LedgerOutageDB(InMemoryDBManager):
    """Rejects the first ledger entry carrying `message`."""

    def __init__(self, message: str) -> None:
        super().__init__()
        self.message = message
        self.rejected = False

    async def add_ledger_entry(self, entry):
        if entry.message == self.message and not self.rejected:
            self.rejected = True
            raise StoreUnavailableError("ledger write timed out")
        return await super().add_ledger_entry(entry)


class SlowArchiveDB(InMemoryDBManager):
    """Batch status changes take many round trips to land."""

    async def transition_code_batch(self, *args, **kwargs):
        for _ in range(50):
            await asyncio.sleep(0)
        return await super().transition_code_batch(*args, **kwargs)


def build_services(db, tmp_path, clock, subscription_cls=SubscriptionService):
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    codes = CodeService(db=db, ledger=ledger, clock=clock)
    subscriptions = subscription_cls(db=db, ledger=ledger, clock=clock)
    redemptions = RedemptionService(
        db=db,
        ledger=ledger,
        subscription_service=subscriptions,
        counter_backoff_seconds=0,
        clock=clock,
    )
    return codes, subscriptions, redemptions


async def issue(codes, plan, count=1, **kwargs):
    result = await codes.generate_codes(plan, count, created_by="admin-1", **kwargs)
    return result


@pytest.mark.asyncio
async def test_code_on_trial_upgrades_and_stacks(subscriptions, codes, redemptions, db, clock):
    trial = await subscriptions.start_trial("user-1")
    assert trial.plan == Plan.THREE_DAYS

    issued = await issue(codes, Plan.ONE_YEAR, batch_name="yearly")
    code = issued.codes[0]

    result = await redemptions.redeem_code(code.formatted_code, "user-1")

    assert result.extended is True
    assert result.subscription.plan == Plan.ONE_YEAR
    assert result.subscription.total_days == 368
    assert result.subscription.expires_at == clock() + timedelta(days=368)
    assert result.subscription.days_remaining == 368
    assert result.code_info.days_added == 365
    assert result.code_info.batch_name == "yearly"

    stored = await db.get_activation_code(code.code)
    assert stored.is_used is True
    assert stored.used_by == "user-1"
    assert stored.used_at == clock()

    batch = await db.get_code_batch(issued.batch_info.id)
    assert batch.codes_used == 1

    status = await subscriptions.get_subscription_status("user-1")
    assert status.plan == Plan.ONE_YEAR
    assert status.total_days == 368


@pytest.mark.asyncio
async def test_first_redemption_opens_window(codes, redemptions, clock):
    issued = await issue(codes, Plan.THREE_MONTHS)

    result = await redemptions.redeem_code(issued.codes[0].code, "user-1")

    assert result.extended is False
    assert result.subscription.plan == Plan.THREE_MONTHS
    assert result.subscription.activation_method == ActivationMethod.CODE
    assert result.subscription.expires_at == clock() + timedelta(days=91)


@pytest.mark.asyncio
async def test_used_code_is_rejected_without_side_effects(codes, redemptions, subscriptions, db):
    issued = await issue(codes, Plan.SIX_MONTHS, batch_name="once")
    code = issued.codes[0].code
    await redemptions.redeem_code(code, "user-1")
    before = await subscriptions.get_subscription_status("user-1")

    with pytest.raises(CodeAlreadyUsedError) as excinfo:
        await redemptions.redeem_code(code, "user-2")

    assert excinfo.value.used_by == "user-1"
    assert excinfo.value.to_dict()["code"] == "CodeAlreadyUsedError"
    assert await subscriptions.get_subscription_status("user-2") is None

    with pytest.raises(CodeAlreadyUsedError):
        await redemptions.redeem_code(code, "user-1")
    after = await subscriptions.get_subscription_status("user-1")
    assert after.total_days == before.total_days == 182
    assert (await db.get_code_batch(issued.batch_info.id)).codes_used == 1


@pytest.mark.asyncio
async def test_concurrent_redemptions_of_one_code_have_one_winner(codes, redemptions, subscriptions):
    issued = await issue(codes, Plan.ONE_YEAR, batch_name="race")
    code = issued.codes[0].code

    outcomes = await asyncio.gather(
        redemptions.redeem_code(code, "user-1"),
        redemptions.redeem_code(code, "user-2"),
        return_exceptions=True,
    )

    winners = [o for o in outcomes if isinstance(o, RedemptionResult)]
    losers = [o for o in outcomes if isinstance(o, CodeAlreadyUsedError)]
    assert len(winners) == 1
    assert len(losers) == 1

    winner_id = winners[0].subscription.user_id
    loser_id = "user-2" if winner_id == "user-1" else "user-1"
    assert (await subscriptions.get_subscription_status(winner_id)).total_days == 365
    assert await subscriptions.get_subscription_status(loser_id) is None


@pytest.mark.asyncio
async def test_same_user_double_submit_adds_days_once(codes, redemptions, subscriptions, db):
    issued = await issue(codes, Plan.THREE_MONTHS, batch_name="double")
    code = issued.codes[0].code

    outcomes = await asyncio.gather(
        redemptions.redeem_code(code, "user-1"),
        redemptions.redeem_code(code, "user-1"),
        return_exceptions=True,
    )

    assert sum(isinstance(o, RedemptionResult) for o in outcomes) == 1
    assert sum(isinstance(o, CodeAlreadyUsedError) for o in outcomes) == 1
    assert (await subscriptions.get_subscription_status("user-1")).total_days == 91
    assert (await db.get_code_batch(issued.batch_info.id)).codes_used == 1


@pytest.mark.asyncio
async def test_concurrent_codes_for_one_user_both_count(codes, redemptions, subscriptions, db, clock):
    issued = await issue(codes, Plan.THREE_MONTHS, count=2, batch_name="pair")
    first, second = (c.code for c in issued.codes)

    results = await asyncio.gather(
        redemptions.redeem_code(first, "user-1"),
        redemptions.redeem_code(second, "user-1"),
    )

    assert sorted(r.extended for r in results) == [False, True]
    status = await subscriptions.get_subscription_status("user-1")
    assert status.total_days == 182
    assert status.expires_at == clock() + timedelta(days=182)
    assert len(await db.get_user_subscriptions("user-1")) == 1
    assert (await db.get_code_batch(issued.batch_info.id)).codes_used == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["", "ABC", "AKM3-QX7R-ZD99"])
async def test_malformed_code(redemptions, raw):
    with pytest.raises(MalformedCodeError):
        await redemptions.redeem_code(raw, "user-1")


@pytest.mark.asyncio
async def test_unknown_code(redemptions):
    with pytest.raises(CodeNotFoundError):
        await redemptions.redeem_code("AKM3-QX7R-ZD", "user-1")


@pytest.mark.asyncio
async def test_lowercase_input_with_separators_is_accepted(codes, redemptions):
    issued = await issue(codes, Plan.THREE_DAYS)
    formatted = issued.codes[0].formatted_code.lower().replace("-", " - ")

    result = await redemptions.redeem_code(formatted, "user-1")
    assert result.code_info.code == issued.codes[0].code


@pytest.mark.asyncio
async def test_expired_batch(codes, redemptions, subscriptions, db, clock):
    issued = await issue(
        codes, Plan.ONE_YEAR, batch_name="short-lived", expires_at=clock() + timedelta(days=1)
    )
    clock.advance(days=2)

    with pytest.raises(BatchExpiredError) as excinfo:
        await redemptions.redeem_code(issued.codes[0].code, "user-1")

    assert excinfo.value.batch_id == issued.batch_info.id
    assert not (await db.get_activation_code(issued.codes[0].code)).is_used
    assert await subscriptions.get_subscription_status("user-1") is None


@pytest.mark.asyncio
async def test_archived_batch(codes, redemptions, db):
    issued = await issue(codes, Plan.ONE_YEAR, batch_name="retired")
    await codes.archive_batch(issued.batch_info.id, created_by="admin-1")

    with pytest.raises(BatchArchivedError) as excinfo:
        await redemptions.redeem_code(issued.codes[0].code, "user-1")

    assert isinstance(excinfo.value, BatchExpiredError)
    assert not (await db.get_activation_code(issued.codes[0].code)).is_used


@pytest.mark.asyncio
async def test_claim_is_released_when_entitlement_fails(db, ledger, codes, clock):
    issued = await issue(codes, Plan.ONE_YEAR, batch_name="release")
    code = issued.codes[0].code
    failing = RedemptionService(
        db=db,
        ledger=ledger,
        subscription_service=FailingSubscriptionService(db=db, ledger=ledger, clock=clock),
        clock=clock,
    )

    with pytest.raises(ConcurrentUpdateError):
        await failing.redeem_code(code, "user-1")

    stored = await db.get_activation_code(code)
    assert stored.is_used is False
    assert stored.used_by is None
    assert stored.pending_since is None
    assert (await db.get_code_batch(issued.batch_info.id)).codes_used == 0


@pytest.mark.asyncio
async def test_counter_increment_is_retried(tmp_path, clock):
    db = FlakyCounterDB(failures=2)
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    codes = CodeService(db=db, ledger=ledger, clock=clock)
    subscriptions = SubscriptionService(db=db, ledger=ledger, clock=clock)
    redemptions = RedemptionService(
        db=db,
        ledger=ledger,
        subscription_service=subscriptions,
        counter_retries=3,
        counter_backoff_seconds=0,
        clock=clock,
    )
    issued = await codes.generate_codes(Plan.THREE_MONTHS, 1, batch_name="flaky")

    await redemptions.redeem_code(issued.codes[0].code, "user-1")

    assert db.increment_calls == 3
    assert (await db.get_code_batch(issued.batch_info.id)).codes_used == 1


@pytest.mark.asyncio
async def test_lost_counter_increment_is_recorded_and_reconcilable(tmp_path, clock):
    db = FlakyCounterDB(failures=10)
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    codes = CodeService(db=db, ledger=ledger, clock=clock)
    subscriptions = SubscriptionService(db=db, ledger=ledger, clock=clock)
    redemptions = RedemptionService(
        db=db,
        ledger=ledger,
        subscription_service=subscriptions,
        counter_retries=2,
        counter_backoff_seconds=0,
        clock=clock,
    )
    issued = await codes.generate_codes(Plan.THREE_MONTHS, 1, batch_name="lost")
    batch_id = issued.batch_info.id

    result = await redemptions.redeem_code(issued.codes[0].code, "user-1")

    assert result.subscription.total_days == 91
    assert (await db.get_code_batch(batch_id)).codes_used == 0
    errors = [e for e in db.ledger_entries if e.event_type == LedgerEventType.ERROR]
    assert errors[-1].message == "Batch usage increment failed"
    assert errors[-1].details["batch_id"] == batch_id

    repaired = await codes.reconcile_batch_usage(batch_id)
    assert repaired.codes_used == 1


@pytest.mark.asyncio
async def test_redemption_is_written_to_ledger(codes, redemptions, db, tmp_path):
    issued = await issue(codes, Plan.SIX_MONTHS)

    await redemptions.redeem_code(issued.codes[0].code, "user-1", correlation_id="req-42")

    entry = db.ledger_entries[-1]
    assert entry.message == "Activation code redeemed"
    assert entry.user_id == "user-1"
    assert entry.correlation_id == "req-42"
    assert entry.details["days_added"] == 182
    assert "Activation code redeemed" in (tmp_path / "ledger.log").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_payment_activation(redemptions, subscriptions, clock):
    result = await redemptions.activate_by_payment(
        "6months", "user-1", payment_verified=True, payment_reference="pay_123"
    )

    assert result.extended is False
    assert result.subscription.plan == Plan.SIX_MONTHS
    assert result.subscription.activation_method == ActivationMethod.PAYMENT
    assert result.subscription.expires_at == clock() + timedelta(days=182)

    again = await redemptions.activate_by_payment(Plan.THREE_MONTHS, "user-1", payment_verified=True)
    assert again.extended is True
    assert again.subscription.plan == Plan.SIX_MONTHS
    assert again.subscription.total_days == 273


@pytest.mark.asyncio
async def test_unverified_payment_grants_nothing(redemptions, subscriptions, db):
    with pytest.raises(PaymentNotVerifiedError):
        await redemptions.activate_by_payment(Plan.ONE_YEAR, "user-1", payment_verified=False)

    assert await subscriptions.get_subscription_status("user-1") is None
    assert db.ledger_entries[-1].event_type == LedgerEventType.ERROR


@pytest.mark.asyncio
async def test_payment_with_unknown_plan(redemptions):
    with pytest.raises(InvalidPlanError):
        await redemptions.activate_by_payment("forever", "user-1", payment_verified=True)


@pytest.mark.asyncio
async def test_ledger_failure_after_grant_keeps_code_spent(tmp_path, clock):
    db = LedgerOutageDB("Subscription activated")
    codes, subscriptions, redemptions = build_services(db, tmp_path, clock)
    issued = await codes.generate_codes(Plan.ONE_YEAR, 1, batch_name="outage", created_by="admin-1")
    code = issued.codes[0].code

    with pytest.raises(StoreUnavailableError):
        await redemptions.redeem_code(code, "user-1")

    stored = await db.get_activation_code(code)
    assert stored.is_used is True
    assert stored.used_by == "user-1"
    assert stored.pending_since is None

    with pytest.raises(CodeAlreadyUsedError):
        await redemptions.redeem_code(code, "user-1")
    with pytest.raises(CodeAlreadyUsedError):
        await redemptions.redeem_code(code, "user-2")

    status = await subscriptions.get_subscription_status("user-1")
    assert status.total_days == 365
    assert await subscriptions.get_subscription_status("user-2") is None
    # The batch counter missed this redemption; reconcile picks it up.
    assert (await codes.reconcile_batch_usage(issued.batch_info.id)).codes_used == 1


@pytest.mark.asyncio
async def test_grant_stored_before_error_keeps_claim_for_recovery(db, tmp_path, clock):
    codes, subscriptions, redemptions = build_services(
        db, tmp_path, clock, subscription_cls=LostReplySubscriptionService
    )
    issued = await codes.generate_codes(Plan.ONE_YEAR, 1, batch_name="lost-reply", created_by="admin-1")
    code = issued.codes[0].code

    with pytest.raises(StoreUnavailableError):
        await redemptions.redeem_code(code, "user-1")

    stored = await db.get_activation_code(code)
    assert stored.is_used is True
    assert stored.pending_since is not None

    clock.advance(minutes=10)
    recovered = await redemptions.recover_pending_claims()

    assert recovered.confirmed == [code]
    assert recovered.released == []
    assert (await db.get_activation_code(code)).pending_since is None
    assert (await db.get_code_batch(issued.batch_info.id)).codes_used == 1
    assert (await subscriptions.get_subscription_status("user-1")).total_days == 365


@pytest.mark.asyncio
async def test_recovery_releases_claim_orphaned_before_grant(codes, redemptions, subscriptions, db, clock):
    issued = await issue(codes, Plan.THREE_MONTHS, count=2, batch_name="orphans")
    orphan, fresh = issued.codes[0].code, issued.codes[1].code
    # Claimed, then the process died before any subscription write.
    await db.claim_activation_code(orphan, "user-1", clock())
    clock.advance(minutes=10)
    await db.claim_activation_code(fresh, "user-2", clock())

    recovered = await redemptions.recover_pending_claims()

    assert recovered.released == [orphan]
    assert recovered.confirmed == []
    assert (await db.get_activation_code(orphan)).is_used is False
    assert (await db.get_activation_code(fresh)).pending_since is not None
    assert db.ledger_entries[-1].message == "Pending code claims settled"

    result = await redemptions.redeem_code(orphan, "user-3")
    assert result.subscription.total_days == 91
    assert await subscriptions.get_subscription_status("user-1") is None


@pytest.mark.asyncio
async def test_recovery_leaves_completed_redemptions_alone(codes, redemptions, db, clock):
    issued = await issue(codes, Plan.THREE_MONTHS, batch_name="settled")
    await redemptions.redeem_code(issued.codes[0].code, "user-1")
    clock.advance(days=1)

    recovered = await redemptions.recover_pending_claims(older_than=timedelta(0))

    assert recovered.confirmed == []
    assert recovered.released == []
    assert (await db.get_activation_code(issued.codes[0].code)).is_used is True
    assert (await db.get_code_batch(issued.batch_info.id)).codes_used == 1


@pytest.mark.asyncio
async def test_archiving_during_redemption_keeps_usage_count(tmp_path, clock):
    db = SlowArchiveDB()
    codes, _, redemptions = build_services(db, tmp_path, clock)
    issued = await codes.generate_codes(Plan.THREE_MONTHS, 2, batch_name="closing", created_by="admin-1")
    batch_id = issued.batch_info.id

    result, archived = await asyncio.gather(
        redemptions.redeem_code(issued.codes[0].code, "user-1"),
        codes.archive_batch(batch_id, created_by="admin-1"),
    )

    assert result.subscription.total_days == 91
    batch = await db.get_code_batch(batch_id)
    assert batch.status == BatchStatus.ARCHIVED
    assert batch.codes_used == 1
    assert archived.codes_used == 1
