from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional

from .base import BaseDBManager
from ..exceptions import (
    DuplicateActiveSubscriptionError,
    DuplicateBatchNameError,
    DuplicateCodeError,
)
from ..models.activation_code import ActivationCode
from ..models.base import PaginatedResult, utcnow
from ..models.code_batch import BatchStatus, CodeBatch
from ..models.ledger import LedgerEntry
from ..models.plan import Plan
from ..models.subscription import Subscription


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Every operation yields to the event loop first, like a network round
    trip would, so concurrent callers really interleave. Each conditional
    write then runs without further suspension, which makes it atomic.
    Stored models are copies; callers never share state with the store.
    """

    def __init__(self) -> None:
        self._batches: Dict[str, CodeBatch] = {}
        self._codes: Dict[str, ActivationCode] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @staticmethod
    async def _io() -> None:
        await asyncio.sleep(0)

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; this is a no-op.
        yield

    # Batch operations
    async def add_code_batch(self, batch: CodeBatch) -> CodeBatch:
        await self._io()
        for existing in self._batches.values():
            if existing.name == batch.name and existing.created_by == batch.created_by:
                raise DuplicateBatchNameError(f"batch name {batch.name!r} already exists")
        if batch.id is None:
            batch.id = self._next_id()
        self._batches[batch.id] = batch.model_copy(deep=True)
        return batch

    async def get_code_batch(self, batch_id: str) -> Optional[CodeBatch]:
        await self._io()
        batch = self._batches.get(batch_id)
        return batch.model_copy(deep=True) if batch else None

    async def find_code_batch(self, name: str, created_by: Optional[str]) -> Optional[CodeBatch]:
        await self._io()
        for batch in self._batches.values():
            if batch.name == name and batch.created_by == created_by:
                return batch.model_copy(deep=True)
        return None

    async def update_code_batch(self, batch: CodeBatch) -> CodeBatch:
        await self._io()
        if batch.id is None or batch.id not in self._batches:
            raise ValueError("CodeBatch must exist to be updated")
        self._batches[batch.id] = batch.model_copy(deep=True)
        return batch

    async def transition_code_batch(
        self,
        batch_id: str,
        from_status: BatchStatus,
        to_status: BatchStatus,
        updated_at: datetime,
    ) -> Optional[CodeBatch]:
        await self._io()
        stored = self._batches.get(batch_id)
        if stored is None or stored.status != from_status:
            return None
        stored.status = to_status
        stored.updated_at = updated_at
        return stored.model_copy(deep=True)

    async def delete_code_batch(self, batch_id: str) -> None:
        await self._io()
        self._batches.pop(batch_id, None)

    async def list_code_batches(
        self,
        created_by: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        plan: Optional[Plan] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> PaginatedResult:
        await self._io()
        matches = [
            b
            for b in self._batches.values()
            if (created_by is None or b.created_by == created_by)
            and (status is None or b.status == status)
            and (plan is None or b.plan == plan)
        ]
        matches.sort(key=lambda b: b.created_at, reverse=True)
        page = matches[offset : offset + limit]
        return PaginatedResult(
            items=[b.model_copy(deep=True) for b in page],
            total=len(matches),
            limit=limit,
            offset=offset,
        )

    async def increment_batch_codes_used(self, batch_id: str) -> bool:
        await self._io()
        batch = self._batches.get(batch_id)
        if batch is None or batch.codes_used >= batch.codes_generated:
            return False
        batch.codes_used += 1
        batch.updated_at = utcnow()
        return True

    async def set_batch_codes_used(
        self, batch_id: str, expected: int, codes_used: int, updated_at: datetime
    ) -> bool:
        await self._io()
        batch = self._batches.get(batch_id)
        if batch is None or batch.codes_used != expected:
            return False
        batch.codes_used = codes_used
        batch.updated_at = updated_at
        return True

    # Activation code operations
    async def add_activation_code(self, code: ActivationCode) -> ActivationCode:
        await self._io()
        if code.code in self._codes:
            raise DuplicateCodeError(f"activation code {code.code} already exists")
        if code.id is None:
            code.id = self._next_id()
        self._codes[code.code] = code.model_copy(deep=True)
        return code

    async def get_activation_code(self, code: str) -> Optional[ActivationCode]:
        await self._io()
        stored = self._codes.get(code)
        return stored.model_copy(deep=True) if stored else None

    async def claim_activation_code(
        self, code: str, user_id: str, used_at: datetime
    ) -> Optional[ActivationCode]:
        await self._io()
        stored = self._codes.get(code)
        if stored is None or stored.is_used:
            return None
        stored.is_used = True
        stored.used_by = user_id
        stored.used_at = used_at
        stored.pending_since = used_at
        return stored.model_copy(deep=True)

    def _pending_claim(self, code: str, user_id: str) -> Optional[ActivationCode]:
        stored = self._codes.get(code)
        if stored is None or stored.used_by != user_id or stored.pending_since is None:
            return None
        return stored

    async def confirm_activation_code(self, code: str, user_id: str) -> bool:
        await self._io()
        stored = self._pending_claim(code, user_id)
        if stored is None:
            return False
        stored.pending_since = None
        return True

    async def release_activation_code(self, code: str, user_id: str) -> bool:
        await self._io()
        stored = self._pending_claim(code, user_id)
        if stored is None:
            return False
        stored.is_used = False
        stored.used_by = None
        stored.used_at = None
        stored.pending_since = None
        return True

    async def get_pending_activation_codes(self, claimed_before: datetime) -> List[ActivationCode]:
        await self._io()
        pending = [
            c.model_copy(deep=True)
            for c in self._codes.values()
            if c.pending_since is not None and c.pending_since <= claimed_before
        ]
        pending.sort(key=lambda c: c.pending_since)
        return pending

    async def delete_activation_codes(self, code_ids: Iterable[str]) -> int:
        await self._io()
        ids = set(code_ids)
        doomed = [key for key, c in self._codes.items() if c.id in ids]
        for key in doomed:
            del self._codes[key]
        return len(doomed)

    async def get_codes_for_batch(self, batch_id: str) -> List[ActivationCode]:
        await self._io()
        codes = [c.model_copy(deep=True) for c in self._codes.values() if c.batch_id == batch_id]
        codes.sort(key=lambda c: c.created_at, reverse=True)
        return codes

    async def count_used_codes_for_batch(self, batch_id: str) -> int:
        await self._io()
        return sum(1 for c in self._codes.values() if c.batch_id == batch_id and c.is_used)

    async def get_used_activation_codes(self) -> List[ActivationCode]:
        await self._io()
        return [c.model_copy(deep=True) for c in self._codes.values() if c.is_used]

    # Subscription operations
    def _has_other_active(self, subscription: Subscription) -> bool:
        return any(
            s.user_id == subscription.user_id and s.active and s.id != subscription.id
            for s in self._subscriptions.values()
        )

    async def add_subscription(self, subscription: Subscription) -> Subscription:
        await self._io()
        if subscription.active and self._has_other_active(subscription):
            raise DuplicateActiveSubscriptionError(
                f"user {subscription.user_id} already has an active subscription"
            )
        if subscription.id is None:
            subscription.id = self._next_id()
        self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        await self._io()
        active = [s for s in self._subscriptions.values() if s.user_id == user_id and s.active]
        if not active:
            return None
        latest = max(active, key=lambda s: s.created_at)
        return latest.model_copy(deep=True)

    async def get_user_subscriptions(self, user_id: str) -> List[Subscription]:
        await self._io()
        subs = [s.model_copy(deep=True) for s in self._subscriptions.values() if s.user_id == user_id]
        subs.sort(key=lambda s: s.created_at, reverse=True)
        return subs

    async def update_subscription(self, subscription: Subscription, expected_version: int) -> bool:
        await self._io()
        if subscription.id is None:
            raise ValueError("Subscription must have id to be updated")
        stored = self._subscriptions.get(subscription.id)
        if stored is None or stored.version != expected_version:
            return False
        if subscription.active and self._has_other_active(subscription):
            raise DuplicateActiveSubscriptionError(
                f"user {subscription.user_id} already has an active subscription"
            )
        subscription.version = expected_version + 1
        self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return True

    async def deactivate_expired_subscriptions(self, as_of: datetime) -> int:
        await self._io()
        count = 0
        for sub in self._subscriptions.values():
            if sub.active and sub.expires_at <= as_of:
                sub.active = False
                sub.version += 1
                sub.updated_at = as_of
                count += 1
        return count

    async def delete_user_subscriptions(self, user_id: str) -> int:
        await self._io()
        doomed = [sid for sid, s in self._subscriptions.items() if s.user_id == user_id]
        for sid in doomed:
            del self._subscriptions[sid]
        return len(doomed)

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        await self._io()
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry
