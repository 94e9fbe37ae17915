from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional

from ..models.activation_code import ActivationCode
from ..models.base import PaginatedResult
from ..models.code_batch import BatchStatus, CodeBatch
from ..models.ledger import LedgerEntry
from ..models.plan import Plan
from ..models.subscription import Subscription


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (MongoDB, in-memory) must provide:
    - a unique constraint on activation codes, raised as `DuplicateCodeError`
    - a unique (name, created_by) constraint on batches, raised as
      `DuplicateBatchNameError`
    - at most one active subscription per user, raised as
      `DuplicateActiveSubscriptionError`
    - atomic conditional updates for code claims, batch counters and
      versioned subscription writes

    Connection failures surface as `StoreUnavailableError`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Should rollback on exception and commit on success.
        """
        yield

    # Batch operations
    @abstractmethod
    async def add_code_batch(self, batch: CodeBatch) -> CodeBatch: ...

    @abstractmethod
    async def get_code_batch(self, batch_id: str) -> Optional[CodeBatch]: ...

    @abstractmethod
    async def find_code_batch(self, name: str, created_by: Optional[str]) -> Optional[CodeBatch]: ...

    @abstractmethod
    async def update_code_batch(self, batch: CodeBatch) -> CodeBatch:
        """
        Whole-record write. Only safe while the batch is still being
        generated; redemptions touch `codes_used` once it is completed.
        """
        ...

    @abstractmethod
    async def transition_code_batch(
        self,
        batch_id: str,
        from_status: BatchStatus,
        to_status: BatchStatus,
        updated_at: datetime,
    ) -> Optional[CodeBatch]:
        """
        Set `status` to `to_status` only if it is still `from_status`,
        leaving every other field alone. Returns the updated batch, or
        None if the batch is missing or in another state.
        """
        ...

    @abstractmethod
    async def delete_code_batch(self, batch_id: str) -> None: ...

    @abstractmethod
    async def list_code_batches(
        self,
        created_by: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        plan: Optional[Plan] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> PaginatedResult:
        """Batches matching the filters, newest first."""
        ...

    @abstractmethod
    async def increment_batch_codes_used(self, batch_id: str) -> bool:
        """
        Durable `codes_used += 1`, applied only while
        `codes_used < codes_generated`. Returns False if nothing changed.
        """
        ...

    @abstractmethod
    async def set_batch_codes_used(
        self, batch_id: str, expected: int, codes_used: int, updated_at: datetime
    ) -> bool:
        """Overwrite `codes_used` only if it still equals `expected`."""
        ...

    # Activation code operations
    @abstractmethod
    async def add_activation_code(self, code: ActivationCode) -> ActivationCode: ...

    @abstractmethod
    async def get_activation_code(self, code: str) -> Optional[ActivationCode]: ...

    @abstractmethod
    async def claim_activation_code(
        self, code: str, user_id: str, used_at: datetime
    ) -> Optional[ActivationCode]:
        """
        Compare-and-swap `is_used: false -> true`, setting `used_by`,
        `used_at` and `pending_since` in the same write. Returns the
        claimed code, or None if the code is missing or was already used.
        """
        ...

    @abstractmethod
    async def confirm_activation_code(self, code: str, user_id: str) -> bool:
        """Clear `pending_since` on a claim held by `user_id`. False if it was not pending."""
        ...

    @abstractmethod
    async def release_activation_code(self, code: str, user_id: str) -> bool:
        """
        Undo a pending claim made by `user_id`. Confirmed claims are never
        released. Returns False if nothing changed.
        """
        ...

    @abstractmethod
    async def get_pending_activation_codes(self, claimed_before: datetime) -> List[ActivationCode]:
        """Claims still pending that were made at or before `claimed_before`, oldest first."""
        ...

    @abstractmethod
    async def delete_activation_codes(self, code_ids: Iterable[str]) -> int: ...

    @abstractmethod
    async def get_codes_for_batch(self, batch_id: str) -> List[ActivationCode]:
        """Codes of a batch, newest first."""
        ...

    @abstractmethod
    async def count_used_codes_for_batch(self, batch_id: str) -> int: ...

    @abstractmethod
    async def get_used_activation_codes(self) -> List[ActivationCode]: ...

    # Subscription operations
    @abstractmethod
    async def add_subscription(self, subscription: Subscription) -> Subscription:
        """Conditional insert: fails if the user already has an active record."""
        ...

    @abstractmethod
    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        """Most recently created record with the stored `active` flag set."""
        ...

    @abstractmethod
    async def get_user_subscriptions(self, user_id: str) -> List[Subscription]: ...

    @abstractmethod
    async def update_subscription(self, subscription: Subscription, expected_version: int) -> bool:
        """
        Replace the stored record only if its version still equals
        `expected_version`. On success the version is bumped both in the
        store and on `subscription`.
        """
        ...

    @abstractmethod
    async def deactivate_expired_subscriptions(self, as_of: datetime) -> int: ...

    @abstractmethod
    async def delete_user_subscriptions(self, user_id: str) -> int: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
