from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from .base import BaseDBManager
from ..exceptions import (
    ConflictError,
    DuplicateActiveSubscriptionError,
    DuplicateBatchNameError,
    DuplicateCodeError,
    StoreUnavailableError,
)
from ..models.activation_code import ActivationCode
from ..models.base import DBSerializableModel, PaginatedResult, utcnow
from ..models.code_batch import BatchStatus, CodeBatch
from ..models.ledger import LedgerEntry
from ..models.plan import Plan
from ..models.subscription import Subscription
from ..schema_generator import MODEL_REGISTRY


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

_current_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "entitlements_mongo_session", default=None
)


@contextmanager
def _store_errors(duplicate: Optional[Type[ConflictError]] = None, message: str = "") -> Iterator[None]:
    """Translate driver errors into the package's error taxonomy."""
    try:
        yield
    except DuplicateKeyError as exc:
        if duplicate is None:
            raise
        raise duplicate(message or str(exc)) from exc
    except ConnectionFailure as exc:
        raise StoreUnavailableError(f"MongoDB unavailable: {exc}") from exc


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    Uniqueness guarantees rely on the indexes created by `ensure_indexes()`.
    With `use_transactions=True` (replica set required) `transaction()`
    opens a multi-document transaction and every call made inside it joins
    the same session; otherwise only single-document writes are atomic.
    """

    def __init__(self, database: AsyncIOMotorDatabase, use_transactions: bool = False) -> None:
        self._db = database
        self._use_transactions = use_transactions

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str, use_transactions: bool = False) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name], use_transactions=use_transactions)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if not self._use_transactions or _current_session.get() is not None:
            yield
            return

        with _store_errors():
            session = await self._db.client.start_session()
        async with session:
            async with session.start_transaction():
                token = _current_session.set(session)
                try:
                    yield
                finally:
                    _current_session.reset(token)

    async def ensure_indexes(self) -> None:
        for model in MODEL_REGISTRY:
            col = self._db[model.collection_name]
            for index in model.indexes:
                options: Dict[str, Any] = {"name": index.name, "unique": index.unique}
                if index.partial_filter:
                    options["partialFilterExpression"] = index.partial_filter
                with _store_errors():
                    await col.create_index([(f, ASCENDING) for f in index.fields], **options)
                logger.debug("Ensured index %s on %s", index.name, model.collection_name)

    # Helper utilities
    @staticmethod
    def _session() -> Optional[AsyncIOMotorClientSession]:
        return _current_session.get()

    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
        data = model.serialize_for_db()
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return model_cls.model_validate(data)

    def _decode_all(self, model_cls: Type[TModel], docs: Iterable[Mapping[str, Any]]) -> List[TModel]:
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    # Batch operations
    async def add_code_batch(self, batch: CodeBatch) -> CodeBatch:
        col = self._db[CodeBatch.collection_name]
        data = self._prepare_insert(batch)
        with _store_errors(DuplicateBatchNameError, f"batch name {batch.name!r} already exists"):
            await col.insert_one(data, session=self._session())
        return batch

    async def get_code_batch(self, batch_id: str) -> Optional[CodeBatch]:
        col = self._db[CodeBatch.collection_name]
        with _store_errors():
            doc = await col.find_one({"_id": batch_id}, session=self._session())
        return self._decode(CodeBatch, doc)

    async def find_code_batch(self, name: str, created_by: Optional[str]) -> Optional[CodeBatch]:
        col = self._db[CodeBatch.collection_name]
        with _store_errors():
            doc = await col.find_one({"name": name, "created_by": created_by}, session=self._session())
        return self._decode(CodeBatch, doc)

    async def update_code_batch(self, batch: CodeBatch) -> CodeBatch:
        col = self._db[CodeBatch.collection_name]
        data = self._prepare_update(batch)
        with _store_errors(DuplicateBatchNameError):
            await col.replace_one({"_id": data["_id"]}, data, upsert=False, session=self._session())
        return batch

    async def transition_code_batch(
        self,
        batch_id: str,
        from_status: BatchStatus,
        to_status: BatchStatus,
        updated_at: datetime,
    ) -> Optional[CodeBatch]:
        col = self._db[CodeBatch.collection_name]
        with _store_errors():
            doc = await col.find_one_and_update(
                {"_id": batch_id, "status": BatchStatus(from_status).value},
                {"$set": {"status": BatchStatus(to_status).value, "updated_at": updated_at}},
                return_document=ReturnDocument.AFTER,
                session=self._session(),
            )
        return self._decode(CodeBatch, doc)

    async def delete_code_batch(self, batch_id: str) -> None:
        col = self._db[CodeBatch.collection_name]
        with _store_errors():
            await col.delete_one({"_id": batch_id}, session=self._session())

    async def list_code_batches(
        self,
        created_by: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        plan: Optional[Plan] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> PaginatedResult:
        col = self._db[CodeBatch.collection_name]
        query: Dict[str, Any] = {}
        if created_by is not None:
            query["created_by"] = created_by
        if status is not None:
            query["status"] = BatchStatus(status).value
        if plan is not None:
            query["plan"] = Plan(plan).value

        with _store_errors():
            total = await col.count_documents(query, session=self._session())
            cursor = (
                col.find(query, session=self._session())
                .sort("created_at", DESCENDING)
                .skip(offset)
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        return PaginatedResult(
            items=self._decode_all(CodeBatch, docs), total=total, limit=limit, offset=offset
        )

    async def increment_batch_codes_used(self, batch_id: str) -> bool:
        col = self._db[CodeBatch.collection_name]
        with _store_errors():
            result = await col.update_one(
                {
                    "_id": batch_id,
                    "$expr": {"$lt": ["$codes_used", "$codes_generated"]},
                },
                {"$inc": {"codes_used": 1}, "$set": {"updated_at": utcnow()}},
                session=self._session(),
            )
        return result.modified_count == 1

    async def set_batch_codes_used(
        self, batch_id: str, expected: int, codes_used: int, updated_at: datetime
    ) -> bool:
        col = self._db[CodeBatch.collection_name]
        with _store_errors():
            result = await col.update_one(
                {"_id": batch_id, "codes_used": expected},
                {"$set": {"codes_used": codes_used, "updated_at": updated_at}},
                session=self._session(),
            )
        return result.matched_count == 1

    # Activation code operations
    async def add_activation_code(self, code: ActivationCode) -> ActivationCode:
        col = self._db[ActivationCode.collection_name]
        data = self._prepare_insert(code)
        with _store_errors(DuplicateCodeError, f"activation code {code.code} already exists"):
            await col.insert_one(data, session=self._session())
        return code

    async def get_activation_code(self, code: str) -> Optional[ActivationCode]:
        col = self._db[ActivationCode.collection_name]
        with _store_errors():
            doc = await col.find_one({"code": code}, session=self._session())
        return self._decode(ActivationCode, doc)

    async def claim_activation_code(
        self, code: str, user_id: str, used_at: datetime
    ) -> Optional[ActivationCode]:
        col = self._db[ActivationCode.collection_name]
        with _store_errors():
            doc = await col.find_one_and_update(
                {"code": code, "is_used": False},
                {
                    "$set": {
                        "is_used": True,
                        "used_by": user_id,
                        "used_at": used_at,
                        "pending_since": used_at,
                    }
                },
                return_document=ReturnDocument.AFTER,
                session=self._session(),
            )
        return self._decode(ActivationCode, doc)

    async def confirm_activation_code(self, code: str, user_id: str) -> bool:
        col = self._db[ActivationCode.collection_name]
        with _store_errors():
            result = await col.update_one(
                {"code": code, "used_by": user_id, "pending_since": {"$ne": None}},
                {"$set": {"pending_since": None}},
                session=self._session(),
            )
        return result.modified_count == 1

    async def release_activation_code(self, code: str, user_id: str) -> bool:
        col = self._db[ActivationCode.collection_name]
        with _store_errors():
            result = await col.update_one(
                {"code": code, "used_by": user_id, "pending_since": {"$ne": None}},
                {"$set": {"is_used": False, "used_by": None, "used_at": None, "pending_since": None}},
                session=self._session(),
            )
        return result.modified_count == 1

    async def get_pending_activation_codes(self, claimed_before: datetime) -> List[ActivationCode]:
        col = self._db[ActivationCode.collection_name]
        with _store_errors():
            cursor = col.find(
                {"pending_since": {"$ne": None, "$lte": claimed_before}}, session=self._session()
            ).sort("pending_since", ASCENDING)
            docs = await cursor.to_list(length=None)
        return self._decode_all(ActivationCode, docs)

    async def delete_activation_codes(self, code_ids: Iterable[str]) -> int:
        col = self._db[ActivationCode.collection_name]
        ids = list(code_ids)
        if not ids:
            return 0
        with _store_errors():
            result = await col.delete_many({"_id": {"$in": ids}}, session=self._session())
        return result.deleted_count

    async def get_codes_for_batch(self, batch_id: str) -> List[ActivationCode]:
        col = self._db[ActivationCode.collection_name]
        with _store_errors():
            cursor = col.find({"batch_id": batch_id}, session=self._session()).sort("created_at", DESCENDING)
            docs = await cursor.to_list(length=None)
        return self._decode_all(ActivationCode, docs)

    async def count_used_codes_for_batch(self, batch_id: str) -> int:
        col = self._db[ActivationCode.collection_name]
        with _store_errors():
            return await col.count_documents({"batch_id": batch_id, "is_used": True}, session=self._session())

    async def get_used_activation_codes(self) -> List[ActivationCode]:
        col = self._db[ActivationCode.collection_name]
        with _store_errors():
            cursor = col.find({"is_used": True}, session=self._session()).sort("used_at", DESCENDING)
            docs = await cursor.to_list(length=None)
        return self._decode_all(ActivationCode, docs)

    # Subscription operations
    async def add_subscription(self, subscription: Subscription) -> Subscription:
        col = self._db[Subscription.collection_name]
        data = self._prepare_insert(subscription)
        with _store_errors(
            DuplicateActiveSubscriptionError,
            f"user {subscription.user_id} already has an active subscription",
        ):
            await col.insert_one(data, session=self._session())
        return subscription

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        with _store_errors():
            cursor = (
                col.find({"user_id": user_id, "active": True}, session=self._session())
                .sort("created_at", DESCENDING)
                .limit(1)
            )
            docs = await cursor.to_list(length=1)
        return self._decode(Subscription, docs[0]) if docs else None

    async def get_user_subscriptions(self, user_id: str) -> List[Subscription]:
        col = self._db[Subscription.collection_name]
        with _store_errors():
            cursor = col.find({"user_id": user_id}, session=self._session()).sort("created_at", DESCENDING)
            docs = await cursor.to_list(length=None)
        return self._decode_all(Subscription, docs)

    async def update_subscription(self, subscription: Subscription, expected_version: int) -> bool:
        col = self._db[Subscription.collection_name]
        data = self._prepare_update(subscription)
        data["version"] = expected_version + 1
        with _store_errors(
            DuplicateActiveSubscriptionError,
            f"user {subscription.user_id} already has an active subscription",
        ):
            result = await col.replace_one(
                {"_id": data["_id"], "version": expected_version},
                data,
                upsert=False,
                session=self._session(),
            )
        if result.matched_count != 1:
            return False
        subscription.version = expected_version + 1
        return True

    async def deactivate_expired_subscriptions(self, as_of: datetime) -> int:
        col = self._db[Subscription.collection_name]
        with _store_errors():
            result = await col.update_many(
                {"active": True, "expires_at": {"$lte": as_of}},
                {"$set": {"active": False, "updated_at": as_of}, "$inc": {"version": 1}},
                session=self._session(),
            )
        return result.modified_count

    async def delete_user_subscriptions(self, user_id: str) -> int:
        col = self._db[Subscription.collection_name]
        with _store_errors():
            result = await col.delete_many({"user_id": user_id}, session=self._session())
        return result.deleted_count

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        with _store_errors():
            await col.insert_one(data, session=self._session())
        return entry
