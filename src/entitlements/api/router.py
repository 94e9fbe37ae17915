from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ..cache.memory import InMemoryAsyncCache
from ..codes.generator import SecureCodeGenerator
from ..config import settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..exceptions import (
    CapacityError,
    ConflictError,
    EntitlementError,
    InputError,
    NotFoundError,
    StoreUnavailableError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.activation_code import ActivationCode
from ..models.api_models import GenerateCodesRequest, PaymentActivationRequest, RedeemCodeRequest
from ..models.base import PaginatedResult
from ..models.code_batch import CodeBatch
from ..models.results import ActivationResult, BatchDetail, GenerationResult, RedemptionResult
from ..models.subscription import SubscriptionView
from ..services.code_service import CodeService
from ..services.expiration_service import ExpirationService
from ..services.redemption_service import RedemptionService
from ..services.subscription_service import SubscriptionService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@dataclass
class EntitlementServices:
    db: BaseDBManager
    ledger: LedgerLogger
    codes: CodeService
    subscriptions: SubscriptionService
    redemptions: RedemptionService
    expiration: ExpirationService


def _create_db_manager() -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(
            settings.MONGO_URI,
            settings.MONGO_DB,
            use_transactions=settings.MONGO_USE_TRANSACTIONS,
        )
    logger.warning("ENTITLEMENTS_MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager()


def build_services(
    db: Optional[BaseDBManager] = None,
    ledger_path: Optional[Path] = None,
) -> EntitlementServices:
    db = db or _create_db_manager()
    ledger = LedgerLogger(db=db, file_path=ledger_path or Path(settings.LEDGER_FILE_PATH))
    generator = SecureCodeGenerator()
    subscriptions = SubscriptionService(db=db, ledger=ledger, cache=InMemoryAsyncCache())
    return EntitlementServices(
        db=db,
        ledger=ledger,
        codes=CodeService(db=db, ledger=ledger, generator=generator),
        subscriptions=subscriptions,
        redemptions=RedemptionService(
            db=db, ledger=ledger, subscription_service=subscriptions, generator=generator
        ),
        expiration=ExpirationService(db=db, ledger=ledger),
    )


_services: Optional[EntitlementServices] = None


def get_services() -> EntitlementServices:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identification (e.g. X-User-Id header).",
        )
    return x_user_id


def _http_error(exc: EntitlementError) -> HTTPException:
    if isinstance(exc, (InputError, CapacityError)):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, StoreUnavailableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=exc.to_dict())


@router.post("/activate/code", response_model=RedemptionResult)
async def activate_code(
    payload: RedeemCodeRequest,
    user_id: str = Depends(current_user_id),
    services: EntitlementServices = Depends(get_services),
    x_request_id: Optional[str] = Header(default=None, alias="X-Request-Id"),
) -> RedemptionResult:
    try:
        return await services.redemptions.redeem_code(payload.code, user_id, correlation_id=x_request_id)
    except EntitlementError as exc:
        raise _http_error(exc) from exc


@router.post("/activate/payment", response_model=ActivationResult)
async def activate_payment(
    payload: PaymentActivationRequest,
    user_id: str = Depends(current_user_id),
    services: EntitlementServices = Depends(get_services),
    x_request_id: Optional[str] = Header(default=None, alias="X-Request-Id"),
) -> ActivationResult:
    try:
        return await services.redemptions.activate_by_payment(
            payload.plan,
            user_id,
            payment_verified=payload.payment_verified,
            payment_reference=payload.payment_reference,
            correlation_id=x_request_id,
        )
    except EntitlementError as exc:
        raise _http_error(exc) from exc


@router.post("/trial", response_model=SubscriptionView, status_code=status.HTTP_201_CREATED)
async def start_trial(
    user_id: str = Depends(current_user_id),
    services: EntitlementServices = Depends(get_services),
) -> SubscriptionView:
    try:
        return await services.subscriptions.start_trial(user_id)
    except EntitlementError as exc:
        raise _http_error(exc) from exc


@router.get("/status", response_model=SubscriptionView)
async def subscription_status(
    user_id: str = Depends(current_user_id),
    services: EntitlementServices = Depends(get_services),
) -> SubscriptionView:
    try:
        view = await services.subscriptions.get_subscription_status(user_id)
    except EntitlementError as exc:
        raise _http_error(exc) from exc
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")
    return view


@router.post("/codes/generate", response_model=GenerationResult, status_code=status.HTTP_201_CREATED)
async def generate_codes(
    payload: GenerateCodesRequest,
    user_id: str = Depends(current_user_id),
    services: EntitlementServices = Depends(get_services),
    x_request_id: Optional[str] = Header(default=None, alias="X-Request-Id"),
) -> GenerationResult:
    try:
        return await services.codes.generate_codes(
            payload.plan,
            payload.count,
            batch_name=payload.batch_name,
            description=payload.description,
            expires_at=payload.expires_at,
            created_by=user_id,
            correlation_id=x_request_id,
        )
    except EntitlementError as exc:
        raise _http_error(exc) from exc


@router.get("/codes/usage", response_model=List[ActivationCode])
async def code_usage(
    user_id: str = Depends(current_user_id),
    services: EntitlementServices = Depends(get_services),
) -> List[ActivationCode]:
    return await services.codes.list_used_codes()


@router.get("/batches", response_model=PaginatedResult)
async def list_batches(
    batch_status: Optional[str] = Query(default=None, alias="status"),
    plan: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    user_id: str = Depends(current_user_id),
    services: EntitlementServices = Depends(get_services),
) -> PaginatedResult:
    try:
        return await services.codes.list_batches(
            created_by=user_id, status=batch_status, plan=plan, limit=limit, offset=offset
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/batches/{batch_id}", response_model=BatchDetail)
async def batch_detail(
    batch_id: str,
    user_id: str = Depends(current_user_id),
    services: EntitlementServices = Depends(get_services),
) -> BatchDetail:
    try:
        return await services.codes.get_batch_detail(batch_id, created_by=user_id)
    except EntitlementError as exc:
        raise _http_error(exc) from exc


@router.post("/batches/{batch_id}/archive", response_model=CodeBatch)
async def archive_batch(
    batch_id: str,
    user_id: str = Depends(current_user_id),
    services: EntitlementServices = Depends(get_services),
) -> CodeBatch:
    try:
        return await services.codes.archive_batch(batch_id, created_by=user_id)
    except EntitlementError as exc:
        raise _http_error(exc) from exc
