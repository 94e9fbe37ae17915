from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

from ..codes.generator import SecureCodeGenerator
from ..config import settings
from ..db.base import BaseDBManager
from ..exceptions import (
    BatchNotFoundError,
    BatchTooLargeError,
    CodeGenerationError,
    CollisionRiskError,
    ConcurrentUpdateError,
    DuplicateBatchNameError,
    DuplicateCodeError,
    InvalidBatchSizeError,
    InvalidBatchTransitionError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.activation_code import ActivationCode
from ..models.base import PaginatedResult, as_utc_naive, utcnow
from ..models.code_batch import BatchStatus, CodeBatch, GenerationStats
from ..models.plan import Plan, parse_plan
from ..models.results import (
    BatchCodeView,
    BatchDetail,
    BatchInfo,
    BatchSummary,
    GeneratedCode,
    GenerationResult,
    GenerationStatistics,
)


logger = logging.getLogger(__name__)


class CodeService:
    """
    Issues activation codes in batches and serves the batch admin views.

    A batch is all-or-nothing: if any code cannot be issued, every code
    already inserted and the batch row are removed before the error
    propagates.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        generator: Optional[SecureCodeGenerator] = None,
        max_batch_size: int = settings.MAX_BATCH_SIZE,
        collision_threshold: float = settings.COLLISION_PROBABILITY_THRESHOLD,
        max_attempts_per_code: int = settings.MAX_ATTEMPTS_PER_CODE,
        reconcile_retries: int = settings.COUNTER_INCREMENT_RETRIES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._generator = generator or SecureCodeGenerator()
        self._max_batch_size = max_batch_size
        self._collision_threshold = collision_threshold
        self._max_attempts_per_code = max_attempts_per_code
        self._reconcile_retries = reconcile_retries
        self._clock = clock

    @property
    def generator(self) -> SecureCodeGenerator:
        return self._generator

    async def generate_codes(
        self,
        plan: Plan | str,
        count: int,
        batch_name: str | None = None,
        description: str | None = None,
        expires_at: datetime | None = None,
        created_by: str | None = None,
        correlation_id: str | None = None,
    ) -> GenerationResult:
        plan = parse_plan(plan)
        self._check_capacity(count)
        expires_at = as_utc_naive(expires_at)

        batch: Optional[CodeBatch] = None
        if batch_name:
            if await self._db.find_code_batch(batch_name, created_by) is not None:
                raise DuplicateBatchNameError(f"batch name {batch_name!r} already exists for this issuer")
            batch = await self._db.add_code_batch(
                CodeBatch(
                    name=batch_name,
                    description=description,
                    plan=plan,
                    total_codes=count,
                    created_by=created_by,
                    expires_at=expires_at,
                )
            )

        started = time.perf_counter()
        issued: List[ActivationCode] = []
        total_attempts = 0
        collisions = 0

        try:
            for position in range(count):
                try:
                    code, attempts, code_collisions = await self._issue_one(plan, batch, created_by)
                except CodeGenerationError as exc:
                    raise CodeGenerationError(
                        str(exc), codes_generated=len(issued), collisions=collisions
                    ) from exc
                total_attempts += attempts
                collisions += code_collisions
                if code is None:
                    raise CodeGenerationError(
                        f"failed to generate unique code {position + 1} after "
                        f"{self._max_attempts_per_code} attempts",
                        codes_generated=position,
                        collisions=collisions,
                    )
                issued.append(code)
        except Exception as exc:
            try:
                await self._rollback(batch, issued)
                await self._ledger.log_error(
                    message="Activation code generation rolled back",
                    details={
                        "batch_id": batch.id if batch else None,
                        "plan": plan.value,
                        "requested": count,
                        "codes_generated": len(issued),
                        "collisions": collisions,
                        "error": str(exc),
                    },
                    user_id=created_by,
                    correlation_id=correlation_id,
                )
            except Exception:
                logger.exception(
                    "Rollback of code generation failed; batch %s and %d codes may remain",
                    batch.id if batch else None,
                    len(issued),
                )
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        statistics = GenerationStatistics(
            total_attempts=total_attempts,
            collisions=collisions,
            collision_rate=collisions / total_attempts,
            average_attempts=total_attempts / count,
            generation_time_ms=elapsed_ms,
            codes_per_second=count / (elapsed_ms / 1000) if elapsed_ms > 0 else float(count),
        )

        batch_info = None
        if batch is not None:
            batch.codes_generated = count
            batch.generation_stats = GenerationStats(
                average_attempts=statistics.average_attempts,
                collision_rate=statistics.collision_rate,
                generation_time_ms=elapsed_ms,
            )
            batch.status = BatchStatus.COMPLETED
            batch.updated_at = self._clock()
            batch = await self._db.update_code_batch(batch)
            batch_info = BatchInfo(id=batch.id or "", name=batch.name, total_codes=batch.total_codes)

        await self._ledger.log_transaction(
            user_id=created_by,
            message="Activation codes generated",
            details={
                "batch_id": batch.id if batch else None,
                "plan": plan.value,
                "count": count,
                "total_attempts": total_attempts,
                "collisions": collisions,
            },
            correlation_id=correlation_id,
        )

        return GenerationResult(
            codes=[GeneratedCode.from_code(c) for c in issued],
            batch_info=batch_info,
            statistics=statistics,
        )

    def _check_capacity(self, count: int) -> None:
        if count < 1:
            raise InvalidBatchSizeError("count must be at least 1")
        if count > self._max_batch_size:
            raise BatchTooLargeError(
                f"count must be between 1 and {self._max_batch_size}; generate in smaller batches"
            )
        probability = self._generator.collision_probability(count)
        if probability > self._collision_threshold:
            raise CollisionRiskError(probability, self._collision_threshold)

    async def _issue_one(
        self, plan: Plan, batch: Optional[CodeBatch], created_by: Optional[str]
    ) -> tuple[Optional[ActivationCode], int, int]:
        """Returns (code or None if the cap was hit, attempts, collisions)."""
        collisions = 0
        for attempt in range(1, self._max_attempts_per_code + 1):
            raw = self._generator.generate()
            candidate = ActivationCode(
                code=raw,
                plan=plan,
                created_by=created_by,
                batch_id=batch.id if batch else None,
                batch_name=batch.name if batch else None,
                entropy_analysis=self._generator.verify_entropy(raw),
                generation_attempts=attempt,
                created_at=self._clock(),
            )
            try:
                return await self._db.add_activation_code(candidate), attempt, collisions
            except DuplicateCodeError:
                collisions += 1
                logger.info("Code collision detected, retrying (attempt %d)", attempt)
        return None, self._max_attempts_per_code, collisions

    async def _rollback(self, batch: Optional[CodeBatch], issued: List[ActivationCode]) -> None:
        removed = await self._db.delete_activation_codes(c.id for c in issued if c.id)
        if batch is not None and batch.id:
            await self._db.delete_code_batch(batch.id)
        logger.warning(
            "Rolled back code generation: removed %d codes%s",
            removed,
            f" and batch {batch.id}" if batch else "",
        )

    # Batch administration
    async def get_batch_detail(self, batch_id: str, created_by: str | None = None) -> BatchDetail:
        batch = await self._get_batch(batch_id, created_by)
        codes = await self._db.get_codes_for_batch(batch_id)
        used = sum(1 for c in codes if c.is_used)
        usage_rate = round(used / len(codes) * 100, 2) if codes else 0.0
        return BatchDetail(
            batch=batch,
            codes=[BatchCodeView.from_code(c) for c in codes],
            summary=BatchSummary(
                total_codes=len(codes),
                used_codes=used,
                unused_codes=len(codes) - used,
                usage_rate=usage_rate,
            ),
        )

    async def list_batches(
        self,
        created_by: str | None = None,
        status: BatchStatus | str | None = None,
        plan: Plan | str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> PaginatedResult:
        return await self._db.list_code_batches(
            created_by=created_by,
            status=BatchStatus(status) if status is not None else None,
            plan=parse_plan(plan) if plan is not None else None,
            limit=limit,
            offset=offset,
        )

    async def list_used_codes(self) -> List[ActivationCode]:
        return await self._db.get_used_activation_codes()

    async def archive_batch(self, batch_id: str, created_by: str | None = None) -> CodeBatch:
        batch = await self._get_batch(batch_id, created_by)
        if batch.status != BatchStatus.COMPLETED:
            raise InvalidBatchTransitionError(
                f"only completed batches can be archived (batch is {batch.status.value})"
            )
        archived = await self._db.transition_code_batch(
            batch_id, BatchStatus.COMPLETED, BatchStatus.ARCHIVED, self._clock()
        )
        if archived is None:
            raise InvalidBatchTransitionError(f"batch {batch_id} changed state while archiving")
        await self._ledger.log_transaction(
            user_id=created_by,
            message="Code batch archived",
            details={"batch_id": archived.id, "codes_used": archived.codes_used},
        )
        return archived

    async def reconcile_batch_usage(self, batch_id: str) -> CodeBatch:
        """
        Recount `codes_used` from the code rows, repairing a lost increment.
        Works on archived batches too; only the counter is touched.
        """
        for attempt in range(1, self._reconcile_retries + 1):
            batch = await self._get_batch(batch_id)
            used = await self._db.count_used_codes_for_batch(batch_id)
            if used == batch.codes_used:
                return batch

            if await self._db.set_batch_codes_used(batch_id, batch.codes_used, used, self._clock()):
                logger.warning(
                    "Batch %s usage counter drifted: stored %d, actual %d", batch_id, batch.codes_used, used
                )
                await self._ledger.log_system(
                    message="Batch usage counter reconciled",
                    details={"batch_id": batch_id, "stored": batch.codes_used, "actual": used},
                )
                return await self._get_batch(batch_id)

            logger.info("Batch %s counter moved during reconcile (attempt %d), recounting", batch_id, attempt)

        raise ConcurrentUpdateError(
            f"could not reconcile batch {batch_id} after {self._reconcile_retries} attempts"
        )

    async def _get_batch(self, batch_id: str, created_by: str | None = None) -> CodeBatch:
        batch = await self._db.get_code_batch(batch_id)
        if batch is None or (created_by is not None and batch.created_by != created_by):
            raise BatchNotFoundError(f"batch {batch_id} not found")
        return batch
