from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .activation_code import ActivationCode, EntropyAnalysis
from .code_batch import CodeBatch
from .plan import Plan
from .subscription import SubscriptionView


class GeneratedCode(BaseModel):
    id: Optional[str] = None
    code: str
    formatted_code: str
    plan: Plan
    entropy_analysis: Optional[EntropyAnalysis] = None
    created_at: datetime

    @classmethod
    def from_code(cls, code: ActivationCode) -> "GeneratedCode":
        return cls(
            id=code.id,
            code=code.code,
            formatted_code=code.formatted_code,
            plan=code.plan,
            entropy_analysis=code.entropy_analysis,
            created_at=code.created_at,
        )


class BatchInfo(BaseModel):
    id: str
    name: str
    total_codes: int


class GenerationStatistics(BaseModel):
    total_attempts: int
    collisions: int
    collision_rate: float
    average_attempts: float
    generation_time_ms: float
    codes_per_second: float


class GenerationResult(BaseModel):
    codes: List[GeneratedCode]
    batch_info: Optional[BatchInfo] = None
    statistics: GenerationStatistics


class BatchCodeView(BaseModel):
    id: Optional[str] = None
    code: str
    formatted_code: str
    is_used: bool
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None
    entropy_analysis: Optional[EntropyAnalysis] = None
    created_at: datetime

    @classmethod
    def from_code(cls, code: ActivationCode) -> "BatchCodeView":
        return cls(
            id=code.id,
            code=code.code,
            formatted_code=code.formatted_code,
            is_used=code.is_used,
            used_at=code.used_at,
            used_by=code.used_by,
            entropy_analysis=code.entropy_analysis,
            created_at=code.created_at,
        )


class BatchSummary(BaseModel):
    total_codes: int
    used_codes: int
    unused_codes: int
    usage_rate: float


class BatchDetail(BaseModel):
    batch: CodeBatch
    codes: List[BatchCodeView]
    summary: BatchSummary


class CodeInfo(BaseModel):
    code: str
    formatted_code: str
    plan: Plan
    batch_name: Optional[str] = None
    days_added: int


class ActivationResult(BaseModel):
    subscription: SubscriptionView
    extended: bool


class RedemptionResult(ActivationResult):
    code_info: CodeInfo


class ClaimRecoveryResult(BaseModel):
    """Codes whose pending claims were settled by one recovery run."""

    confirmed: List[str] = Field(default_factory=list)
    released: List[str] = Field(default_factory=list)
