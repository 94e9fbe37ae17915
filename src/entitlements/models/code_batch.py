from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field, field_validator

from .base import DBSerializableModel, IndexSpec, as_utc_naive, utcnow
from .plan import Plan


class BatchStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class GenerationStats(BaseModel):
    average_attempts: float
    collision_rate: float
    generation_time_ms: float


class CodeBatch(DBSerializableModel):
    """
    Named group of codes issued together under one plan.

    Invariant: codes_used <= codes_generated <= total_codes.
    """

    collection_name: ClassVar[str] = "code_batches"
    indexes: ClassVar[List[IndexSpec]] = [
        IndexSpec(fields=["name", "created_by"], unique=True),
        IndexSpec(fields=["plan", "status"]),
    ]

    id: Optional[str] = Field(default=None)
    name: str
    description: Optional[str] = None
    plan: Plan
    total_codes: int = Field(ge=1, description="Number of codes requested.")
    codes_generated: int = 0
    codes_used: int = 0
    created_by: Optional[str] = None
    status: BatchStatus = BatchStatus.ACTIVE
    expires_at: Optional[datetime] = Field(
        default=None, description="Hard cutoff after which codes cannot be redeemed."
    )
    generation_stats: Optional[GenerationStats] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("expires_at")
    @classmethod
    def _naive_utc_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc_naive(value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at
