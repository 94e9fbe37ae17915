from __future__ import annotations

from datetime import datetime
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, IndexSpec, utcnow
from .plan import Plan


class EntropyAnalysis(BaseModel):
    shannon_entropy: float
    max_possible_entropy: float
    entropy_ratio: float
    is_high_entropy: bool


class ActivationCode(DBSerializableModel):
    """
    A bearer code redeemable exactly once for subscription time.

    `is_used`, `used_by` and `used_at` only ever change together, through
    the store's conditional claim. A claim stays pending (`pending_since`
    set) until the granted subscription time is confirmed, so a claim
    orphaned by a crash can be found and settled later.
    """

    collection_name: ClassVar[str] = "activation_codes"
    indexes: ClassVar[List[IndexSpec]] = [
        IndexSpec(fields=["code"], unique=True),
        IndexSpec(fields=["batch_id"]),
        IndexSpec(fields=["plan", "is_used"]),
        IndexSpec(fields=["pending_since"]),
    ]

    id: Optional[str] = Field(default=None)
    code: str = Field(description="Raw code without separators.")
    plan: Plan
    is_used: bool = False
    used_by: Optional[str] = None
    used_at: Optional[datetime] = None
    pending_since: Optional[datetime] = None
    created_by: Optional[str] = None
    batch_id: Optional[str] = None
    batch_name: Optional[str] = None
    entropy_analysis: Optional[EntropyAnalysis] = Field(
        default=None,
        description="Entropy measured at generation time; never re-validated.",
    )
    generation_attempts: int = 1
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def formatted_code(self) -> str:
        return f"{self.code[:4]}-{self.code[4:8]}-{self.code[8:]}"
