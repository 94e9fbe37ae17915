"""
Error taxonomy for the entitlements core.

Input and capacity errors are raised before any side effect. Conflict
errors are either recovered locally (generation retries) or surfaced to
the caller. `StoreUnavailableError` marks a retryable infrastructure
failure.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class EntitlementError(Exception):
    """Base class for every error raised by this package."""

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": str(self), "code": type(self).__name__}


# Input errors -------------------------------------------------------------


class InputError(EntitlementError, ValueError):
    pass


class MalformedCodeError(InputError):
    pass


class InvalidPlanError(InputError):
    pass


class InvalidBatchSizeError(InputError):
    pass


class PaymentNotVerifiedError(InputError):
    pass


# Not found ----------------------------------------------------------------


class NotFoundError(EntitlementError, LookupError):
    pass


class CodeNotFoundError(NotFoundError):
    pass


class BatchNotFoundError(NotFoundError):
    pass


# Conflicts ----------------------------------------------------------------


class ConflictError(EntitlementError):
    pass


class CodeAlreadyUsedError(ConflictError):
    def __init__(
        self,
        code: str,
        used_at: Optional[datetime] = None,
        used_by: Optional[str] = None,
    ) -> None:
        super().__init__(f"activation code {code} has already been used")
        self.code = code
        self.used_at = used_at
        self.used_by = used_by

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["used_at"] = self.used_at.isoformat() if self.used_at else None
        data["used_by"] = self.used_by
        return data


class BatchExpiredError(ConflictError):
    def __init__(
        self,
        batch_id: str,
        expired_at: Optional[datetime] = None,
        message: str = "this activation code has expired",
    ) -> None:
        super().__init__(message)
        self.batch_id = batch_id
        self.expired_at = expired_at

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["expired_at"] = self.expired_at.isoformat() if self.expired_at else None
        return data


class BatchArchivedError(BatchExpiredError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(batch_id, message="this activation code belongs to an archived batch")


class DuplicateBatchNameError(ConflictError):
    pass


class DuplicateCodeError(ConflictError):
    """Unique-constraint violation on `activation_codes.code`."""


class DuplicateActiveSubscriptionError(ConflictError):
    """The user already holds an active subscription record."""


class ConcurrentUpdateError(ConflictError):
    pass


class InvalidBatchTransitionError(ConflictError):
    pass


class TrialUnavailableError(ConflictError):
    pass


# Capacity -----------------------------------------------------------------


class CapacityError(EntitlementError):
    pass


class BatchTooLargeError(CapacityError):
    pass


class CollisionRiskError(CapacityError):
    def __init__(self, probability: float, threshold: float) -> None:
        super().__init__(
            f"batch size too large: collision probability {probability:.6%} "
            f"exceeds the {threshold:.4%} threshold"
        )
        self.probability = probability
        self.threshold = threshold


# Integrity ----------------------------------------------------------------


class CodeGenerationError(EntitlementError):
    def __init__(self, message: str, codes_generated: int = 0, collisions: int = 0) -> None:
        super().__init__(message)
        self.codes_generated = codes_generated
        self.collisions = collisions

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["codes_generated"] = self.codes_generated
        data["collisions"] = self.collisions
        return data


# Infrastructure -----------------------------------------------------------


class StoreUnavailableError(EntitlementError):
    """Backend could not be reached; safe for the caller to retry."""
