from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow


logger = logging.getLogger(__name__)


class ExpirationService:
    """
    Bulk reconciliation of lapsed subscriptions.

    Reads never depend on this (they derive expiry from `expires_at`); it
    only keeps the stored `active` flag tidy. Meant to be invoked by an
    external scheduler (cron, Celery beat, ...).
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._clock = clock

    async def deactivate_expired_subscriptions(self, as_of: Optional[datetime] = None) -> int:
        as_of = as_of or self._clock()
        deactivated = await self._db.deactivate_expired_subscriptions(as_of)
        if deactivated:
            logger.info("Deactivated %d expired subscriptions", deactivated)
            await self._ledger.log_system(
                message="Expired subscriptions deactivated",
                details={"deactivated": deactivated, "as_of": as_of.isoformat()},
            )
        return deactivated
