from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)

_LEVELS: Dict[LedgerEventType, int] = {
    LedgerEventType.TRANSACTION: logging.INFO,
    LedgerEventType.SYSTEM: logging.INFO,
    LedgerEventType.ERROR: logging.WARNING,
}


class LedgerLogger:
    """
    Audit trail for code issuance, redemptions and subscription changes.

    Every entry is stored through `BaseDBManager` (the authoritative copy),
    appended as one JSON line to `file_path` for log shippers, and echoed
    to the `entitlements.logging.ledger_logger` logger.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self.record(
            LedgerEventType.TRANSACTION,
            message,
            details,
            user_id=user_id,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self.record(
            LedgerEventType.ERROR,
            message,
            details,
            user_id=user_id,
            correlation_id=correlation_id,
        )

    async def log_system(self, message: str, details: dict[str, Any]) -> LedgerEntry:
        """Events without a user, e.g. expiry sweeps and counter repairs."""
        return await self.record(LedgerEventType.SYSTEM, message, details)

    async def record(
        self,
        event_type: LedgerEventType,
        message: str,
        details: dict[str, Any],
        *,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        entry = await self._db.add_ledger_entry(
            LedgerEntry(
                event_type=event_type,
                user_id=user_id,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )
        logger.log(
            _LEVELS[event_type],
            "%s user=%s correlation_id=%s details=%s",
            message,
            user_id,
            correlation_id,
            details,
        )
        self._append_line(entry)
        return entry

    def _append_line(self, entry: LedgerEntry) -> None:
        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.model_dump(mode="json")) + "\n")
        except OSError as exc:
            logger.warning("Could not append ledger entry to %s: %s", self._file_path, exc)
