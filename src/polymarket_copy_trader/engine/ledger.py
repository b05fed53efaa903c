"""Durable decision history and the per-user log stream."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from polymarket_copy_trader.signals.models import Signal
from polymarket_copy_trader.storage.database import DatabaseManager
from polymarket_copy_trader.storage.repos import (
    BotLogDTO,
    BotLogRepository,
    HistoryRecordDTO,
    HistoryRepository,
)

logger = logging.getLogger(__name__)

LogLevel = Literal["info", "warn", "error", "success"]

_LOGGING_LEVELS: dict[str, int] = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class HistoryStatus(str, Enum):
    """Terminal status of a (user, signal) decision."""

    ACCEPTED = "ACCEPTED"
    FILLED = "FILLED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


def ms_to_datetime(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000, tz=UTC)


class HistoryLedger:
    """Idempotent history writer keyed by (user_id, signal_id).

    The first write for a key wins; later writes are silent no-ops and
    never update the stored row.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def record(
        self,
        user_id: str,
        signal: Signal,
        *,
        requested_usd: Decimal,
        requested_shares: Decimal,
        status: HistoryStatus,
        reason: str | None = None,
        order_id: str | None = None,
    ) -> bool:
        """Record a decision.

        Returns:
            True if this call wrote the row, False if one already existed.
        """
        dto = HistoryRecordDTO(
            user_id=user_id,
            signal_id=signal.signal_id,
            market_id=signal.market_id,
            token_id=signal.token_id,
            outcome=signal.outcome,
            side=signal.side,
            price=signal.price,
            requested_usd=requested_usd,
            requested_shares=requested_shares,
            status=status.value,
            reason=reason,
            order_id=order_id,
            ts=ms_to_datetime(signal.ts),
        )
        async with self._db.get_async_session() as session:
            written = await HistoryRepository(session).insert_if_absent(dto)
        if not written:
            logger.debug(
                "History row for user %s signal %s already exists; keeping first write",
                user_id,
                signal.signal_id,
            )
        return written

    async def has_record(self, user_id: str, signal_id: str) -> bool:
        async with self._db.get_async_session() as session:
            return await HistoryRepository(session).exists(user_id, signal_id)

    async def list_for_user(self, user_id: str, *, limit: int = 50) -> list[HistoryRecordDTO]:
        async with self._db.get_async_session() as session:
            return await HistoryRepository(session).list_for_user(user_id, limit=limit)


class UserLogStream:
    """Writes per-user events to ``bot_logs`` and mirrors them to the process log.

    A failed durable write is logged and swallowed so that log plumbing
    never aborts a cycle.
    """

    def __init__(self, db: DatabaseManager, *, timeout: float | None = None) -> None:
        self._db = db
        self._timeout = timeout

    async def log(
        self,
        user_id: str,
        level: LogLevel,
        message: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        meta = meta or {}
        logger.log(_LOGGING_LEVELS[level], "[user %s] %s %s", user_id, message, meta or "")
        try:
            await asyncio.wait_for(
                self._append(BotLogDTO(user_id=user_id, level=level, message=message, meta=_jsonable(meta))),
                timeout=self._timeout,
            )
        except Exception as e:
            logger.error("Failed to write bot log for user %s: %s", user_id, e)

    async def _append(self, dto: BotLogDTO) -> None:
        async with self._db.get_async_session() as session:
            await BotLogRepository(session).append(dto)

    async def info(self, user_id: str, message: str, meta: dict[str, Any] | None = None) -> None:
        await self.log(user_id, "info", message, meta)

    async def warn(self, user_id: str, message: str, meta: dict[str, Any] | None = None) -> None:
        await self.log(user_id, "warn", message, meta)

    async def error(self, user_id: str, message: str, meta: dict[str, Any] | None = None) -> None:
        await self.log(user_id, "error", message, meta)

    async def success(self, user_id: str, message: str, meta: dict[str, Any] | None = None) -> None:
        await self.log(user_id, "success", message, meta)


def _jsonable(meta: dict[str, Any]) -> dict[str, Any]:
    # Decimal is not JSON serializable
    return {k: str(v) if isinstance(v, Decimal) else v for k, v in meta.items()}
