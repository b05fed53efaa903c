"""Repository pattern implementations for data access.

This module provides clean data access abstractions for bot configuration,
encrypted credentials, the decision history ledger, and the per-user log
stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from polymarket_copy_trader.storage.models import (
    BotConfigModel,
    BotHistoryModel,
    BotLogModel,
    CredentialModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class BotConfigDTO:
    """Data transfer object for per-user bot configuration."""

    user_id: str
    enabled: bool
    targets: list[str]
    multiplier: Decimal
    max_trade_usd: Decimal
    min_notional_usd: Decimal
    max_slippage_bps: int
    copy_delay_ms: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BotConfigModel) -> BotConfigDTO:
        return cls(
            user_id=model.user_id,
            enabled=model.enabled,
            targets=list(model.targets or []),
            multiplier=model.multiplier,
            max_trade_usd=model.max_trade_usd,
            min_notional_usd=model.min_notional_usd,
            max_slippage_bps=model.max_slippage_bps,
            copy_delay_ms=model.copy_delay_ms,
            updated_at=model.updated_at,
        )


class BotConfigRepository:
    """Repository for bot configuration rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_enabled(self) -> list[BotConfigDTO]:
        result = await self.session.execute(
            select(BotConfigModel)
            .where(BotConfigModel.enabled.is_(True))
            .order_by(BotConfigModel.user_id)
        )
        return [BotConfigDTO.from_model(m) for m in result.scalars().all()]

    async def get(self, user_id: str) -> BotConfigDTO | None:
        result = await self.session.execute(
            select(BotConfigModel).where(BotConfigModel.user_id == user_id)
        )
        model = result.scalar_one_or_none()
        return BotConfigDTO.from_model(model) if model else None

    async def upsert(self, dto: BotConfigDTO) -> BotConfigDTO:
        now = datetime.now(UTC)
        values = {
            "user_id": dto.user_id,
            "enabled": dto.enabled,
            "targets": [t.lower() for t in dto.targets],
            "multiplier": dto.multiplier,
            "max_trade_usd": dto.max_trade_usd,
            "min_notional_usd": dto.min_notional_usd,
            "max_slippage_bps": dto.max_slippage_bps,
            "copy_delay_ms": dto.copy_delay_ms,
        }
        stmt = _dialect_insert(self.session, BotConfigModel).values(
            **values, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={
                "enabled": stmt.excluded.enabled,
                "targets": stmt.excluded.targets,
                "multiplier": stmt.excluded.multiplier,
                "max_trade_usd": stmt.excluded.max_trade_usd,
                "min_notional_usd": stmt.excluded.min_notional_usd,
                "max_slippage_bps": stmt.excluded.max_slippage_bps,
                "copy_delay_ms": stmt.excluded.copy_delay_ms,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto


class CredentialRepository:
    """Repository for encrypted exchange credentials."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_ciphertext(self, user_id: str) -> str | None:
        result = await self.session.execute(
            select(CredentialModel.ciphertext).where(CredentialModel.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def upsert(self, user_id: str, ciphertext: str) -> None:
        now = datetime.now(UTC)
        stmt = _dialect_insert(self.session, CredentialModel).values(
            user_id=user_id, ciphertext=ciphertext, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={"ciphertext": stmt.excluded.ciphertext, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()


@dataclass
class HistoryRecordDTO:
    """Data transfer object for ledger rows."""

    user_id: str
    signal_id: str
    market_id: str
    token_id: str
    outcome: str
    side: str
    price: Decimal
    requested_usd: Decimal
    requested_shares: Decimal
    status: str
    reason: str | None
    order_id: str | None
    ts: datetime
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BotHistoryModel) -> HistoryRecordDTO:
        return cls(
            user_id=model.user_id,
            signal_id=model.signal_id,
            market_id=model.market_id,
            token_id=model.token_id,
            outcome=model.outcome,
            side=model.side,
            price=model.price,
            requested_usd=model.requested_usd,
            requested_shares=model.requested_shares,
            status=model.status,
            reason=model.reason,
            order_id=model.order_id,
            ts=model.ts,
            created_at=model.created_at,
        )


class HistoryRepository:
    """Repository for the decision history ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: HistoryRecordDTO) -> bool:
        """Insert a ledger row unless (user_id, signal_id) already exists.

        Returns:
            True if a row was written, False if the key was already claimed.
        """
        values = {
            "user_id": dto.user_id,
            "signal_id": dto.signal_id,
            "market_id": dto.market_id,
            "token_id": dto.token_id,
            "outcome": dto.outcome,
            "side": dto.side,
            "price": dto.price,
            "requested_usd": dto.requested_usd,
            "requested_shares": dto.requested_shares,
            "status": dto.status,
            "reason": dto.reason,
            "order_id": dto.order_id,
            "ts": dto.ts,
        }
        stmt = _dialect_insert(self.session, BotHistoryModel).values(
            **values, created_at=dto.created_at or datetime.now(UTC)
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["user_id", "signal_id"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def get(self, user_id: str, signal_id: str) -> HistoryRecordDTO | None:
        result = await self.session.execute(
            select(BotHistoryModel).where(
                (BotHistoryModel.user_id == user_id) & (BotHistoryModel.signal_id == signal_id)
            )
        )
        model = result.scalar_one_or_none()
        return HistoryRecordDTO.from_model(model) if model else None

    async def exists(self, user_id: str, signal_id: str) -> bool:
        result = await self.session.execute(
            select(BotHistoryModel.id).where(
                (BotHistoryModel.user_id == user_id) & (BotHistoryModel.signal_id == signal_id)
            )
        )
        return result.first() is not None

    async def list_for_user(self, user_id: str, *, limit: int = 100) -> list[HistoryRecordDTO]:
        result = await self.session.execute(
            select(BotHistoryModel)
            .where(BotHistoryModel.user_id == user_id)
            .order_by(BotHistoryModel.ts.desc(), BotHistoryModel.id.desc())
            .limit(limit)
        )
        return [HistoryRecordDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class BotLogDTO:
    user_id: str
    level: str
    message: str
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BotLogModel) -> BotLogDTO:
        return cls(
            user_id=model.user_id,
            level=model.level,
            message=model.message,
            meta=dict(model.meta or {}),
            created_at=model.created_at,
        )


class BotLogRepository:
    """Append-only repository for the per-user log stream."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, dto: BotLogDTO) -> None:
        self.session.add(
            BotLogModel(
                user_id=dto.user_id,
                level=dto.level,
                message=dto.message,
                meta=dto.meta,
                created_at=dto.created_at or datetime.now(UTC),
            )
        )
        await self.session.flush()

    async def list_for_user(self, user_id: str, *, limit: int = 100) -> list[BotLogDTO]:
        result = await self.session.execute(
            select(BotLogModel)
            .where(BotLogModel.user_id == user_id)
            .order_by(BotLogModel.created_at.desc(), BotLogModel.id.desc())
            .limit(limit)
        )
        return [BotLogDTO.from_model(m) for m in result.scalars().all()]
