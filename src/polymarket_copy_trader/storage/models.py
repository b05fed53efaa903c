"""SQLAlchemy models for persistent storage.

This module defines the database schema for bot configuration, exchange
credentials, the decision history ledger, and the per-user log stream.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BotConfigModel(Base):
    """Per-user copy-trading configuration (owned by the API, read by the worker)."""

    __tablename__ = "bot_config"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    targets: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    multiplier: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    max_trade_usd: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    min_notional_usd: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    max_slippage_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    copy_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (Index("idx_bot_config_enabled", "enabled"),)


class CredentialModel(Base):
    """Encrypted exchange credentials, one blob per user."""

    __tablename__ = "pm_credentials"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # base64(iv[12] || tag[16] || ciphertext)
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class BotHistoryModel(Base):
    """One row per (user, signal) decision. First write wins."""

    __tablename__ = "bot_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    signal_id: Mapped[str] = mapped_column(Text, nullable=False)

    market_id: Mapped[str] = mapped_column(Text, nullable=False)
    token_id: Mapped[str] = mapped_column(Text, nullable=False)
    outcome: Mapped[str] = mapped_column(Text, nullable=False)  # free-form
    side: Mapped[str] = mapped_column(String(4), nullable=False)  # BUY/SELL
    price: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False)

    requested_usd: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    requested_shares: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("user_id", "signal_id", name="uq_bot_history_user_signal"),
        Index("idx_bot_history_user_ts", "user_id", "ts"),
        Index("idx_bot_history_status", "status"),
    )


class BotLogModel(Base):
    """Append-only per-user log stream."""

    __tablename__ = "bot_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    level: Mapped[str] = mapped_column(String(16), nullable=False)  # info|warn|error|success
    message: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_bot_logs_user_created", "user_id", "created_at"),)
