"""Tests for storage repositories."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from polymarket_copy_trader.storage.repos import (
    BotConfigDTO,
    BotConfigRepository,
    BotLogDTO,
    BotLogRepository,
    CredentialRepository,
    HistoryRecordDTO,
    HistoryRepository,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


def _config_dto(user_id: str = "u1", *, enabled: bool = True, **overrides: object) -> BotConfigDTO:
    fields: dict[str, object] = {
        "user_id": user_id,
        "enabled": enabled,
        "targets": ["0xAAAA"],
        "multiplier": Decimal("0.5"),
        "max_trade_usd": Decimal("100"),
        "min_notional_usd": Decimal("1"),
        "max_slippage_bps": 500,
        "copy_delay_ms": 30_000,
    }
    fields.update(overrides)
    return BotConfigDTO(**fields)  # type: ignore[arg-type]


def _history_dto(signal_id: str = "sig-1", **overrides: object) -> HistoryRecordDTO:
    fields: dict[str, object] = {
        "user_id": "u1",
        "signal_id": signal_id,
        "market_id": "will-it-rain",
        "token_id": "token-yes",
        "outcome": "Yes",
        "side": "BUY",
        "price": Decimal("0.5"),
        "requested_usd": Decimal("20"),
        "requested_shares": Decimal("40"),
        "status": "ACCEPTED",
        "reason": None,
        "order_id": "o-1",
        "ts": datetime(2026, 1, 1, tzinfo=UTC),
    }
    fields.update(overrides)
    return HistoryRecordDTO(**fields)  # type: ignore[arg-type]


# ============================================================================
# BotConfigRepository Tests
# ============================================================================


class TestBotConfigRepository:
    @pytest.mark.asyncio
    async def test_get_not_found(self, async_session: AsyncSession) -> None:
        assert await BotConfigRepository(async_session).get("nobody") is None

    @pytest.mark.asyncio
    async def test_upsert_creates_and_lowercases_targets(self, async_session: AsyncSession) -> None:
        repo = BotConfigRepository(async_session)
        await repo.upsert(_config_dto())
        await async_session.commit()

        result = await repo.get("u1")
        assert result is not None
        assert result.targets == ["0xaaaa"]
        assert result.max_slippage_bps == 500

    @pytest.mark.asyncio
    async def test_upsert_updates_existing(self, async_session: AsyncSession) -> None:
        repo = BotConfigRepository(async_session)
        await repo.upsert(_config_dto())
        await repo.upsert(_config_dto(copy_delay_ms=0, enabled=False))
        await async_session.commit()
        async_session.expire_all()

        result = await repo.get("u1")
        assert result is not None
        assert result.copy_delay_ms == 0
        assert result.enabled is False

    @pytest.mark.asyncio
    async def test_list_enabled(self, async_session: AsyncSession) -> None:
        repo = BotConfigRepository(async_session)
        await repo.upsert(_config_dto("b"))
        await repo.upsert(_config_dto("a"))
        await repo.upsert(_config_dto("off", enabled=False))
        await async_session.commit()

        assert [c.user_id for c in await repo.list_enabled()] == ["a", "b"]


# ============================================================================
# CredentialRepository Tests
# ============================================================================


class TestCredentialRepository:
    @pytest.mark.asyncio
    async def test_upsert_replaces_ciphertext(self, async_session: AsyncSession) -> None:
        repo = CredentialRepository(async_session)
        assert await repo.get_ciphertext("u1") is None

        await repo.upsert("u1", "blob-1")
        await repo.upsert("u1", "blob-2")
        await async_session.commit()

        assert await repo.get_ciphertext("u1") == "blob-2"


# ============================================================================
# HistoryRepository Tests
# ============================================================================


class TestHistoryRepository:
    @pytest.mark.asyncio
    async def test_insert_if_absent_is_idempotent(self, async_session: AsyncSession) -> None:
        repo = HistoryRepository(async_session)

        assert await repo.insert_if_absent(_history_dto()) is True
        assert await repo.insert_if_absent(_history_dto(status="FAILED", order_id=None)) is False
        await async_session.commit()

        stored = await repo.get("u1", "sig-1")
        assert stored is not None
        assert stored.status == "ACCEPTED"
        assert stored.order_id == "o-1"

    @pytest.mark.asyncio
    async def test_exists(self, async_session: AsyncSession) -> None:
        repo = HistoryRepository(async_session)
        await repo.insert_if_absent(_history_dto())

        assert await repo.exists("u1", "sig-1")
        assert not await repo.exists("u1", "sig-2")
        assert not await repo.exists("u2", "sig-1")

    @pytest.mark.asyncio
    async def test_list_for_user_newest_first(self, async_session: AsyncSession) -> None:
        repo = HistoryRepository(async_session)
        await repo.insert_if_absent(_history_dto("old", ts=datetime(2026, 1, 1, tzinfo=UTC)))
        await repo.insert_if_absent(_history_dto("new", ts=datetime(2026, 1, 2, tzinfo=UTC)))
        await repo.insert_if_absent(_history_dto("other", user_id="u2"))

        rows = await repo.list_for_user("u1", limit=10)
        assert [r.signal_id for r in rows] == ["new", "old"]


# ============================================================================
# BotLogRepository Tests
# ============================================================================


class TestBotLogRepository:
    @pytest.mark.asyncio
    async def test_append_and_list(self, async_session: AsyncSession) -> None:
        repo = BotLogRepository(async_session)
        await repo.append(BotLogDTO(user_id="u1", level="info", message="hello", meta={"a": 1}))
        await repo.append(BotLogDTO(user_id="u2", level="error", message="other"))

        entries = await repo.list_for_user("u1")
        assert len(entries) == 1
        assert entries[0].message == "hello"
        assert entries[0].meta == {"a": 1}
