"""Tests for the history ledger and the per-user log stream."""

from collections.abc import Callable
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from polymarket_copy_trader.engine.ledger import HistoryLedger, HistoryStatus, UserLogStream
from polymarket_copy_trader.signals.models import Signal
from polymarket_copy_trader.storage.database import DatabaseManager
from polymarket_copy_trader.storage.repos import BotLogRepository


class TestHistoryLedger:
    @pytest.mark.asyncio
    async def test_first_write_wins(
        self, db_manager: DatabaseManager, make_signal: Callable[..., Signal]
    ) -> None:
        ledger = HistoryLedger(db_manager)
        signal = make_signal()

        first = await ledger.record(
            "u1",
            signal,
            requested_usd=Decimal("20"),
            requested_shares=Decimal("40"),
            status=HistoryStatus.ACCEPTED,
            order_id="o-1",
        )
        second = await ledger.record(
            "u1",
            signal,
            requested_usd=Decimal("0"),
            requested_shares=Decimal("0"),
            status=HistoryStatus.FAILED,
            reason="execution_failed",
        )

        assert first is True
        assert second is False
        rows = await ledger.list_for_user("u1")
        assert len(rows) == 1
        assert rows[0].status == "ACCEPTED"
        assert rows[0].order_id == "o-1"
        assert rows[0].requested_usd == Decimal("20")

    @pytest.mark.asyncio
    async def test_key_is_per_user(
        self, db_manager: DatabaseManager, make_signal: Callable[..., Signal]
    ) -> None:
        ledger = HistoryLedger(db_manager)
        signal = make_signal()
        for user_id in ("u1", "u2"):
            assert await ledger.record(
                user_id,
                signal,
                requested_usd=Decimal("0"),
                requested_shares=Decimal("0"),
                status=HistoryStatus.SKIPPED,
                reason="cooldown",
            )

        assert await ledger.has_record("u1", signal.signal_id)
        assert await ledger.has_record("u2", signal.signal_id)
        assert not await ledger.has_record("u3", signal.signal_id)


class TestUserLogStream:
    @pytest.mark.asyncio
    async def test_writes_entries(self, db_manager: DatabaseManager) -> None:
        logs = UserLogStream(db_manager)
        await logs.warn("u1", "Skipped: slippage_guard", {"ref": Decimal("0.5"), "bps": 2000})
        await logs.success("u1", "Order Accepted. Id: o-1")

        async with db_manager.get_async_session() as session:
            entries = await BotLogRepository(session).list_for_user("u1")

        assert {e.level for e in entries} == {"warn", "success"}
        warn = next(e for e in entries if e.level == "warn")
        assert warn.meta == {"ref": "0.5", "bps": 2000}

    @pytest.mark.asyncio
    async def test_write_failure_does_not_raise(self) -> None:
        db = MagicMock()
        db.get_async_session.side_effect = RuntimeError("database down")
        logs = UserLogStream(db)

        await logs.error("u1", "Signal feed error", {"err": "signal_feed_http_500"})
