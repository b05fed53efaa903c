"""Tests for the tick orchestrator."""

import asyncio
from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from polymarket_copy_trader.config import Settings
from polymarket_copy_trader.credentials import encrypt_json
from polymarket_copy_trader.engine import orchestrator as orchestrator_module
from polymarket_copy_trader.engine.ledger import HistoryLedger
from polymarket_copy_trader.engine.orchestrator import (
    OrchestratorState,
    TickOrchestrator,
    TickStats,
)
from polymarket_copy_trader.engine.state import StateTracker, UserState
from polymarket_copy_trader.execution import (
    ExchangeCredentials,
    ExecutionError,
    OrderbookQuote,
    PaperExecutionAdapter,
)
from polymarket_copy_trader.signals.feed import SignalFeedError
from polymarket_copy_trader.signals.models import Signal
from polymarket_copy_trader.storage.database import DatabaseManager
from polymarket_copy_trader.storage.repos import (
    BotConfigDTO,
    BotConfigRepository,
    BotLogDTO,
    BotLogRepository,
    CredentialRepository,
    HistoryRecordDTO,
    HistoryRepository,
)

NOW = 1_700_000_000_000
WALLET_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
WALLET_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


class FakeClock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeFeed:
    """In-memory signal source keyed by target wallet."""

    def __init__(
        self,
        signals: Sequence[Signal] = (),
        *,
        errors: dict[str, Exception] | None = None,
        honor_since: bool = True,
    ) -> None:
        self.signals = list(signals)
        self.errors = errors or {}
        self.honor_since = honor_since
        self.calls: list[tuple[tuple[str, ...], int | None]] = []

    async def fetch_signals(
        self, addresses: Sequence[str], *, since_ts: int | None = None, limit: int = 50
    ) -> list[Signal]:
        self.calls.append((tuple(addresses), since_ts))
        for address in addresses:
            if address in self.errors:
                raise self.errors[address]
        out = [s for s in self.signals if s.source_wallet in addresses]
        if self.honor_since and since_ts is not None:
            out = [s for s in out if s.ts > since_ts]
        # feed order is newest first
        return sorted(out, key=lambda s: s.ts, reverse=True)[:limit]

    async def close(self) -> None:
        return None


class FlakyBookAdapter(PaperExecutionAdapter):
    """Paper adapter whose book lookups fail for selected tokens."""

    def __init__(self, broken: set[str]) -> None:
        super().__init__()
        self.broken = broken

    async def get_orderbook(self, token_id: str, creds: ExchangeCredentials) -> OrderbookQuote:
        if token_id in self.broken:
            raise ExecutionError(f"book unavailable for {token_id}")
        return await super().get_orderbook(token_id, creds)


class SlowOrderAdapter(PaperExecutionAdapter):
    """Paper adapter whose order placement never returns in time."""

    async def place_order(self, order, creds):  # type: ignore[override]
        await asyncio.sleep(1)
        return await super().place_order(order, creds)


def failing_ledger_writes(
    monkeypatch: pytest.MonkeyPatch, should_fail: Callable[[Signal, dict[str, Any]], bool]
) -> None:
    """Make ledger writes raise for selected decisions."""
    original = HistoryLedger.record

    async def record(self: HistoryLedger, user_id: str, signal: Signal, **kwargs: Any) -> bool:
        if should_fail(signal, kwargs):
            raise SQLAlchemyError("database write failed")
        return await original(self, user_id, signal, **kwargs)

    monkeypatch.setattr(HistoryLedger, "record", record)
    monkeypatch.setattr(orchestrator_module, "HISTORY_WRITE_BACKOFF_SECONDS", 0)


# ============================================================================
# Fixtures and helpers
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(clock: FakeClock) -> StateTracker:
    return StateTracker(initial_lookback_ms=60_000, clock=clock)


@pytest.fixture
def adapter() -> PaperExecutionAdapter:
    return PaperExecutionAdapter()


@pytest.fixture
def build(
    settings: Settings,
    db_manager: DatabaseManager,
    tracker: StateTracker,
    adapter: PaperExecutionAdapter,
    master_key: bytes,
) -> Callable[..., TickOrchestrator]:
    def _build(feed: FakeFeed, **overrides: object) -> TickOrchestrator:
        chosen = overrides.pop("settings", settings)
        kwargs: dict[str, object] = {
            "db": db_manager,
            "feed": feed,
            "adapter": adapter,
            "state": tracker,
            "master_key": master_key,
        }
        kwargs.update(overrides)
        return TickOrchestrator(chosen, **kwargs)  # type: ignore[arg-type]

    return _build


async def seed_user(
    db: DatabaseManager,
    master_key: bytes,
    user_id: str = "u1",
    *,
    targets: Sequence[str] = (WALLET_A,),
    enabled: bool = True,
    with_credentials: bool = True,
    **config: object,
) -> None:
    fields: dict[str, object] = {
        "multiplier": Decimal("0.5"),
        "max_trade_usd": Decimal("100"),
        "min_notional_usd": Decimal("1"),
        "max_slippage_bps": 500,
        "copy_delay_ms": 0,
    }
    fields.update(config)
    async with db.get_async_session() as session:
        await BotConfigRepository(session).upsert(
            BotConfigDTO(user_id=user_id, enabled=enabled, targets=list(targets), **fields)  # type: ignore[arg-type]
        )
        if with_credentials:
            blob = encrypt_json({"key": f"key-{user_id}", "secret": "s", "passphrase": "p"}, master_key)
            await CredentialRepository(session).upsert(user_id, blob)


async def history(db: DatabaseManager, user_id: str = "u1") -> dict[str, HistoryRecordDTO]:
    async with db.get_async_session() as session:
        rows = await HistoryRepository(session).list_for_user(user_id, limit=100)
    return {r.signal_id: r for r in rows}


async def bot_logs(db: DatabaseManager, user_id: str = "u1") -> list[BotLogDTO]:
    async with db.get_async_session() as session:
        return await BotLogRepository(session).list_for_user(user_id)


# ============================================================================
# Decision pipeline
# ============================================================================


class TestDecisionPipeline:
    @pytest.mark.asyncio
    async def test_accepts_sized_order(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        adapter: PaperExecutionAdapter,
        tracker: StateTracker,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key)
        signal = make_signal(notional_usd=Decimal("40"), price=Decimal("0.50"), ts=NOW - 1_000)
        orchestrator = build(FakeFeed([signal]))

        stats = await orchestrator.run_tick()

        assert stats.orders_accepted == 1
        row = (await history(db_manager))["sig-1"]
        assert row.status == "ACCEPTED"
        assert row.reason is None
        assert row.order_id == adapter.orders[0].order_id
        assert row.requested_usd == Decimal("20")
        assert row.requested_shares == Decimal("40")
        assert adapter.orders[0].request.size_shares == Decimal("40")
        assert adapter.orders[0].account == "key-u1"
        assert tracker.last_trade_at("u1", "token-yes") == NOW
        levels = [log.level for log in await bot_logs(db_manager)]
        assert "success" in levels

    @pytest.mark.asyncio
    async def test_zero_notional_uses_max_trade(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, max_trade_usd=Decimal("30"))
        signal = make_signal(notional_usd=Decimal("0"), ts=NOW - 1_000)

        await build(FakeFeed([signal])).run_tick()

        row = (await history(db_manager))["sig-1"]
        assert row.status == "ACCEPTED"
        assert row.requested_usd == Decimal("30")

    @pytest.mark.asyncio
    async def test_below_min_notional(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        adapter: PaperExecutionAdapter,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, min_notional_usd=Decimal("5"))
        signal = make_signal(notional_usd=Decimal("6"), ts=NOW - 1_000)

        stats = await build(FakeFeed([signal])).run_tick()

        row = (await history(db_manager))["sig-1"]
        assert (row.status, row.reason) == ("SKIPPED", "below_min_notional")
        assert row.requested_usd == Decimal("0")
        assert stats.orders_skipped == 1
        assert adapter.orders == []

    @pytest.mark.asyncio
    async def test_slippage_guard(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, max_slippage_bps=1000)
        adapter = PaperExecutionAdapter(
            quotes={"token-yes": OrderbookQuote(bid=Decimal("0.48"), ask=Decimal("0.50"))}
        )
        signal = make_signal(price=Decimal("0.60"), ts=NOW - 1_000)

        await build(FakeFeed([signal]), adapter=adapter).run_tick()

        row = (await history(db_manager))["sig-1"]
        assert (row.status, row.reason) == ("SKIPPED", "slippage_guard")
        assert adapter.orders == []
        warn = next(log for log in await bot_logs(db_manager) if log.level == "warn")
        assert warn.message == "Skipped: slippage_guard"
        assert warn.meta["bps"] == 2000
        assert warn.meta["ref"] == "0.50"
        assert warn.meta["desired"] == "0.60"

    @pytest.mark.asyncio
    async def test_sell_checks_against_bid(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, max_slippage_bps=100)
        adapter = PaperExecutionAdapter(
            quotes={"token-yes": OrderbookQuote(bid=Decimal("0.50"), ask=Decimal("0.70"))}
        )
        signal = make_signal(side="SELL", price=Decimal("0.50"), ts=NOW - 1_000)

        await build(FakeFeed([signal]), adapter=adapter).run_tick()

        assert (await history(db_manager))["sig-1"].status == "ACCEPTED"
        assert adapter.orders[0].request.side == "SELL"

    @pytest.mark.asyncio
    async def test_cannot_meet_min_shares(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        adapter: PaperExecutionAdapter,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(
            db_manager, master_key, max_trade_usd=Decimal("1"), min_notional_usd=Decimal("0.5")
        )
        signal = make_signal(price=Decimal("0.50"), ts=NOW - 1_000)

        await build(FakeFeed([signal])).run_tick()

        row = (await history(db_manager))["sig-1"]
        assert (row.status, row.reason) == ("SKIPPED", "cannot_meet_min_shares")
        assert row.requested_usd == Decimal("1")
        assert row.requested_shares == Decimal("2")
        assert adapter.orders == []

    @pytest.mark.asyncio
    async def test_cooldown_between_trades_on_same_token(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        adapter: PaperExecutionAdapter,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, copy_delay_ms=60_000)
        signals = [
            make_signal(signal_id="first", ts=NOW - 2_000),
            make_signal(signal_id="second", ts=NOW - 1_000),
            make_signal(signal_id="elsewhere", token_id="token-no", ts=NOW - 500),
        ]

        await build(FakeFeed(signals)).run_tick()

        rows = await history(db_manager)
        assert rows["first"].status == "ACCEPTED"
        assert (rows["second"].status, rows["second"].reason) == ("SKIPPED", "cooldown")
        assert rows["elsewhere"].status == "ACCEPTED"
        assert len(adapter.orders) == 2

    @pytest.mark.asyncio
    async def test_cooldown_expires(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        clock: FakeClock,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, copy_delay_ms=5_000)
        feed = FakeFeed([make_signal(signal_id="first", ts=NOW - 1_000)])
        orchestrator = build(feed)
        await orchestrator.run_tick()

        clock.now += 5_000
        feed.signals.append(make_signal(signal_id="later", ts=clock.now - 10))
        await orchestrator.run_tick()

        assert (await history(db_manager))["later"].status == "ACCEPTED"

    @pytest.mark.asyncio
    async def test_execution_failure_is_recorded_once(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        tracker: StateTracker,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key)
        adapter = PaperExecutionAdapter(fail_orders=True)
        feed = FakeFeed([make_signal(ts=NOW - 1_000)], honor_since=False)
        orchestrator = build(feed, adapter=adapter)

        first = await orchestrator.run_tick()
        adapter.fail_orders = False
        second = await orchestrator.run_tick()

        row = (await history(db_manager))["sig-1"]
        assert (row.status, row.reason) == ("FAILED", "execution_failed")
        assert row.requested_shares == Decimal("40")
        assert first.orders_failed == 1
        assert second.signals_duplicate == 1
        assert adapter.orders == []
        assert tracker.last_trade_at("u1", "token-yes") == 0
        assert any(
            log.level == "error" and log.message == "Execution failed at adapter level"
            for log in await bot_logs(db_manager)
        )


# ============================================================================
# Idempotency and watermark
# ============================================================================


class TestIdempotencyAndWatermark:
    @pytest.mark.asyncio
    async def test_same_signal_twice_executes_once(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        adapter: PaperExecutionAdapter,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key)
        feed = FakeFeed([make_signal(ts=NOW - 1_000)], honor_since=False)
        orchestrator = build(feed)

        await orchestrator.run_tick()
        await orchestrator.run_tick()

        rows = await history(db_manager)
        assert list(rows) == ["sig-1"]
        assert rows["sig-1"].status == "ACCEPTED"
        assert len(adapter.orders) == 1

    @pytest.mark.asyncio
    async def test_restart_does_not_re_execute(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        adapter: PaperExecutionAdapter,
        clock: FakeClock,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key)
        feed = FakeFeed([make_signal(ts=NOW - 1_000)])
        await build(feed).run_tick()

        # fresh in-memory state, as after a process restart
        restarted = build(feed, state=StateTracker(initial_lookback_ms=60_000, clock=clock))
        stats = await restarted.run_tick()

        assert stats.signals_duplicate == 1
        assert len(adapter.orders) == 1

    @pytest.mark.asyncio
    async def test_watermark_advances_to_newest_signal(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        tracker: StateTracker,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, min_notional_usd=Decimal("1000"))
        feed = FakeFeed(
            [make_signal(signal_id="a", ts=NOW - 3_000), make_signal(signal_id="b", ts=NOW - 2_000)]
        )
        orchestrator = build(feed)

        await orchestrator.run_tick()
        await orchestrator.run_tick()

        assert tracker.get("u1").last_signal_ts == NOW - 2_000
        assert feed.calls[0][1] == NOW - 60_000
        assert feed.calls[1][1] == NOW - 2_000

    @pytest.mark.asyncio
    async def test_signals_processed_in_time_order(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, copy_delay_ms=60_000)
        feed = FakeFeed(
            [make_signal(signal_id="late", ts=NOW - 1_000), make_signal(signal_id="early", ts=NOW - 5_000)]
        )

        await build(feed).run_tick()

        rows = await history(db_manager)
        assert rows["early"].status == "ACCEPTED"
        assert rows["late"].reason == "cooldown"

    @pytest.mark.asyncio
    async def test_orderbook_failure_defers_remaining_signals(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        tracker: StateTracker,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key)
        adapter = FlakyBookAdapter(broken={"token-bad"})
        feed = FakeFeed(
            [
                make_signal(signal_id="ok", token_id="token-ok", ts=NOW - 3_000),
                make_signal(signal_id="bad", token_id="token-bad", ts=NOW - 2_000),
                make_signal(signal_id="after", token_id="token-after", ts=NOW - 1_000),
            ]
        )
        orchestrator = build(feed, adapter=adapter)

        stats = await orchestrator.run_tick()

        assert list(await history(db_manager)) == ["ok"]
        assert tracker.get("u1").last_signal_ts == NOW - 3_000
        assert stats.errors == 1

        adapter.broken.clear()
        await orchestrator.run_tick()
        assert set(await history(db_manager)) == {"ok", "bad", "after"}


# ============================================================================
# Per-user isolation
# ============================================================================


class TestUserIsolation:
    @pytest.mark.asyncio
    async def test_feed_error_skips_only_that_user(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, "u1", targets=[WALLET_A])
        await seed_user(db_manager, master_key, "u2", targets=[WALLET_B])
        feed = FakeFeed(
            [make_signal(signal_id="b-1", source_wallet=WALLET_B, ts=NOW - 1_000)],
            errors={WALLET_A: SignalFeedError(502)},
        )

        stats = await build(feed).run_tick()

        assert stats.users_processed == 1
        assert stats.users_skipped == 1
        assert (await history(db_manager, "u2"))["b-1"].status == "ACCEPTED"
        errors = [log for log in await bot_logs(db_manager, "u1") if log.level == "error"]
        assert errors[0].message == "Signal feed error"
        assert errors[0].meta == {"err": "signal_feed_http_502"}

    @pytest.mark.asyncio
    async def test_missing_credentials_skips_user(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, with_credentials=False)
        feed = FakeFeed([make_signal(ts=NOW - 1_000)])

        stats = await build(feed).run_tick()

        assert feed.calls == []
        assert stats.users_skipped == 1
        logs = await bot_logs(db_manager)
        assert [(log.level, log.message) for log in logs] == [
            ("warn", "No Polymarket credentials set. Skipping.")
        ]

    @pytest.mark.asyncio
    async def test_undecryptable_credentials_skip_user(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key, "u1")
        await seed_user(db_manager, master_key, "u2", targets=[WALLET_B])
        async with db_manager.get_async_session() as session:
            await CredentialRepository(session).upsert("u1", encrypt_json({"key": "k"}, bytes(32)))
        feed = FakeFeed([make_signal(signal_id="b-1", source_wallet=WALLET_B, ts=NOW - 1_000)])

        stats = await build(feed).run_tick()

        assert feed.calls == [((WALLET_B,), NOW - 60_000)]
        assert stats.users_skipped == 1
        assert stats.orders_accepted == 1
        assert any(log.level == "error" for log in await bot_logs(db_manager, "u1"))

    @pytest.mark.asyncio
    async def test_empty_targets_makes_no_calls(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
    ) -> None:
        await seed_user(db_manager, master_key, targets=[])
        feed = FakeFeed()
        orchestrator = build(feed)

        with patch.object(orchestrator, "_load_ciphertext", new=AsyncMock()) as load_creds:
            stats = await orchestrator.run_tick()

        load_creds.assert_not_called()
        assert feed.calls == []
        assert stats.users_skipped == 1
        assert await bot_logs(db_manager) == []

    @pytest.mark.asyncio
    async def test_disabled_users_are_ignored(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
    ) -> None:
        await seed_user(db_manager, master_key, enabled=False)
        feed = FakeFeed()

        stats = await build(feed).run_tick()

        assert feed.calls == []
        assert stats.users_processed == stats.users_skipped == 0

    @pytest.mark.asyncio
    async def test_slow_feed_times_out(
        self,
        worker_env: dict[str, str],  # noqa: ARG002
        monkeypatch: pytest.MonkeyPatch,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
    ) -> None:
        monkeypatch.setenv("WORKER_CALL_TIMEOUT_SECONDS", "0.05")
        await seed_user(db_manager, master_key)

        class SlowFeed(FakeFeed):
            async def fetch_signals(self, addresses, *, since_ts=None, limit=50):  # type: ignore[override]
                await asyncio.sleep(1)
                return []

        stats = await build(SlowFeed(), settings=Settings(_env_file=None)).run_tick()

        assert stats.users_skipped == 1
        errors = [log for log in await bot_logs(db_manager) if log.level == "error"]
        assert "fetch_signals timed out" in errors[0].meta["err"]


# ============================================================================
# Cycle deadline and state cache
# ============================================================================


class TestCycleDeadline:
    @pytest.mark.asyncio
    async def test_deadline_defers_users(
        self,
        worker_env: dict[str, str],  # noqa: ARG002
        monkeypatch: pytest.MonkeyPatch,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
    ) -> None:
        monkeypatch.setenv("WORKER_CYCLE_DEADLINE_SECONDS", "0.000001")
        await seed_user(db_manager, master_key, "u1")
        await seed_user(db_manager, master_key, "u2")
        feed = FakeFeed()

        stats = await build(feed, settings=Settings(_env_file=None)).run_tick()

        assert stats.users_deferred == 2
        assert feed.calls == []

    @pytest.mark.asyncio
    async def test_state_cache_hydrates_and_persists(
        self,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key)
        cache = AsyncMock()
        cache.load.return_value = UserState(last_signal_ts=NOW - 5_000)
        feed = FakeFeed([make_signal(signal_id="old", ts=NOW - 6_000), make_signal(ts=NOW - 1_000)])

        await build(feed, state_cache=cache).run_tick()

        assert feed.calls[0][1] == NOW - 5_000
        assert list(await history(db_manager)) == ["sig-1"]
        cache.save.assert_awaited_once()
        saved = cache.save.call_args.args[1]
        assert saved.last_signal_ts == NOW - 1_000


# ============================================================================
# History write failures
# ============================================================================


class TestHistoryWriteFailures:
    @pytest.mark.asyncio
    async def test_transient_write_failure_is_retried(
        self,
        monkeypatch: pytest.MonkeyPatch,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        adapter: PaperExecutionAdapter,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key)
        failures = iter([True])
        failing_ledger_writes(monkeypatch, lambda signal, kw: next(failures, False))
        feed = FakeFeed([make_signal(ts=NOW - 1_000)], honor_since=False)
        orchestrator = build(feed)

        first = await orchestrator.run_tick()
        await orchestrator.run_tick()

        assert first.errors == 0
        assert (await history(db_manager))["sig-1"].status == "ACCEPTED"
        assert [o.order_id for o in adapter.orders] == ["paper_000001"]

    @pytest.mark.asyncio
    async def test_unrecorded_order_is_not_placed_again(
        self,
        monkeypatch: pytest.MonkeyPatch,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        adapter: PaperExecutionAdapter,
        tracker: StateTracker,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key)
        outage = {"on": True}
        failing_ledger_writes(
            monkeypatch, lambda signal, kw: outage["on"] and kw["status"].value == "ACCEPTED"
        )
        feed = FakeFeed([make_signal(ts=NOW - 1_000)], honor_since=False)
        orchestrator = build(feed)

        first = await orchestrator.run_tick()
        second = await orchestrator.run_tick()

        assert first.orders_accepted == 1
        assert first.errors == 1
        assert second.signals_duplicate == 1
        assert len(adapter.orders) == 1
        assert await history(db_manager) == {}
        assert tracker.get("u1").last_signal_ts == NOW - 1_000
        assert any(
            log.message == "History write failed" and log.meta["status"] == "ACCEPTED"
            for log in await bot_logs(db_manager)
        )

        outage["on"] = False
        third = await orchestrator.run_tick()

        row = (await history(db_manager))["sig-1"]
        assert (row.status, row.order_id) == ("ACCEPTED", "paper_000001")
        assert third.errors == 0
        assert len(adapter.orders) == 1

    @pytest.mark.asyncio
    async def test_failed_skip_write_does_not_block_later_signals(
        self,
        monkeypatch: pytest.MonkeyPatch,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        adapter: PaperExecutionAdapter,
        tracker: StateTracker,
        make_signal: Callable[..., Signal],
    ) -> None:
        await seed_user(db_manager, master_key)
        failing_ledger_writes(monkeypatch, lambda signal, kw: signal.signal_id == "bad")
        feed = FakeFeed(
            [
                make_signal(signal_id="bad", notional_usd=Decimal("0.5"), ts=NOW - 2_000),
                make_signal(signal_id="good", token_id="token-no", ts=NOW - 1_000),
            ]
        )
        orchestrator = build(feed)

        for _ in range(3):
            stats = await orchestrator.run_tick()

        rows = await history(db_manager)
        assert rows["good"].status == "ACCEPTED"
        assert "bad" not in rows
        assert len(adapter.orders) == 1
        assert stats.errors == 1
        assert stats.signals_duplicate == 1
        # the unrecorded skip is fetched again until its write succeeds
        assert tracker.get("u1").last_signal_ts < NOW - 2_000

    @pytest.mark.asyncio
    async def test_placement_timeout_is_logged_distinctly(
        self,
        worker_env: dict[str, str],  # noqa: ARG002
        monkeypatch: pytest.MonkeyPatch,
        build: Callable[..., TickOrchestrator],
        db_manager: DatabaseManager,
        master_key: bytes,
        tracker: StateTracker,
        make_signal: Callable[..., Signal],
    ) -> None:
        monkeypatch.setenv("WORKER_CALL_TIMEOUT_SECONDS", "0.05")
        await seed_user(db_manager, master_key)
        orchestrator = build(
            FakeFeed([make_signal(ts=NOW - 1_000)]),
            adapter=SlowOrderAdapter(),
            settings=Settings(_env_file=None),
        )

        stats = await orchestrator.run_tick()

        row = (await history(db_manager))["sig-1"]
        assert (row.status, row.reason) == ("FAILED", "execution_failed")
        assert stats.orders_failed == 1
        assert tracker.last_trade_at("u1", "token-yes") == 0
        errors = [log for log in await bot_logs(db_manager) if log.level == "error"]
        assert errors[0].message == "Order placement timed out; outcome unknown"
        assert errors[0].meta["timedOut"] is True
        assert "place_order timed out" in errors[0].meta["err"]


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, build: Callable[..., TickOrchestrator]) -> None:
        orchestrator = build(FakeFeed())

        await orchestrator.start()
        assert orchestrator.is_running
        with pytest.raises(RuntimeError):
            await orchestrator.start()
        await asyncio.sleep(0.05)
        await orchestrator.stop()

        assert orchestrator.state == OrchestratorState.STOPPED
        assert orchestrator.stats.cycles >= 1
        assert orchestrator.stats.started_at is not None

    @pytest.mark.asyncio
    async def test_loop_survives_tick_errors(self, build: Callable[..., TickOrchestrator]) -> None:
        orchestrator = build(FakeFeed())
        calls = 0

        async def flaky_tick() -> TickStats:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("database unavailable")
            return TickStats(cycles=1)

        with patch.object(orchestrator, "run_tick", side_effect=flaky_tick):
            async with orchestrator:
                await asyncio.sleep(0.25)

        assert calls >= 2
        assert orchestrator.stats.errors == 1
        assert orchestrator.stats.last_error == "database unavailable"

    @pytest.mark.asyncio
    async def test_missing_feed_url_aborts_startup(
        self, worker_env: dict[str, str], monkeypatch: pytest.MonkeyPatch  # noqa: ARG002
    ) -> None:
        monkeypatch.delenv("SIGNAL_FEED_URL")
        orchestrator = TickOrchestrator(Settings(_env_file=None))

        with pytest.raises(ValueError, match="SIGNAL_FEED_URL"):
            await orchestrator.start()
        assert orchestrator.state == OrchestratorState.STOPPED
