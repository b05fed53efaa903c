"""Tick orchestrator for the copy-trading worker.

One cycle loads every enabled user, fetches new signals from their target
wallets, runs each signal through the risk rules, and executes or records
the outcome. Cycles repeat with a fixed delay after each one completes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

import httpx
from redis.asyncio import Redis
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from polymarket_copy_trader.config import Settings, get_settings
from polymarket_copy_trader.credentials import CredentialError, decrypt_json, parse_master_key
from polymarket_copy_trader.engine.ledger import HistoryLedger, HistoryStatus, UserLogStream
from polymarket_copy_trader.engine.risk import (
    REASON_CANNOT_MEET_MIN_SHARES,
    REASON_COOLDOWN,
    REASON_EXECUTION_FAILED,
    REASON_SLIPPAGE_GUARD,
    BotConfig,
    decide_size,
    reference_price,
    shares_for,
    slippage_bps,
)
from polymarket_copy_trader.engine.state import RedisStateCache, StateTracker
from polymarket_copy_trader.execution import (
    ExchangeCredentials,
    ExecutionAdapter,
    OrderRequest,
    build_execution_adapter,
)
from polymarket_copy_trader.signals.feed import SignalFeedClient, SignalFeedError
from polymarket_copy_trader.storage.database import DatabaseManager
from polymarket_copy_trader.storage.repos import (
    BotConfigDTO,
    BotConfigRepository,
    CredentialRepository,
)

if TYPE_CHECKING:
    from polymarket_copy_trader.signals.models import Signal

logger = logging.getLogger(__name__)

T = TypeVar("T")

ZERO = Decimal("0")

HISTORY_WRITE_ATTEMPTS = 3
HISTORY_WRITE_BACKOFF_SECONDS = 0.1


class SignalSource(Protocol):
    async def fetch_signals(
        self, addresses: Sequence[str], *, since_ts: int | None = None, limit: int = ...
    ) -> list[Signal]: ...

    async def close(self) -> None: ...


class CallTimeoutError(Exception):
    """A bounded network or storage call exceeded its deadline."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} timed out after {timeout:.1f}s")
        self.operation = operation
        self.timeout = timeout


class OrderbookUnavailableError(Exception):
    """The order book for a token could not be read; remaining signals wait."""

    def __init__(self, token_id: str, cause: Exception) -> None:
        super().__init__(f"orderbook unavailable for {token_id}: {cause}")
        self.token_id = token_id


class OrchestratorState(str, Enum):
    """Orchestrator lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class TickStats:
    """Counters for one cycle, or accumulated over the worker's lifetime."""

    cycles: int = 0
    users_processed: int = 0
    users_skipped: int = 0
    users_deferred: int = 0
    signals_seen: int = 0
    signals_duplicate: int = 0
    orders_accepted: int = 0
    orders_skipped: int = 0
    orders_failed: int = 0
    errors: int = 0
    started_at: datetime | None = None
    last_cycle_at: datetime | None = None
    last_cycle_ms: int | None = None
    last_error: str | None = None

    def merge(self, cycle: TickStats) -> None:
        self.cycles += cycle.cycles
        self.users_processed += cycle.users_processed
        self.users_skipped += cycle.users_skipped
        self.users_deferred += cycle.users_deferred
        self.signals_seen += cycle.signals_seen
        self.signals_duplicate += cycle.signals_duplicate
        self.orders_accepted += cycle.orders_accepted
        self.orders_skipped += cycle.orders_skipped
        self.orders_failed += cycle.orders_failed
        self.errors += cycle.errors
        self.last_cycle_at = cycle.last_cycle_at
        self.last_cycle_ms = cycle.last_cycle_ms
        if cycle.last_error is not None:
            self.last_error = cycle.last_error


@dataclass
class PendingRecord:
    """A decision waiting to be written to the history ledger."""

    signal: Signal
    status: HistoryStatus
    requested_usd: Decimal = ZERO
    requested_shares: Decimal = ZERO
    reason: str | None = None
    order_id: str | None = None


def bot_config_from_dto(dto: BotConfigDTO) -> BotConfig:
    return BotConfig.build(
        targets=dto.targets,
        multiplier=dto.multiplier,
        max_trade_usd=dto.max_trade_usd,
        min_notional_usd=dto.min_notional_usd,
        max_slippage_bps=dto.max_slippage_bps,
        copy_delay_ms=dto.copy_delay_ms,
    )


class TickOrchestrator:
    """Drives polling cycles over all enabled users.

    Collaborators can be injected (tests do this); anything not supplied is
    built from settings when the orchestrator initializes.

    Example:
        ```python
        from polymarket_copy_trader.config import get_settings
        from polymarket_copy_trader.engine.orchestrator import TickOrchestrator

        orchestrator = TickOrchestrator(get_settings())
        await orchestrator.run()  # until stop() is called
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        feed: SignalSource | None = None,
        adapter: ExecutionAdapter | None = None,
        state: StateTracker | None = None,
        state_cache: RedisStateCache | None = None,
        master_key: bytes | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        worker = self._settings.worker

        self._poll_interval = worker.poll_interval_ms / 1000
        self._call_timeout = worker.call_timeout_seconds
        self._cycle_deadline = worker.cycle_deadline_seconds
        self._min_order_shares = worker.min_order_shares
        self._feed_limit = self._settings.signals.feed_limit

        self._db = db
        self._feed = feed
        self._adapter = adapter
        self._state_tracker = state or StateTracker(initial_lookback_ms=worker.initial_lookback_ms)
        self._state_cache = state_cache
        self._master_key = master_key
        self._owned: set[str] = set()

        self._ledger: HistoryLedger | None = None
        self._logs: UserLogStream | None = None
        self._redis: Redis | None = None

        self._state = OrchestratorState.STOPPED
        self._stats = TickStats()
        self._initialized = False
        # user_id after which the next cycle starts, when a cycle was cut short
        self._resume_after: str | None = None
        # Decisions made after an order attempt whose ledger write failed.
        # They count as recorded for the pre-check until the write succeeds.
        self._unrecorded: dict[tuple[str, str], PendingRecord] = {}

        self._stop_event: asyncio.Event | None = None
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def stats(self) -> TickStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == OrchestratorState.RUNNING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Build every collaborator that was not injected.

        Raises:
            ValueError: If the feed URL or master key is missing or invalid.
        """
        if self._initialized:
            return
        settings = self._settings

        if self._master_key is None:
            settings.validate_requirements(command="run")
            assert settings.credentials.master_key is not None
            self._master_key = parse_master_key(settings.credentials.master_key.get_secret_value())

        if self._db is None:
            self._db = DatabaseManager(settings.database.url)
            self._owned.add("db")

        if self._feed is None:
            settings.validate_requirements(command="run")
            assert settings.signals.feed_url is not None
            self._feed = SignalFeedClient(
                settings.signals.feed_url, timeout=settings.signals.feed_timeout_seconds
            )
            self._owned.add("feed")

        if self._adapter is None:
            self._adapter = build_execution_adapter(settings)
            self._owned.add("adapter")

        if self._state_cache is None and settings.redis.enabled:
            assert settings.redis.url is not None
            self._redis = Redis.from_url(settings.redis.url)
            self._state_cache = RedisStateCache(
                self._redis, ttl_seconds=settings.redis.state_ttl_seconds
            )
            logger.info("User state cache enabled (Redis)")

        self._ledger = HistoryLedger(self._db)
        self._logs = UserLogStream(self._db, timeout=self._call_timeout)
        self._initialized = True
        logger.info(
            "Orchestrator initialized (execution=%s, poll_interval_ms=%d)",
            getattr(self._adapter, "name", type(self._adapter).__name__),
            self._settings.worker.poll_interval_ms,
        )

    async def start(self) -> None:
        """Initialize components and begin the polling loop.

        Raises:
            RuntimeError: If the orchestrator is already running.
        """
        if self._state != OrchestratorState.STOPPED:
            raise RuntimeError(f"Cannot start orchestrator in state {self._state}")

        self._state = OrchestratorState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting copy-trading worker...")

        try:
            await self.initialize()
        except Exception as e:
            self._state = OrchestratorState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start worker: %s", e)
            await self._cleanup()
            self._state = OrchestratorState.STOPPED
            raise

        self._stats.started_at = datetime.now(UTC)
        self._loop_task = asyncio.create_task(self._run_loop())
        self._state = OrchestratorState.RUNNING
        logger.info("Worker started.")

    async def stop(self) -> None:
        """Stop the polling loop and release resources."""
        if self._state == OrchestratorState.STOPPED:
            return

        self._state = OrchestratorState.STOPPING
        logger.info("Stopping worker...")

        if self._stop_event:
            self._stop_event.set()
        if self._loop_task:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        await self._cleanup()
        self._state = OrchestratorState.STOPPED
        logger.info("Worker stopped")

    async def close(self) -> None:
        """Release resources without a running loop (single-tick use)."""
        if self._state != OrchestratorState.STOPPED:
            await self.stop()
        else:
            await self._cleanup()

    async def _cleanup(self) -> None:
        if "feed" in self._owned and self._feed is not None:
            await self._feed.close()
            self._feed = None
        if "adapter" in self._owned and self._adapter is not None:
            await self._adapter.close()
            self._adapter = None
        if "db" in self._owned and self._db is not None:
            await self._db.dispose_async()
            self._db = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._state_cache = None
        self._owned.clear()
        self._initialized = False
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the worker and block until stop() is called."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> TickOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    async def _run_loop(self) -> None:
        """Run cycles with a fixed delay after each completes."""
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.run_tick()
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.exception("worker_tick_error: %s", e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._call_timeout)
        except TimeoutError as e:
            raise CallTimeoutError(operation, self._call_timeout) from e

    async def _load_enabled_configs(self) -> list[BotConfigDTO]:
        assert self._db is not None
        async with self._db.get_async_session() as session:
            return await BotConfigRepository(session).list_enabled()

    async def _load_ciphertext(self, user_id: str) -> str | None:
        assert self._db is not None
        async with self._db.get_async_session() as session:
            return await CredentialRepository(session).get_ciphertext(user_id)

    def _rotate(self, users: list[BotConfigDTO]) -> list[BotConfigDTO]:
        """Start after the last user reached by a cycle that hit its deadline."""
        if self._resume_after is None:
            return users
        split = next((i for i, u in enumerate(users) if u.user_id > self._resume_after), 0)
        return users[split:] + users[:split]

    async def run_tick(self) -> TickStats:
        """Run exactly one cycle over all enabled users.

        Returns:
            Counters for this cycle (also merged into ``stats``).
        """
        await self.initialize()
        cycle = TickStats(cycles=1)
        started = time.monotonic()
        deadline = started + self._cycle_deadline

        users = self._rotate(await self._bounded("load_users", self._load_enabled_configs()))
        self._resume_after = None

        for index, user in enumerate(users):
            if time.monotonic() >= deadline:
                cycle.users_deferred = len(users) - index
                self._resume_after = users[index - 1].user_id if index else None
                logger.warning(
                    "Cycle deadline of %.1fs reached; deferring %d users",
                    self._cycle_deadline,
                    cycle.users_deferred,
                )
                break
            try:
                await self._process_user(user, cycle, deadline)
            except Exception as e:
                cycle.errors += 1
                cycle.last_error = f"{user.user_id}: {e}"
                logger.exception("Error processing user %s: %s", user.user_id, e)

        cycle.last_cycle_at = datetime.now(UTC)
        cycle.last_cycle_ms = int((time.monotonic() - started) * 1000)
        self._stats.merge(cycle)
        logger.debug(
            "Cycle done in %dms: users=%d accepted=%d skipped=%d failed=%d",
            cycle.last_cycle_ms,
            cycle.users_processed,
            cycle.orders_accepted,
            cycle.orders_skipped,
            cycle.orders_failed,
        )
        return cycle

    async def _load_credentials(self, user_id: str) -> ExchangeCredentials | None:
        assert self._logs is not None and self._master_key is not None
        ciphertext = await self._bounded("load_credentials", self._load_ciphertext(user_id))
        if not ciphertext:
            await self._logs.warn(user_id, "No Polymarket credentials set. Skipping.")
            return None
        try:
            payload = decrypt_json(ciphertext, self._master_key)
            if not isinstance(payload, dict):
                raise CredentialError("credential payload is not an object")
            return ExchangeCredentials.from_dict(payload)
        except ValueError as e:
            await self._logs.error(
                user_id, "Polymarket credentials could not be decrypted. Skipping.", {"err": str(e)}
            )
            return None

    async def _hydrate_state(self, user_id: str) -> None:
        if self._state_cache is None or self._state_tracker.has(user_id):
            return
        try:
            cached = await self._bounded("load_state", self._state_cache.load(user_id))
        except (RedisError, CallTimeoutError) as e:
            logger.warning("Could not load cached state for user %s: %s", user_id, e)
            return
        if cached is not None:
            self._state_tracker.restore(user_id, cached)

    async def _persist_state(self, user_id: str) -> None:
        if self._state_cache is None:
            return
        try:
            await self._bounded(
                "save_state", self._state_cache.save(user_id, self._state_tracker.get(user_id))
            )
        except (RedisError, CallTimeoutError) as e:
            logger.warning("Could not cache state for user %s: %s", user_id, e)

    async def _process_user(self, user: BotConfigDTO, cycle: TickStats, deadline: float) -> None:
        assert self._feed is not None and self._logs is not None
        user_id = user.user_id
        config = bot_config_from_dto(user)

        if not config.targets:
            cycle.users_skipped += 1
            return

        creds = await self._load_credentials(user_id)
        if creds is None:
            cycle.users_skipped += 1
            return

        await self._flush_unrecorded(user_id, cycle)
        await self._hydrate_state(user_id)
        since_ts = self._state_tracker.get(user_id).last_signal_ts

        try:
            signals = await self._bounded(
                "fetch_signals",
                self._feed.fetch_signals(config.targets, since_ts=since_ts, limit=self._feed_limit),
            )
        except (SignalFeedError, httpx.HTTPError, CallTimeoutError) as e:
            cycle.users_skipped += 1
            cycle.errors += 1
            cycle.last_error = f"{user_id}: {e}"
            await self._logs.error(user_id, "Signal feed error", {"err": str(e)})
            return

        cycle.users_processed += 1
        ordered = sorted(signals, key=lambda s: s.ts)
        cycle.signals_seen += len(ordered)

        # Cash is not tracked yet; each trade may use up to the per-trade cap
        user_cash_usd = config.max_trade_usd

        resolved: list[Signal] = []
        try:
            for signal in ordered:
                if time.monotonic() >= deadline:
                    logger.warning(
                        "Cycle deadline reached while processing user %s; unresolved signals wait",
                        user_id,
                    )
                    break
                try:
                    done = await self._evaluate_signal(
                        user_id, config, creds, signal, user_cash_usd, cycle
                    )
                except OrderbookUnavailableError as e:
                    cycle.errors += 1
                    cycle.last_error = f"{user_id}: {e}"
                    await self._logs.error(
                        user_id,
                        "Orderbook unavailable; remaining signals deferred",
                        {"tokenId": e.token_id, "err": str(e.__cause__ or e)},
                    )
                    break
                if done:
                    resolved.append(signal)
        finally:
            self._advance_watermark(user_id, ordered, resolved)
            await self._persist_state(user_id)

    def _advance_watermark(
        self, user_id: str, ordered: list[Signal], resolved: list[Signal]
    ) -> None:
        """Advance past resolved signals only.

        The watermark stays strictly below the oldest unresolved signal.
        Signals sharing its timestamp are held back too, since the feed
        filter is strictly greater-than; the ledger deduplicates them when
        they come back.
        """
        done = {s.signal_id for s in resolved}
        pending_ts = [s.ts for s in ordered if s.signal_id not in done]
        if pending_ts:
            first_pending_ts = min(pending_ts)
            resolved = [s for s in resolved if s.ts < first_pending_ts]
        self._state_tracker.advance(user_id, resolved)

    # ------------------------------------------------------------------
    # History writes
    # ------------------------------------------------------------------

    async def _record(self, user_id: str, entry: PendingRecord, cycle: TickStats) -> bool:
        """Write a decision to the ledger with a bounded retry.

        Returns:
            False when every attempt failed; the failure is logged and counted.
        """
        assert self._ledger is not None and self._logs is not None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(HISTORY_WRITE_ATTEMPTS),
                wait=wait_exponential(multiplier=HISTORY_WRITE_BACKOFF_SECONDS, max=2.0),
                reraise=True,
            ):
                with attempt:
                    await self._bounded(
                        "record_history",
                        self._ledger.record(
                            user_id,
                            entry.signal,
                            requested_usd=entry.requested_usd,
                            requested_shares=entry.requested_shares,
                            status=entry.status,
                            reason=entry.reason,
                            order_id=entry.order_id,
                        ),
                    )
        except Exception as e:
            cycle.errors += 1
            cycle.last_error = f"{user_id}: {e}"
            await self._logs.error(
                user_id,
                "History write failed",
                {"signalId": entry.signal.signal_id, "status": entry.status.value, "err": str(e)},
            )
            return False
        return True

    async def _settle(self, user_id: str, entry: PendingRecord, cycle: TickStats) -> None:
        """Record a decision taken after an order attempt.

        The signal is resolved either way; a failed write is kept in memory
        so the signal is not executed again, and flushed on later cycles.
        """
        if not await self._record(user_id, entry, cycle):
            self._unrecorded[(user_id, entry.signal.signal_id)] = entry

    async def _flush_unrecorded(self, user_id: str, cycle: TickStats) -> None:
        for key, entry in list(self._unrecorded.items()):
            if key[0] != user_id:
                continue
            if await self._record(user_id, entry, cycle):
                del self._unrecorded[key]
                logger.info("Recorded deferred decision for user %s signal %s", *key)

    async def _already_decided(self, user_id: str, signal: Signal) -> bool:
        assert self._ledger is not None
        if (user_id, signal.signal_id) in self._unrecorded:
            return True
        return await self._bounded(
            "history_lookup", self._ledger.has_record(user_id, signal.signal_id)
        )

    async def _skip(
        self,
        user_id: str,
        signal: Signal,
        reason: str,
        cycle: TickStats,
        *,
        requested_usd: Decimal = ZERO,
        requested_shares: Decimal = ZERO,
        meta: dict[str, Any] | None = None,
    ) -> bool:
        """Record a skip. An unrecorded skip leaves the signal for the next cycle."""
        assert self._logs is not None
        entry = PendingRecord(
            signal,
            HistoryStatus.SKIPPED,
            requested_usd=requested_usd,
            requested_shares=requested_shares,
            reason=reason,
        )
        if not await self._record(user_id, entry, cycle):
            return False
        cycle.orders_skipped += 1
        await self._logs.warn(
            user_id,
            f"Skipped: {reason}",
            {"signalId": signal.signal_id, "tokenId": signal.token_id, **(meta or {})},
        )
        return True

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def _evaluate_signal(
        self,
        user_id: str,
        config: BotConfig,
        creds: ExchangeCredentials,
        signal: Signal,
        user_cash_usd: Decimal,
        cycle: TickStats,
    ) -> bool:
        """Apply the rules to one signal; first failing rule wins.

        Order: cooldown, sizing, slippage guard, minimum shares, execution.

        Returns:
            True once the signal is resolved and the watermark may pass it.
        """
        assert self._logs is not None and self._adapter is not None

        if await self._already_decided(user_id, signal):
            cycle.signals_duplicate += 1
            return True

        if self._state_tracker.in_cooldown(user_id, signal.token_id, config.copy_delay_ms):
            return await self._skip(user_id, signal, REASON_COOLDOWN, cycle)

        decision = decide_size(signal, config, user_cash_usd)
        if not decision.ok:
            assert decision.reason is not None
            return await self._skip(user_id, signal, decision.reason, cycle)

        try:
            quote = await self._bounded(
                "get_orderbook", self._adapter.get_orderbook(signal.token_id, creds)
            )
        except Exception as e:
            raise OrderbookUnavailableError(signal.token_id, e) from e

        ref = reference_price(signal.side, bid=quote.bid, ask=quote.ask)
        bps = slippage_bps(ref, signal.price)
        if bps > config.max_slippage_bps:
            return await self._skip(
                user_id,
                signal,
                REASON_SLIPPAGE_GUARD,
                cycle,
                meta={"ref": ref, "desired": signal.price, "bps": bps},
            )

        shares = shares_for(decision.target_usd, signal.price)
        if shares < self._min_order_shares:
            return await self._skip(
                user_id,
                signal,
                REASON_CANNOT_MEET_MIN_SHARES,
                cycle,
                requested_usd=decision.target_usd,
                requested_shares=shares,
            )

        await self._logs.info(
            user_id,
            f"Placing Order: {signal.side} {shares:.4f} shares @ {signal.price}",
            {"tokenId": signal.token_id},
        )
        order = OrderRequest(
            token_id=signal.token_id, side=signal.side, price=signal.price, size_shares=shares
        )
        failed = PendingRecord(
            signal,
            HistoryStatus.FAILED,
            requested_usd=decision.target_usd,
            requested_shares=shares,
            reason=REASON_EXECUTION_FAILED,
        )
        try:
            result = await self._bounded("place_order", self._adapter.place_order(order, creds))
        except CallTimeoutError as e:
            # the adapter call may still complete after the deadline
            await self._settle(user_id, failed, cycle)
            cycle.orders_failed += 1
            await self._logs.error(
                user_id,
                "Order placement timed out; outcome unknown",
                {"err": str(e), "tokenId": signal.token_id, "timedOut": True},
            )
            return True
        except Exception as e:
            await self._settle(user_id, failed, cycle)
            cycle.orders_failed += 1
            await self._logs.error(
                user_id, "Execution failed at adapter level", {"err": str(e), "tokenId": signal.token_id}
            )
            return True

        self._state_tracker.record_trade(user_id, signal.token_id)
        cycle.orders_accepted += 1
        await self._settle(
            user_id,
            PendingRecord(
                signal,
                HistoryStatus.ACCEPTED,
                requested_usd=decision.target_usd,
                requested_shares=shares,
                order_id=result.order_id,
            ),
            cycle,
        )
        await self._logs.success(
            user_id, f"Order Accepted. Id: {result.order_id}", {"tokenId": signal.token_id}
        )
        return True
