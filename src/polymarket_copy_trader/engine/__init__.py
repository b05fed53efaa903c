"""Decision engine - risk rules, per-user state, ledger, and the tick loop."""

from polymarket_copy_trader.engine.ledger import HistoryLedger, HistoryStatus, UserLogStream
from polymarket_copy_trader.engine.orchestrator import (
    CallTimeoutError,
    OrchestratorState,
    TickOrchestrator,
    TickStats,
)
from polymarket_copy_trader.engine.risk import (
    BotConfig,
    Decision,
    decide_size,
    reference_price,
    shares_for,
    slippage_bps,
)
from polymarket_copy_trader.engine.state import RedisStateCache, StateTracker, UserState

__all__ = [
    "BotConfig",
    "CallTimeoutError",
    "Decision",
    "HistoryLedger",
    "HistoryStatus",
    "OrchestratorState",
    "RedisStateCache",
    "StateTracker",
    "TickOrchestrator",
    "TickStats",
    "UserLogStream",
    "UserState",
    "decide_size",
    "reference_price",
    "shares_for",
    "slippage_bps",
]
