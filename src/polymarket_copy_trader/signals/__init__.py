"""Signal sources - upstream trade feed and leaderboard lookups."""

from polymarket_copy_trader.signals.feed import (
    SignalFeedClient,
    SignalFeedError,
    derive_signal_id,
    fetch_signals,
    normalize_trade,
)
from polymarket_copy_trader.signals.leaderboard import LeaderboardError, fetch_top_traders
from polymarket_copy_trader.signals.models import LeaderboardEntry, Side, Signal

__all__ = [
    "LeaderboardEntry",
    "LeaderboardError",
    "Side",
    "Signal",
    "SignalFeedClient",
    "SignalFeedError",
    "derive_signal_id",
    "fetch_signals",
    "fetch_top_traders",
    "normalize_trade",
]
