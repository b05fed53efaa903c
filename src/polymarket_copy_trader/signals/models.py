"""Data models for the signals module."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Literal

Side = Literal["BUY", "SELL"]


@dataclass(frozen=True)
class Signal:
    """A single observed trade on a target wallet, normalized for copying.

    Attributes:
        signal_id: Stable dedup key for the upstream event.
        source_wallet: Wallet that made the original trade.
        market_id: Market (event slug or condition id) of the trade.
        token_id: Tradable instrument to mirror.
        outcome: Outcome label; not restricted to Yes/No.
        side: BUY or SELL.
        price: Unit price (0-1 for probability markets).
        notional_usd: USD value of the original trade.
        ts: Event time in milliseconds since the epoch.
    """

    signal_id: str
    source_wallet: str
    market_id: str
    token_id: str
    outcome: str
    side: Side
    price: Decimal
    notional_usd: Decimal
    ts: int


@dataclass(frozen=True)
class LeaderboardEntry:
    """A ranked trader from the leaderboard API."""

    wallet_address: str
    display_name: str
    profit_loss: Decimal
    volume: Decimal
    trade_count: int
    rank: int
    profile_url: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LeaderboardEntry":
        """Create a LeaderboardEntry from an API entry."""
        return cls(
            wallet_address=str(data.get("walletAddress", "")).lower(),
            display_name=str(data.get("displayName", "")),
            profit_loss=Decimal(str(data.get("profitLoss", 0))),
            volume=Decimal(str(data.get("volume", 0))),
            trade_count=int(data.get("tradeCount", 0)),
            rank=int(data.get("rank", 0)),
            profile_url=str(data.get("profileUrl", "")),
        )
