"""Position sizing and slippage rules for copied trades.

Everything here is pure: the orchestrator supplies the signal, the user's
configuration, and available cash, and decides what to do with the result.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from polymarket_copy_trader.signals.models import Signal

BPS_PER_UNIT = Decimal("10000")

# Skip / failure reasons recorded in history
REASON_COOLDOWN = "cooldown"
REASON_NO_CASH = "no_cash"
REASON_BELOW_MIN_NOTIONAL = "below_min_notional"
REASON_SLIPPAGE_GUARD = "slippage_guard"
REASON_CANNOT_MEET_MIN_SHARES = "cannot_meet_min_shares"
REASON_EXECUTION_FAILED = "execution_failed"


@dataclass(frozen=True)
class BotConfig:
    """Per-user risk and sizing parameters.

    Attributes:
        targets: Wallets whose trades are mirrored.
        multiplier: Fraction of observed notional to mirror (0-1).
        max_trade_usd: Cap on any single copied trade.
        min_notional_usd: Smallest copied trade worth placing.
        max_slippage_bps: Largest tolerated deviation from the live book.
        copy_delay_ms: Per-instrument cooldown between copied trades.
    """

    targets: tuple[str, ...]
    multiplier: Decimal
    max_trade_usd: Decimal
    min_notional_usd: Decimal
    max_slippage_bps: int
    copy_delay_ms: int

    @classmethod
    def build(
        cls,
        *,
        targets: Iterable[Any],
        multiplier: Any,
        max_trade_usd: Any,
        min_notional_usd: Any,
        max_slippage_bps: Any,
        copy_delay_ms: Any,
    ) -> BotConfig:
        """Coerce loosely typed stored values into a BotConfig."""
        return cls(
            targets=tuple(str(t) for t in targets if str(t)),
            multiplier=Decimal(str(multiplier)),
            max_trade_usd=Decimal(str(max_trade_usd)),
            min_notional_usd=Decimal(str(min_notional_usd)),
            max_slippage_bps=int(max_slippage_bps),
            copy_delay_ms=int(copy_delay_ms),
        )


@dataclass(frozen=True)
class Decision:
    """Outcome of sizing: either a target USD amount or a skip reason."""

    ok: bool
    target_usd: Decimal = Decimal("0")
    reason: str | None = None

    @classmethod
    def accept(cls, target_usd: Decimal) -> Decision:
        return cls(ok=True, target_usd=target_usd)

    @classmethod
    def reject(cls, reason: str) -> Decision:
        return cls(ok=False, reason=reason)


def decide_size(signal: Signal, config: BotConfig, user_cash_usd: Decimal) -> Decision:
    """Decide how much USD to allocate to a copied trade.

    A zero or unreadable upstream notional does not block copying: the raw
    amount falls back to ``max_trade_usd`` and the caps absorb the rest.

    Args:
        signal: Signal being copied.
        config: User's risk configuration.
        user_cash_usd: Cash available to the user.

    Returns:
        Decision with ``0 < target_usd <= min(max_trade_usd, user_cash_usd)``
        on success, or a ``no_cash`` / ``below_min_notional`` rejection.
    """
    raw = config.multiplier * signal.notional_usd
    if raw <= 0:
        raw = config.max_trade_usd
    capped = min(raw, config.max_trade_usd)
    target_usd = min(capped, user_cash_usd)

    if target_usd <= 0:
        return Decision.reject(REASON_NO_CASH)
    if target_usd < config.min_notional_usd:
        return Decision.reject(REASON_BELOW_MIN_NOTIONAL)
    return Decision.accept(target_usd)


def slippage_bps(ref_price: Decimal, desired_price: Decimal) -> int:
    """Deviation between desired and reference price in basis points.

    Returns 0 when there is no usable reference price.
    """
    if ref_price <= 0:
        return 0
    bps = abs(desired_price - ref_price) / ref_price * BPS_PER_UNIT
    return int(bps.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def shares_for(target_usd: Decimal, price: Decimal) -> Decimal:
    """Convert a USD amount into shares at ``price`` (0 for unusable prices)."""
    if price <= 0:
        return Decimal("0")
    return target_usd / price


def reference_price(side: str, *, bid: Decimal, ask: Decimal) -> Decimal:
    """Price a copied order would cross: the ask when buying, the bid when selling."""
    return ask if side == "BUY" else bid
