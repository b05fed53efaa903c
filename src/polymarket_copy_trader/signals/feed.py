"""Signal Source Adapter for the upstream trades feed.

Fetches trades for a set of target wallets and normalizes them into
``Signal`` objects. The feed is queried as::

    GET <feed_base>?traders=<comma-joined addresses>&limit=<n>

and is expected to return ``{"data": {"trades": [...]}}`` with each trade
timestamp in seconds.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from polymarket_copy_trader.signals.models import Side, Signal

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
DEFAULT_TIMEOUT_SECONDS = 10.0
UNKNOWN_OUTCOME = "Unknown"

_HEADERS = {"Accept": "application/json"}


class SignalFeedError(Exception):
    """Raised when the feed responds with a non-success HTTP status."""

    def __init__(self, status: int) -> None:
        super().__init__(f"signal_feed_http_{status}")
        self.status = status


def _is_retryable(exc: BaseException) -> bool:
    """Retry on transport errors and timeouts, never on HTTP statuses."""
    return isinstance(exc, httpx.TransportError)


_retry_decorator = retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not result.is_finite():
        return Decimal("0")
    return result


def _parse_ts_ms(value: Any) -> int | None:
    if value is None:
        return None
    try:
        seconds = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not seconds.is_finite():
        return None
    return int(seconds * 1000)


def derive_signal_id(*, source_wallet: str, market_id: str, ts: Any, side: str) -> str:
    """Build a deterministic id for trades the feed did not identify.

    Re-fetching the same event always yields the same key.
    """
    return f"{source_wallet}-{market_id}-{ts}-{side}"


def normalize_trade(trade: dict[str, Any]) -> Signal | None:
    """Normalize one upstream trade into a Signal.

    Returns:
        The Signal, or None if the trade has no usable timestamp.
    """
    ts_ms = _parse_ts_ms(trade.get("timestamp"))
    if ts_ms is None:
        return None

    source_wallet = str(trade.get("traderAddress", ""))
    market_id = str(trade.get("eventSlug") or trade.get("market") or "")
    token_id = str(trade.get("tokenId") or trade.get("asset") or market_id)
    side: Side = "SELL" if trade.get("side") == "SELL" else "BUY"

    raw_id = trade.get("id")
    if raw_id is not None and str(raw_id):
        signal_id = str(raw_id)
    else:
        signal_id = derive_signal_id(
            source_wallet=source_wallet,
            market_id=market_id,
            ts=trade.get("timestamp"),
            side=side,
        )

    outcome = trade.get("outcome")
    return Signal(
        signal_id=signal_id,
        source_wallet=source_wallet,
        market_id=market_id,
        token_id=token_id,
        outcome=str(outcome) if outcome is not None else UNKNOWN_OUTCOME,
        side=side,
        price=_to_decimal(trade.get("price")),
        notional_usd=_to_decimal(trade.get("amount")),
        ts=ts_ms,
    )


def _extract_trades(payload: Any) -> list[Any]:
    if not isinstance(payload, dict):
        return []
    data = payload.get("data")
    if not isinstance(data, dict):
        return []
    trades = data.get("trades")
    return trades if isinstance(trades, list) else []


class SignalFeedClient:
    """Async client for the upstream trades feed.

    Example:
        ```python
        async with SignalFeedClient("https://feed.example/trades") as feed:
            signals = await feed.fetch_signals(["0xabc..."], since_ts=1700000000000)
        ```
    """

    def __init__(
        self,
        feed_base: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the feed client.

        Args:
            feed_base: Base URL of the feed, without query parameters.
            timeout: HTTP timeout in seconds.
            client: Optional pre-built httpx client (used by tests).
        """
        self._feed_base = feed_base
        self._timeout = timeout
        self._client = client

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=_HEADERS,
            )
        return self._client

    @_retry_decorator
    async def _get(self, params: dict[str, str]) -> httpx.Response:
        return await self._ensure_client().get(self._feed_base, params=params)

    async def fetch_signals(
        self,
        addresses: Sequence[str],
        *,
        since_ts: int | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[Signal]:
        """Fetch and normalize trades for the given wallets.

        Args:
            addresses: Wallets to query. An empty list returns immediately.
            since_ts: If given, only signals strictly newer than this (ms).
            limit: Result cap passed to the feed.

        Returns:
            Normalized signals in feed order.

        Raises:
            SignalFeedError: If the feed responds with a non-success status.
        """
        if not addresses:
            return []

        params = {"traders": ",".join(addresses), "limit": str(limit)}
        response = await self._get(params)
        if not response.is_success:
            raise SignalFeedError(response.status_code)

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Signal feed returned a non-JSON body; treating as no trades")
            payload = None

        signals: list[Signal] = []
        skipped = 0
        for raw in _extract_trades(payload):
            if not isinstance(raw, dict):
                skipped += 1
                continue
            signal = normalize_trade(raw)
            if signal is None:
                skipped += 1
                continue
            signals.append(signal)
        if skipped:
            logger.debug("Skipped %d malformed trades from signal feed", skipped)

        if since_ts is not None:
            signals = [s for s in signals if s.ts > since_ts]
        return signals

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> SignalFeedClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


async def fetch_signals(
    feed_base: str,
    addresses: Sequence[str],
    since_ts: int | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[Signal]:
    """One-shot convenience wrapper around SignalFeedClient."""
    async with SignalFeedClient(feed_base) as feed:
        return await feed.fetch_signals(addresses, since_ts=since_ts, limit=limit)
