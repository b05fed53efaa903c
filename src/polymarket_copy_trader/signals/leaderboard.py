"""Leaderboard lookup used to discover wallets worth copying."""

from __future__ import annotations

import logging
from typing import Literal

import httpx

from polymarket_copy_trader.signals.models import LeaderboardEntry

logger = logging.getLogger(__name__)

Period = Literal["daily", "weekly", "monthly", "all"]

_TIMEOUT = httpx.Timeout(15.0, connect=10.0)
_HEADERS = {"Accept": "application/json"}


class LeaderboardError(Exception):
    """Raised when the leaderboard responds with a non-success HTTP status."""

    def __init__(self, status: int) -> None:
        super().__init__(f"leaderboard_http_{status}")
        self.status = status


async def fetch_top_traders(
    api_base: str,
    period: Period,
    category: str = "all",
    limit: int = 100,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[LeaderboardEntry]:
    """Fetch the top traders for a period and category.

    Args:
        api_base: Leaderboard API base URL.
        period: One of daily, weekly, monthly or all.
        category: Category filter (politics, sports, crypto, ...).
        limit: Number of entries to request.
        client: Optional pre-built httpx client.

    Returns:
        Entries from ``data.entries`` in API order.
    """
    params = {"period": period, "category": category, "limit": str(limit)}
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=_TIMEOUT, headers=_HEADERS)
    try:
        response = await http.get(api_base, params=params)
    finally:
        if owns_client:
            await http.aclose()

    if not response.is_success:
        raise LeaderboardError(response.status_code)

    try:
        payload = response.json()
    except ValueError:
        logger.warning("Leaderboard returned a non-JSON body; treating as no entries")
        payload = None
    data = payload.get("data") if isinstance(payload, dict) else None
    entries = data.get("entries") if isinstance(data, dict) else None
    out = [LeaderboardEntry.from_dict(e) for e in (entries or []) if isinstance(e, dict)]
    logger.debug("Fetched %d leaderboard entries (period=%s, category=%s)", len(out), period, category)
    return out
