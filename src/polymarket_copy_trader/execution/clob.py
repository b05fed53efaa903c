"""Live execution adapter on top of py-clob-client, with rate limiting and retry logic."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Any, ParamSpec, TypeVar

import httpx
from py_clob_client.client import ClobClient as BaseClobClient
from py_clob_client.clob_types import ApiCreds, OrderArgs
from py_clob_client.order_builder.constants import BUY, SELL

from polymarket_copy_trader.execution.base import (
    ExchangeCredentials,
    ExecutionAdapter,
    ExecutionError,
    OrderbookQuote,
    OrderRequest,
    OrderResult,
    Position,
)

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Constants
DEFAULT_HOST = "https://clob.polymarket.com"
DEFAULT_DATA_API_URL = "https://data-api.polymarket.com"
MAX_REQUESTS_PER_SECOND = 10

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY = 0.5


class RateLimiter:
    """Token bucket rate limiter for API requests."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class ClobAdapterError(ExecutionError):
    """Raised when the CLOB rejects or fails a request."""


def with_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator for adding retry logic with exponential backoff.

    Only used for read-only calls; order placement is never retried.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Tuple of exception types to retry on.
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt == max_retries:
                        break

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                        attempt + 1,
                        max_retries + 1,
                        str(e),
                        delay,
                    )
                    time.sleep(delay)

            raise ClobAdapterError(
                f"All {max_retries + 1} attempts failed for {func.__name__}: {last_exception}"
            ) from last_exception

        return wrapper

    return decorator


def _decimal(value: Any) -> Decimal | None:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


def best_prices(orderbook: Any) -> OrderbookQuote:
    """Extract the best bid and ask from a py-clob-client order book.

    Level ordering differs between endpoints, so the best level is chosen by
    price rather than position. An empty side quotes as 0.
    """
    bids = [p for p in (_decimal(level.price) for level in (orderbook.bids or [])) if p is not None]
    asks = [p for p in (_decimal(level.price) for level in (orderbook.asks or [])) if p is not None]
    return OrderbookQuote(
        bid=max(bids) if bids else Decimal("0"),
        ask=min(asks) if asks else Decimal("0"),
    )


class ClobExecutionAdapter(ExecutionAdapter):
    """Execution adapter backed by the Polymarket CLOB.

    One py-clob-client instance is kept per API key. The underlying client
    is synchronous, so calls run in worker threads.

    Example:
        >>> adapter = ClobExecutionAdapter(host="https://clob.polymarket.com")
        >>> quote = await adapter.get_orderbook(token_id, creds)
    """

    name = "clob"

    def __init__(
        self,
        *,
        host: str = DEFAULT_HOST,
        chain_id: int = 137,
        data_api_url: str = DEFAULT_DATA_API_URL,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._chain_id = chain_id
        self._data_api_url = data_api_url.rstrip("/")
        self._rate_limiter = RateLimiter(requests_per_second)
        self._clients: dict[str, BaseClobClient] = {}
        self._http = http_client
        self._owns_http = http_client is None
        self._timeout = timeout

        logger.info(
            "Initialized CLOB execution adapter with host=%s, rate_limit=%.1f req/s",
            host,
            requests_per_second,
        )

    def _client_for(self, creds: ExchangeCredentials) -> BaseClobClient:
        client = self._clients.get(creds.key)
        if client is None:
            client = BaseClobClient(
                self._host,
                chain_id=self._chain_id,
                key=creds.private_key,
                creds=ApiCreds(
                    api_key=creds.key,
                    api_secret=creds.secret,
                    api_passphrase=creds.passphrase,
                ),
                signature_type=creds.signature_type,
                funder=creds.funder,
            )
            self._clients[creds.key] = client
        return client

    @with_retry()
    def _fetch_order_book(self, client: BaseClobClient, token_id: str) -> Any:
        return client.get_order_book(token_id)

    async def get_orderbook(self, token_id: str, creds: ExchangeCredentials) -> OrderbookQuote:
        await self._rate_limiter.acquire()
        client = self._client_for(creds)
        orderbook = await asyncio.to_thread(self._fetch_order_book, client, token_id)
        return best_prices(orderbook)

    def _post_order(self, client: BaseClobClient, order: OrderRequest) -> dict[str, Any]:
        args = OrderArgs(
            token_id=order.token_id,
            price=float(order.price),
            size=float(order.size_shares),
            side=BUY if order.side == "BUY" else SELL,
        )
        try:
            resp = client.create_and_post_order(args)
        except Exception as e:
            raise ClobAdapterError(f"Failed to place order for {order.token_id}: {e}") from e
        if not isinstance(resp, dict):
            raise ClobAdapterError("Unexpected order response shape")
        return resp

    async def place_order(self, order: OrderRequest, creds: ExchangeCredentials) -> OrderResult:
        if not creds.private_key:
            raise ClobAdapterError("A signing key is required to place orders")
        await self._rate_limiter.acquire()
        client = self._client_for(creds)
        resp = await asyncio.to_thread(self._post_order, client, order)

        order_id = resp.get("orderID") or resp.get("orderId")
        if resp.get("success") is False or not order_id:
            raise ClobAdapterError(
                f"Order rejected for {order.token_id}: {resp.get('errorMsg') or 'no order id'}"
            )
        return OrderResult(order_id=str(order_id))

    def _ensure_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def get_positions(self, creds: ExchangeCredentials) -> list[Position]:
        address = creds.funder or (self._client_for(creds).get_address() if creds.private_key else None)
        if not address:
            raise ClobAdapterError("A funder address or signing key is required to list positions")

        await self._rate_limiter.acquire()
        try:
            resp = await self._ensure_http().get(
                f"{self._data_api_url}/positions", params={"user": address}
            )
        except httpx.HTTPError as e:
            raise ClobAdapterError(f"Failed to fetch positions: {e}") from e
        if not resp.is_success:
            raise ClobAdapterError(f"positions_http_{resp.status_code}")

        items = resp.json()
        if not isinstance(items, list):
            return []
        out: list[Position] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            token_id = item.get("asset") or item.get("tokenId")
            shares = _decimal(item.get("size"))
            if not token_id or shares is None:
                continue
            out.append(
                Position(
                    token_id=str(token_id),
                    shares=shares,
                    avg_entry=_decimal(item.get("avgPrice")) or Decimal("0"),
                    current_price=_decimal(item.get("curPrice")) or Decimal("0"),
                )
            )
        return out

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None
        self._clients.clear()
