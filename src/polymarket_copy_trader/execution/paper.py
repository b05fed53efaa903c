"""Deterministic paper-trading adapter.

Quotes a fixed book and accepts every order without contacting the
exchange. Accepted orders are kept as positions so dry runs can be
inspected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

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

DEFAULT_BID = Decimal("0.49")
DEFAULT_ASK = Decimal("0.51")


@dataclass
class _Holding:
    shares: Decimal = Decimal("0")
    cost: Decimal = Decimal("0")


@dataclass
class PaperOrder:
    order_id: str
    account: str
    request: OrderRequest


@dataclass
class PaperExecutionAdapter(ExecutionAdapter):
    """In-process adapter with a fixed book.

    Attributes:
        bid: Quoted best bid for every token.
        ask: Quoted best ask for every token.
        quotes: Per-token overrides of the fixed book.
        fail_orders: When set, ``place_order`` raises instead of filling.
    """

    bid: Decimal = DEFAULT_BID
    ask: Decimal = DEFAULT_ASK
    quotes: dict[str, OrderbookQuote] = field(default_factory=dict)
    fail_orders: bool = False
    orders: list[PaperOrder] = field(default_factory=list)
    _holdings: dict[tuple[str, str], _Holding] = field(default_factory=dict, repr=False)
    _seq: int = field(default=0, repr=False)

    name = "paper"

    def _quote(self, token_id: str) -> OrderbookQuote:
        return self.quotes.get(token_id) or OrderbookQuote(bid=self.bid, ask=self.ask)

    async def get_orderbook(self, token_id: str, creds: ExchangeCredentials) -> OrderbookQuote:
        return self._quote(token_id)

    async def place_order(self, order: OrderRequest, creds: ExchangeCredentials) -> OrderResult:
        if self.fail_orders:
            raise ExecutionError(f"paper order rejected for {order.token_id}")

        self._seq += 1
        order_id = f"paper_{self._seq:06d}"
        self.orders.append(PaperOrder(order_id=order_id, account=creds.key, request=order))

        holding = self._holdings.setdefault((creds.key, order.token_id), _Holding())
        if order.side == "BUY":
            holding.shares += order.size_shares
            holding.cost += order.size_shares * order.price
        else:
            sold = min(order.size_shares, holding.shares)
            if holding.shares > 0:
                holding.cost -= holding.cost * sold / holding.shares
            holding.shares -= sold

        logger.info(
            "Paper %s %s shares of %s @ %s -> %s",
            order.side,
            order.size_shares,
            order.token_id,
            order.price,
            order_id,
        )
        return OrderResult(order_id=order_id)

    async def get_positions(self, creds: ExchangeCredentials) -> list[Position]:
        positions: list[Position] = []
        for (account, token_id), holding in sorted(self._holdings.items()):
            if account != creds.key or holding.shares <= 0:
                continue
            quote = self._quote(token_id)
            positions.append(
                Position(
                    token_id=token_id,
                    shares=holding.shares,
                    avg_entry=holding.cost / holding.shares,
                    current_price=(quote.bid + quote.ask) / 2,
                )
            )
        return positions
