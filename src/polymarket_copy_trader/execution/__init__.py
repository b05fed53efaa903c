"""Execution adapters - order-book lookup and order placement."""

from __future__ import annotations

from typing import TYPE_CHECKING

from polymarket_copy_trader.execution.base import (
    ExchangeCredentials,
    ExecutionAdapter,
    ExecutionError,
    OrderbookQuote,
    OrderRequest,
    OrderResult,
    Position,
)
from polymarket_copy_trader.execution.clob import ClobAdapterError, ClobExecutionAdapter
from polymarket_copy_trader.execution.paper import PaperExecutionAdapter

if TYPE_CHECKING:
    from polymarket_copy_trader.config import Settings


def build_execution_adapter(settings: Settings) -> ExecutionAdapter:
    """Select the execution backend named by ``EXECUTION_BACKEND``."""
    if settings.execution.backend == "clob":
        return ClobExecutionAdapter(
            host=settings.polymarket.clob_host,
            chain_id=settings.polymarket.clob_chain_id,
            data_api_url=settings.polymarket.data_api_url,
        )
    return PaperExecutionAdapter()


__all__ = [
    "ClobAdapterError",
    "ClobExecutionAdapter",
    "ExchangeCredentials",
    "ExecutionAdapter",
    "ExecutionError",
    "OrderRequest",
    "OrderResult",
    "OrderbookQuote",
    "PaperExecutionAdapter",
    "Position",
    "build_execution_adapter",
]
