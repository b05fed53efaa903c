"""Execution adapter contract and value types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from polymarket_copy_trader.signals.models import Side


class ExecutionError(Exception):
    """Base exception for execution adapter failures."""


@dataclass(frozen=True)
class ExchangeCredentials:
    """Per-user CLOB credentials, as stored in the encrypted blob.

    ``key``/``secret``/``passphrase`` are the CLOB API credentials; the
    signing fields are only needed by adapters that post real orders.
    """

    key: str
    secret: str
    passphrase: str
    private_key: str | None = None
    funder: str | None = None
    signature_type: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExchangeCredentials:
        """Build from a decrypted payload, accepting ``key`` or ``api_key``."""
        key = data.get("key") or data.get("api_key")
        secret = data.get("secret") or data.get("api_secret")
        passphrase = data.get("passphrase") or data.get("api_passphrase")
        if not key or not secret or not passphrase:
            raise ValueError("credentials payload requires key, secret and passphrase")
        signature_type = data.get("signature_type")
        return cls(
            key=str(key),
            secret=str(secret),
            passphrase=str(passphrase),
            private_key=data.get("private_key") or None,
            funder=data.get("funder") or None,
            signature_type=int(signature_type) if signature_type is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "key": self.key,
            "secret": self.secret,
            "passphrase": self.passphrase,
        }
        if self.private_key:
            out["private_key"] = self.private_key
        if self.funder:
            out["funder"] = self.funder
        if self.signature_type is not None:
            out["signature_type"] = self.signature_type
        return out

    def __repr__(self) -> str:
        return f"ExchangeCredentials(key={self.key[:6]}***)"


@dataclass(frozen=True)
class OrderbookQuote:
    """Top of book for one token."""

    bid: Decimal
    ask: Decimal


@dataclass(frozen=True)
class OrderRequest:
    token_id: str
    side: Side
    price: Decimal
    size_shares: Decimal


@dataclass(frozen=True)
class OrderResult:
    order_id: str


@dataclass(frozen=True)
class Position:
    token_id: str
    shares: Decimal
    avg_entry: Decimal
    current_price: Decimal


class ExecutionAdapter(ABC):
    """Order-book lookup and order placement on behalf of a user.

    Every method is a suspending network operation that may fail
    independently; failures surface as ``ExecutionError`` subclasses.
    """

    name: str = "base"

    @abstractmethod
    async def get_orderbook(self, token_id: str, creds: ExchangeCredentials) -> OrderbookQuote:
        """Return the best bid and ask for ``token_id``."""

    @abstractmethod
    async def place_order(self, order: OrderRequest, creds: ExchangeCredentials) -> OrderResult:
        """Place a limit order and return the exchange order id."""

    @abstractmethod
    async def get_positions(self, creds: ExchangeCredentials) -> list[Position]:
        """Return the user's open positions."""

    async def close(self) -> None:
        """Release any held connections."""
        return None
