"""Pytest configuration and fixtures."""

from collections.abc import Callable
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from polymarket_copy_trader.config import Settings, clear_settings_cache
from polymarket_copy_trader.signals.models import Signal
from polymarket_copy_trader.storage.database import DatabaseManager
from polymarket_copy_trader.storage.models import Base

MASTER_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TARGET_WALLET = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"


@pytest.fixture
def master_key() -> bytes:
    return bytes.fromhex(MASTER_KEY_HEX)


@pytest.fixture
def worker_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Minimal environment for a worker Settings instance."""
    env = {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "SIGNAL_FEED_URL": "https://feed.test/trades",
        "CREDENTIALS_MASTER_KEY": MASTER_KEY_HEX,
        "POLL_INTERVAL_MS": "100",
        "WORKER_CALL_TIMEOUT_SECONDS": "2",
    }
    for name in ("REDIS_URL", "SIGNAL_LEADERBOARD_URL", "EXECUTION_BACKEND", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    clear_settings_cache()
    return env


@pytest.fixture
def settings(worker_env: dict[str, str]) -> Settings:  # noqa: ARG001
    return Settings(_env_file=None)


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db_manager(async_engine) -> DatabaseManager:
    return DatabaseManager.from_engine(async_engine)


@pytest.fixture
def make_signal() -> Callable[..., Signal]:
    """Factory for signals with sensible defaults."""

    def _make(**overrides: object) -> Signal:
        fields: dict[str, object] = {
            "signal_id": "sig-1",
            "source_wallet": TARGET_WALLET,
            "market_id": "will-it-rain",
            "token_id": "token-yes",
            "outcome": "Yes",
            "side": "BUY",
            "price": Decimal("0.50"),
            "notional_usd": Decimal("40"),
            "ts": 1_700_000_000_000,
        }
        fields.update(overrides)
        return Signal(**fields)  # type: ignore[arg-type]

    return _make
