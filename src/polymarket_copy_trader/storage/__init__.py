"""Storage layer - Database schemas and repositories."""

from polymarket_copy_trader.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from polymarket_copy_trader.storage.models import (
    Base,
    BotConfigModel,
    BotHistoryModel,
    BotLogModel,
    CredentialModel,
)
from polymarket_copy_trader.storage.repos import (
    BotConfigDTO,
    BotConfigRepository,
    BotLogDTO,
    BotLogRepository,
    CredentialRepository,
    HistoryRecordDTO,
    HistoryRepository,
)

__all__ = [
    "Base",
    "BotConfigDTO",
    "BotConfigModel",
    "BotConfigRepository",
    "BotHistoryModel",
    "BotLogDTO",
    "BotLogModel",
    "BotLogRepository",
    "CredentialModel",
    "CredentialRepository",
    "DatabaseManager",
    "HistoryRecordDTO",
    "HistoryRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
