"""Copy-trader schema: bot config, credentials, decision history, bot logs.

Revision ID: 001_copy_trader
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_copy_trader"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "bot_config",
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("targets", sa.JSON(), nullable=False),
        sa.Column("multiplier", sa.Numeric(10, 6), nullable=False),
        sa.Column("max_trade_usd", sa.Numeric(20, 6), nullable=False),
        sa.Column("min_notional_usd", sa.Numeric(20, 6), nullable=False),
        sa.Column("max_slippage_bps", sa.Integer(), nullable=False),
        sa.Column("copy_delay_ms", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("idx_bot_config_enabled", "bot_config", ["enabled"])

    # base64(iv[12] || tag[16] || ciphertext)
    op.create_table(
        "pm_credentials",
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("ciphertext", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "bot_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("signal_id", sa.Text(), nullable=False),
        sa.Column("market_id", sa.Text(), nullable=False),
        sa.Column("token_id", sa.Text(), nullable=False),
        sa.Column("outcome", sa.Text(), nullable=False),
        sa.Column("side", sa.String(4), nullable=False),
        sa.Column("price", sa.Numeric(20, 10), nullable=False),
        sa.Column("requested_usd", sa.Numeric(30, 10), nullable=False),
        sa.Column("requested_shares", sa.Numeric(30, 10), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(64), nullable=True),
        sa.Column("order_id", sa.String(128), nullable=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "signal_id", name="uq_bot_history_user_signal"),
    )
    op.create_index("idx_bot_history_user_ts", "bot_history", ["user_id", "ts"])
    op.create_index("idx_bot_history_status", "bot_history", ["status"])

    op.create_table(
        "bot_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("level", sa.String(16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_bot_logs_user_created", "bot_logs", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_bot_logs_user_created", table_name="bot_logs")
    op.drop_table("bot_logs")

    op.drop_index("idx_bot_history_status", table_name="bot_history")
    op.drop_index("idx_bot_history_user_ts", table_name="bot_history")
    op.drop_table("bot_history")

    op.drop_table("pm_credentials")

    op.drop_index("idx_bot_config_enabled", table_name="bot_config")
    op.drop_table("bot_config")
