"""Typer CLI: run, tick, init-db, store-credentials, top-traders, history."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import signal
from enum import Enum
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from polymarket_copy_trader.config import Settings, get_settings
from polymarket_copy_trader.credentials import encrypt_json, parse_master_key
from polymarket_copy_trader.engine.ledger import HistoryLedger
from polymarket_copy_trader.engine.orchestrator import TickOrchestrator
from polymarket_copy_trader.execution.base import ExchangeCredentials
from polymarket_copy_trader.signals.leaderboard import fetch_top_traders
from polymarket_copy_trader.storage.database import DatabaseManager
from polymarket_copy_trader.storage.repos import CredentialRepository

logger = logging.getLogger("polymarket_copy_trader")

app = typer.Typer(
    name="polymarket-copy-trader",
    help="Mirror target wallets' Polymarket trades for subscribed users.",
    no_args_is_help=True,
)
console = Console()


class Period(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    all_time = "all"


def _load_settings(command: str | None = None) -> Settings:
    """Load settings, configure logging and check command requirements.

    Exits with code 2 when a required setting is missing or invalid.
    """
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if command is not None:
        try:
            settings.validate_requirements(command=command)  # type: ignore[arg-type]
        except ValueError as e:
            logger.error("%s", e)
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=2) from e
    logger.info("Settings: %s", settings.redacted_summary())
    return settings


@app.command()
def run() -> None:
    """Run the polling worker until interrupted."""
    settings = _load_settings("run")

    async def _run() -> None:
        orchestrator = TickOrchestrator(settings)
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)

        await orchestrator.start()
        try:
            await stop.wait()
        finally:
            await orchestrator.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None


@app.command()
def tick() -> None:
    """Run a single cycle and print its stats."""
    settings = _load_settings("tick")

    async def _run():
        orchestrator = TickOrchestrator(settings)
        try:
            return await orchestrator.run_tick()
        finally:
            await orchestrator.close()

    stats = asyncio.run(_run())
    console.print_json(json.dumps(dataclasses.asdict(stats), default=str))
    if stats.errors:
        raise typer.Exit(code=1)


@app.command(name="init-db")
def init_db() -> None:
    """Create tables (development; use Alembic in production)."""
    settings = _load_settings()

    async def _run() -> None:
        db = DatabaseManager(settings.database.url)
        try:
            await db.init_schema_async()
        finally:
            await db.dispose_async()

    asyncio.run(_run())
    console.print("[green]Schema created.[/green]")


@app.command(name="store-credentials")
def store_credentials(
    user_id: str = typer.Option(..., "--user-id", help="User to store credentials for"),
    key: str = typer.Option(..., "--key", help="CLOB API key"),
    secret: str = typer.Option(..., "--secret", help="CLOB API secret"),
    passphrase: str = typer.Option(..., "--passphrase", help="CLOB API passphrase"),
    private_key: Optional[str] = typer.Option(
        None, "--private-key",
        help="Signing key (required for live orders)",
    ),
    funder: Optional[str] = typer.Option(None, "--funder", help="Funder / proxy wallet address"),
    signature_type: Optional[int] = typer.Option(None, "--signature-type"),
) -> None:
    """Encrypt and store a user's CLOB credentials."""
    settings = _load_settings("store-credentials")
    assert settings.credentials.master_key is not None
    master_key = parse_master_key(settings.credentials.master_key.get_secret_value())
    creds = ExchangeCredentials(
        key=key,
        secret=secret,
        passphrase=passphrase,
        private_key=private_key,
        funder=funder,
        signature_type=signature_type,
    )

    async def _run() -> None:
        db = DatabaseManager(settings.database.url)
        try:
            async with db.get_async_session() as session:
                await CredentialRepository(session).upsert(
                    user_id, encrypt_json(creds.to_dict(), master_key)
                )
        finally:
            await db.dispose_async()

    asyncio.run(_run())
    logger.info("Stored credentials for user %s", user_id)
    console.print(f"[green]Stored credentials for {user_id}[/green]")


@app.command(name="top-traders")
def top_traders(
    period: Period = typer.Option(Period.weekly, "--period", help="Leaderboard window"),
    category: str = typer.Option("all", "--category", help="Category filter"),
    limit: int = typer.Option(20, "--limit", help="Number of traders"),
) -> None:
    """List leaderboard traders to pick targets from."""
    settings = _load_settings("top-traders")
    assert settings.signals.leaderboard_url is not None

    entries = asyncio.run(
        fetch_top_traders(settings.signals.leaderboard_url, period.value, category, limit)
    )
    if not entries:
        console.print("[yellow]No traders returned.[/yellow]")
        return

    table = Table(title=f"Top traders ({period.value}, {category})")
    table.add_column("Rank", justify="right")
    table.add_column("Wallet")
    table.add_column("Name")
    table.add_column("PnL", justify="right")
    table.add_column("Volume", justify="right")
    table.add_column("Trades", justify="right")
    for entry in entries:
        table.add_row(
            str(entry.rank),
            entry.wallet_address,
            entry.display_name or "-",
            f"{entry.profit_loss:,.2f}",
            f"{entry.volume:,.0f}",
            str(entry.trade_count),
        )
    console.print(table)


@app.command()
def history(
    user_id: str = typer.Option(..., "--user-id", help="User whose decisions to show"),
    limit: int = typer.Option(50, "--limit", help="Number of rows"),
) -> None:
    """Show a user's recent decisions."""
    settings = _load_settings()

    async def _run():
        db = DatabaseManager(settings.database.url)
        try:
            return await HistoryLedger(db).list_for_user(user_id, limit=limit)
        finally:
            await db.dispose_async()

    rows = asyncio.run(_run())
    if not rows:
        console.print(f"[yellow]No history for {user_id}.[/yellow]")
        return

    table = Table(title=f"Decisions for {user_id}")
    table.add_column("Time")
    table.add_column("Status")
    table.add_column("Reason")
    table.add_column("Side")
    table.add_column("Token")
    table.add_column("USD", justify="right")
    table.add_column("Shares", justify="right")
    table.add_column("Order")
    for row in rows:
        table.add_row(
            row.ts.isoformat(),
            row.status,
            row.reason or "-",
            row.side,
            row.token_id,
            str(row.requested_usd),
            str(row.requested_shares),
            row.order_id or "-",
        )
    console.print(table)
