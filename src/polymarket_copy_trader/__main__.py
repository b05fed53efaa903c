"""Command line entry point: ``python -m polymarket_copy_trader <command>``."""

from polymarket_copy_trader.cli import app

if __name__ == "__main__":
    app()
