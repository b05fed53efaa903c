"""Polymarket Copy Trader - mirror target wallets' trades with bounded risk."""

__version__ = "0.1.0"
