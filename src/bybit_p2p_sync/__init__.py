"""Bybit P2P trade history synchronizer with chat phone enrichment."""

__version__ = "0.1.0"
