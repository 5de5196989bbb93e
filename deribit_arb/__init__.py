"""Deribit options-chain micro-arbitrage scanner."""

__version__ = "0.1.0"
