"""Core arbitrage decision and settlement logic."""
