"""Utility functions and helpers."""

from volatility_hedging.utils.logging import get_contextual_logger, get_logger, setup_logging

__all__ = [
    "get_contextual_logger",
    "get_logger",
    "setup_logging",
]
