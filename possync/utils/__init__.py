"""
Utilities package for the POS offline sync engine.

Exports shared helpers for logging, profiling and time. Keep this package
lightweight and free of domain-specific logic.
"""

from possync.utils.clock import utc_now
from possync.utils.logging import configure_logging, get_logger
from possync.utils.profiler import ProfileStats, current_rss_bytes, profile_block

__all__ = [
    "configure_logging",
    "current_rss_bytes",
    "get_logger",
    "ProfileStats",
    "profile_block",
    "utc_now",
]
