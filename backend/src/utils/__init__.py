"""
Utility modules for the room calendar backend.

This package contains shared utilities used across the application:
- formatting: UTC timestamp and text normalization helpers
- logging_config: Named loggers and formatters
- batch_runner: Chunked, paced execution of batch passes
"""

from backend.src.utils.formatting import (
    utcnow,
    to_utc_naive,
    minute_key,
    collapse_whitespace,
)

__all__ = [
    "utcnow",
    "to_utc_naive",
    "minute_key",
    "collapse_whitespace",
]
