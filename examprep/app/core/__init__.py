"""Core utilities for the examprep application."""

from examprep.app.core.cache import (
    CacheBackend,
    InMemoryCache,
    RedisCache,
    get_cache,
    reset_cache,
)
from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger, setup_logging

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    "get_cache",
    "reset_cache",
    "settings",
    "get_logger",
    "setup_logging",
]
