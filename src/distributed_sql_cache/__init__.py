"""
Distributed cache on a shared relational table.

Expose the cache facade, its options, the expiration policy, the SQL store,
the expired-items sweeper, and the clocks under `distributed_sql_cache`.
"""

from .cache import SQLCache
from .clock import Clock, ManualClock, SystemClock
from .exceptions import (
    CacheError,
    InvalidArgumentError,
    InvalidExpirationError,
    OperationCancelledError,
    StorageError,
)
from .expiration import CacheEntryOptions, ExpirationPolicy, ResolvedExpiration
from .options import SQLCacheOptions
from .storage import KEY_MAX_LENGTH, CacheEntry, CacheStore, SQLCacheStore
from .sweeper import ExpiredItemsSweeper

__all__ = [
    "SQLCache",
    "SQLCacheOptions",
    "CacheEntryOptions",
    "ExpirationPolicy",
    "ResolvedExpiration",
    "SQLCacheStore",
    "CacheStore",
    "CacheEntry",
    "KEY_MAX_LENGTH",
    "ExpiredItemsSweeper",
    "Clock",
    "SystemClock",
    "ManualClock",
    "CacheError",
    "InvalidArgumentError",
    "InvalidExpirationError",
    "OperationCancelledError",
    "StorageError",
]
