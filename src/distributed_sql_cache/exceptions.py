"""Exception hierarchy raised by the cache facade and its store."""

from __future__ import annotations


class CacheError(Exception):
    """Base class for every error this package raises."""


class InvalidArgumentError(CacheError, ValueError):
    """Missing or empty key, value, options, or configuration identifier."""


class InvalidExpirationError(CacheError, ValueError):
    """Expiration settings that can never produce a live entry."""


class OperationCancelledError(CacheError):
    """The caller's cancellation signal was set before the operation ran."""


class StorageError(CacheError, RuntimeError):
    """The backing database reported a fault. The driver error is ``__cause__``."""
