"""
Distributed cache facade.

SQLCache is the public entry point: it validates arguments, resolves
expiration, delegates to SQLCacheStore, and gives the sweeper a chance to
purge dead rows after each call. Every method has a blocking form and an
``*_async`` form that can be cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from .clock import SystemClock
from .exceptions import InvalidArgumentError, OperationCancelledError
from .expiration import CacheEntryOptions, ExpirationPolicy
from .options import SQLCacheOptions
from .storage import KEY_MAX_LENGTH, CacheStore, SQLCacheStore
from .sweeper import ExpiredItemsSweeper

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BYTES_TYPES = (bytes, bytearray, memoryview)


class SQLCache:
    """
    Cache shared by every process that points at the same table.

    Nothing is kept in process memory: each call is a round trip to the
    database, so all instances observe the same entries and expiries.

    Example:
        cache = SQLCache(SQLCacheOptions(
            connection_string="postgresql+psycopg://app@db/app",
            schema_name="public",
            table_name="app_cache",
        ))
        cache.set("user:1", b"...", CacheEntryOptions(sliding_expiration=timedelta(minutes=5)))
        cache.get("user:1")

        # Async, cancellable
        stop = asyncio.Event()
        await cache.get_async("user:1", cancel_event=stop)
    """

    def __init__(
        self,
        options: SQLCacheOptions,
        engine: Engine | None = None,
        on_sweep_error: Callable[[Exception], None] | None = None,
    ):
        """
        Args:
            options: Cache configuration
            engine: Existing engine; when given, ``options.connection_string`` is ignored
            on_sweep_error: Optional callback receiving background purge failures
        """
        if options is None:
            raise InvalidArgumentError("options cannot be None.")
        if engine is None and not options.connection_string:
            raise InvalidArgumentError("connection_string cannot be empty or None.")
        if not options.schema_name:
            raise InvalidArgumentError("schema_name cannot be empty or None.")
        if not options.table_name:
            raise InvalidArgumentError("table_name cannot be empty or None.")

        self.clock = options.clock if options.clock is not None else SystemClock()
        self.sweeper = ExpiredItemsSweeper(
            self._delete_expired_items,
            clock=self.clock,
            interval=options.expired_items_deletion_interval,
            on_error=on_sweep_error,
        )
        self.policy = ExpirationPolicy(options.default_sliding_expiration, self.clock)

        self._owns_engine = engine is None
        if engine is None:
            engine = create_engine(options.connection_string, **options.engine_kwargs)
        self.engine = engine
        store = SQLCacheStore(
            engine, options.schema_name, options.table_name, clock=self.clock
        )
        if options.create_table_if_not_exists:
            try:
                store.create_table_if_not_exists()
            except Exception:
                if self._owns_engine:
                    engine.dispose()
                raise
        self.store: CacheStore = store

    # ------------------------------------------------------------------ sync

    def get(self, key: str) -> bytes | None:
        """Value for ``key``, or None. Slides the expiry of sliding entries."""
        _validate_key(key)
        return self._get(key)

    def set(self, key: str, value: bytes, options: CacheEntryOptions) -> None:
        """
        Store ``value`` under ``key``, replacing any existing entry and its settings.

        Pass ``CacheEntryOptions()`` to use the configured default sliding window.
        """
        _validate_key(key)
        _validate_value(value)
        _validate_options(options)
        _validate_key_length(key)
        self._set(key, value, options)

    def refresh(self, key: str) -> bool:
        """Slide the expiry without reading the value. Returns whether the entry is live."""
        _validate_key(key)
        return self._refresh(key)

    def remove(self, key: str) -> bool:
        """Delete ``key``. Returns whether an entry was removed."""
        _validate_key(key)
        return self._remove(key)

    def get_string(self, key: str, encoding: str = "utf-8") -> str | None:
        value = self.get(key)
        return value.decode(encoding) if value is not None else None

    def set_string(
        self,
        key: str,
        value: str,
        options: CacheEntryOptions,
        encoding: str = "utf-8",
    ) -> None:
        if value is None:
            raise InvalidArgumentError("value cannot be None.")
        self.set(key, value.encode(encoding), options)

    # ----------------------------------------------------------------- async

    async def get_async(
        self, key: str, cancel_event: asyncio.Event | None = None
    ) -> bytes | None:
        _validate_key(key)
        return await self._run_async(self._get, key, cancel_event=cancel_event)

    async def set_async(
        self,
        key: str,
        value: bytes,
        options: CacheEntryOptions,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        _validate_key(key)
        _validate_value(value)
        _validate_options(options)
        _validate_key_length(key)
        await self._run_async(self._set, key, value, options, cancel_event=cancel_event)

    async def refresh_async(
        self, key: str, cancel_event: asyncio.Event | None = None
    ) -> bool:
        _validate_key(key)
        return await self._run_async(self._refresh, key, cancel_event=cancel_event)

    async def remove_async(
        self, key: str, cancel_event: asyncio.Event | None = None
    ) -> bool:
        _validate_key(key)
        return await self._run_async(self._remove, key, cancel_event=cancel_event)

    async def _run_async(
        self,
        func: Callable[..., T],
        *args: Any,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """
        Run a blocking store call on a worker thread.

        An already-set ``cancel_event`` stops the call before it starts. If the
        event fires while the call is in flight, the caller is released at once
        with OperationCancelledError; the store call itself finishes its
        transaction in the background, so no row is left half-written.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("The operation was cancelled.")

        work = asyncio.ensure_future(asyncio.to_thread(func, *args))
        if cancel_event is None:
            return await work

        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            # asyncio.wait does not cancel ``work``; it outlives the caller.
            work.add_done_callback(_log_abandoned_failure)
            raise
        finally:
            cancelled.cancel()

        if work in done:
            return work.result()

        work.add_done_callback(_log_abandoned_failure)
        raise OperationCancelledError("The operation was cancelled.")

    # ------------------------------------------------------------- internals

    def _get(self, key: str) -> bytes | None:
        with self._sweep_afterwards():
            if len(key) > KEY_MAX_LENGTH:
                return None
            return self.store.get_item(key)

    def _set(self, key: str, value: bytes, options: CacheEntryOptions) -> None:
        resolved = self.policy.resolve(options)
        with self._sweep_afterwards():
            self.store.set_item(
                key,
                bytes(value),
                resolved.expires_at,
                sliding_expiration=resolved.sliding_expiration,
                absolute_expiration=resolved.absolute_expiration,
            )
            logger.debug(f"Cache SET: {key!r}, expires at {resolved.expires_at.isoformat()}")

    def _refresh(self, key: str) -> bool:
        with self._sweep_afterwards():
            if len(key) > KEY_MAX_LENGTH:
                return False
            return self.store.refresh_item(key)

    def _remove(self, key: str) -> bool:
        with self._sweep_afterwards():
            if len(key) > KEY_MAX_LENGTH:
                return False
            return self.store.delete_item(key)

    @contextmanager
    def _sweep_afterwards(self) -> Iterator[None]:
        """Consult the sweeper whether the wrapped store call succeeds or fails."""
        try:
            yield
        finally:
            self.sweeper.maybe_scan()

    def _delete_expired_items(self, now) -> int:
        return self.store.delete_expired_items(now)

    # ------------------------------------------------------------- lifecycle

    def close(self, wait: bool = True) -> None:
        """Stop the sweeper and dispose of an engine this cache created."""
        self.sweeper.shutdown(wait=wait)
        if self._owns_engine:
            self.engine.dispose()

    def __enter__(self) -> SQLCache:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _validate_key(key: Any) -> None:
    if not isinstance(key, str) or not key:
        raise InvalidArgumentError("key cannot be empty or None.")


def _validate_key_length(key: str) -> None:
    # Wider than the id column.
    if len(key) > KEY_MAX_LENGTH:
        raise InvalidArgumentError(
            f"key cannot be longer than {KEY_MAX_LENGTH} characters."
        )


def _validate_value(value: Any) -> None:
    if value is None or not isinstance(value, _BYTES_TYPES) or len(value) == 0:
        raise InvalidArgumentError("value cannot be empty or None.")


def _validate_options(options: Any) -> None:
    if not isinstance(options, CacheEntryOptions):
        raise InvalidArgumentError("options must be a CacheEntryOptions instance.")


def _log_abandoned_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Cache operation failed after its caller cancelled: {error}")
