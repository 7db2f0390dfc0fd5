"""
Relational storage for cache rows.

Provides the cache table layout, the CacheEntry row type, the CacheStore
protocol, and SQLCacheStore, which implements it on any SQLAlchemy engine.
Every missing row is a normal "not found" result, never an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    LargeBinary,
    MetaData,
    String,
    Table,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.schema import CreateSchema
from sqlalchemy.types import TypeDecorator

from .clock import Clock, SystemClock, as_utc
from .exceptions import InvalidExpirationError, StorageError

logger = logging.getLogger(__name__)

# Width of the id column. Keys are compared byte for byte: no trimming, no case folding.
KEY_MAX_LENGTH = 200

_DUPLICATE_KEY_SQLSTATE = "23505"

_NATIVE_UPSERT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


# ============================================================================
# Table layout
# ============================================================================


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always round-trips as an aware UTC datetime.

    SQLite has no offset-aware type, so values are written there as naive UTC;
    all values share one format and compare correctly as text.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        value = as_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)


def cache_table(metadata: MetaData, table_name: str) -> Table:
    """Define the cache table on ``metadata``."""
    table = Table(
        table_name,
        metadata,
        Column("id", String(KEY_MAX_LENGTH), primary_key=True),
        Column("value", LargeBinary, nullable=False),
        Column("expires_at_time", UTCDateTime(timezone=True), nullable=False),
        Column("sliding_expiration_in_seconds", BigInteger, nullable=True),
        Column("absolute_expiration", UTCDateTime(timezone=True), nullable=True),
    )
    Index(f"ix_{table_name}_expires_at_time", table.c.expires_at_time)
    return table


# ============================================================================
# Cache Entry - persisted row
# ============================================================================


@dataclass
class CacheEntry:
    """A cache row as stored."""

    key: str
    value: bytes
    expires_at: datetime
    sliding_expiration: timedelta | None = None
    absolute_expiration: datetime | None = None

    def is_fresh(self, now: datetime) -> bool:
        """An entry stays readable up to and including its expiry instant."""
        return now <= self.expires_at

    def next_expires_at(self, now: datetime) -> datetime | None:
        """
        Expiry after a read at ``now``, or None when the read must not write.

        Only sliding entries move. The new instant is ``now + window`` capped at
        the absolute expiration. Entries already pinned at their cap and
        entries whose expiry would not change are left alone.
        """
        if self.sliding_expiration is None:
            return None
        if self.absolute_expiration is not None and self.expires_at == self.absolute_expiration:
            return None
        candidate = now + self.sliding_expiration
        if self.absolute_expiration is not None and self.absolute_expiration < candidate:
            candidate = self.absolute_expiration
        if candidate == self.expires_at:
            return None
        return candidate


def _to_seconds(window: timedelta | None) -> int | None:
    if window is None:
        return None
    return int(window.total_seconds())


def _from_seconds(seconds: int | None) -> timedelta | None:
    if seconds is None:
        return None
    return timedelta(seconds=seconds)


# ============================================================================
# Storage Protocol - what the cache facade needs from a store
# ============================================================================


class CacheStore(Protocol):
    """
    Persistence primitives behind the cache facade.

    ``get_item`` is the touch-and-read: it checks freshness, slides the
    expiry, and reads the value as one atomic unit.
    """

    def set_item(
        self,
        key: str,
        value: bytes,
        expires_at: datetime,
        sliding_expiration: timedelta | None = None,
        absolute_expiration: datetime | None = None,
    ) -> None:
        """Insert or fully overwrite the row for ``key``."""
        ...

    def get_item(self, key: str, with_value: bool = True) -> bytes | None:
        """Return the value (or ``b""`` when ``with_value`` is False) if live, else None."""
        ...

    def refresh_item(self, key: str) -> bool:
        """Touch without reading the value. Returns whether the entry is live."""
        ...

    def delete_item(self, key: str) -> bool:
        """Delete ``key``. Returns whether a row was removed."""
        ...

    def delete_expired_items(self, now: datetime | None = None) -> int:
        """Purge every row that expired before ``now``. Returns the count."""
        ...

    def get_entry(self, key: str) -> CacheEntry | None:
        """Raw row for ``key``, dead or alive, without touching it."""
        ...


# ============================================================================
# SQLCacheStore - SQLAlchemy-backed storage
# ============================================================================


class SQLCacheStore:
    """
    Cache rows in one relational table, shared by every application instance.

    Example:
        engine = create_engine("postgresql+psycopg://app@db/app")
        store = SQLCacheStore(engine, "public", "app_cache")
        store.create_table_if_not_exists()
        store.set_item("k", b"v", expires_at=now + timedelta(minutes=5),
                       sliding_expiration=timedelta(minutes=5))
    """

    def __init__(
        self,
        engine: Engine,
        schema_name: str,
        table_name: str,
        clock: Clock | None = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine for the shared database
            schema_name: Schema holding the cache table ("main" on SQLite)
            table_name: Name of the cache table
            clock: Time source; defaults to the UTC wall clock
        """
        self.engine = engine
        self.schema_name = schema_name
        self.table_name = table_name
        self.clock = clock if clock is not None else SystemClock()
        self.metadata = MetaData(schema=schema_name)
        self.table = cache_table(self.metadata, table_name)

    def create_table_if_not_exists(self) -> None:
        """Create the schema (where supported), table and expiry index. Idempotent."""
        try:
            with self.engine.begin() as conn:
                if conn.dialect.name == "postgresql":
                    conn.execute(CreateSchema(self.schema_name, if_not_exists=True))
                self.metadata.create_all(conn, checkfirst=True)
        except SQLAlchemyError as e:
            raise StorageError(f"Creating cache table failed: {e}") from e
        logger.info(f"Cache table {self.schema_name}.{self.table_name} is ready")

    # ------------------------------------------------------------------ write

    def set_item(
        self,
        key: str,
        value: bytes,
        expires_at: datetime,
        sliding_expiration: timedelta | None = None,
        absolute_expiration: datetime | None = None,
    ) -> None:
        """
        Upsert the full row.

        Two writers inserting the same new key can collide on the primary key.
        The loser's violation is dropped: a row for the key exists either way.
        """
        if sliding_expiration is None and absolute_expiration is None:
            raise InvalidExpirationError(
                "Either absolute or sliding expiration needs to be provided."
            )

        row = {
            "id": key,
            "value": bytes(value),
            "expires_at_time": expires_at,
            "sliding_expiration_in_seconds": _to_seconds(sliding_expiration),
            "absolute_expiration": absolute_expiration,
        }
        try:
            with self.engine.begin() as conn:
                self._upsert(conn, row)
        except IntegrityError as e:
            if not _is_duplicate_key(e):
                raise StorageError(f"Cache set failed for {key!r}: {e}") from e
            logger.debug(f"Concurrent insert of {key!r} won the race, ignoring")
        except SQLAlchemyError as e:
            raise StorageError(f"Cache set failed for {key!r}: {e}") from e

    def _upsert(self, conn: Connection, row: dict[str, Any]) -> None:
        changes = {name: v for name, v in row.items() if name != "id"}

        native_insert = _NATIVE_UPSERT.get(conn.dialect.name)
        if native_insert is not None:
            stmt = native_insert(self.table).values(**row)
            stmt = stmt.on_conflict_do_update(
                index_elements=[self.table.c.id], set_=changes
            )
            conn.execute(stmt)
            return

        # Generic path: overwrite, and insert when nothing was there.
        result = conn.execute(
            update(self.table).where(self.table.c.id == row["id"]).values(**changes)
        )
        if result.rowcount == 0:
            conn.execute(insert(self.table).values(**row))

    # ------------------------------------------------------------------- read

    def get_item(self, key: str, with_value: bool = True) -> bytes | None:
        """
        Touch-and-read.

        Runs in one transaction: lock the live row, slide its expiry when it
        has a sliding window, then hand back the value. The write is
        conditional on the row still being live and still carrying the same
        expiration settings, so a concurrent overwrite is never clobbered
        with a stale window.
        """
        now = self.clock.now()
        t = self.table

        columns = [
            t.c.expires_at_time,
            t.c.sliding_expiration_in_seconds,
            t.c.absolute_expiration,
        ]
        if with_value:
            columns.append(t.c.value)
        query = (
            select(*columns)
            .where(t.c.id == key, t.c.expires_at_time >= now)
            .with_for_update()
        )

        try:
            with self.engine.begin() as conn:
                row = conn.execute(query).one_or_none()
                if row is None:
                    logger.debug(f"Cache MISS: {key!r}")
                    return None

                new_expires_at = self._entry_from_row(key, row).next_expires_at(now)
                if new_expires_at is not None:
                    conn.execute(
                        update(t)
                        .where(
                            t.c.id == key,
                            t.c.expires_at_time >= now,
                            *self._same_expiration_settings(row),
                        )
                        .values(expires_at_time=new_expires_at)
                    )
                    logger.debug(f"Slid {key!r} to {new_expires_at.isoformat()}")
        except SQLAlchemyError as e:
            raise StorageError(f"Cache get failed for {key!r}: {e}") from e

        logger.debug(f"Cache HIT: {key!r}")
        return bytes(row.value) if with_value else b""

    def refresh_item(self, key: str) -> bool:
        return self.get_item(key, with_value=False) is not None

    def get_entry(self, key: str) -> CacheEntry | None:
        """Raw row for ``key``, dead or alive, without touching its expiry."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.table).where(self.table.c.id == key)
                ).one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Reading cache entry {key!r} failed: {e}") from e
        if row is None:
            return None
        return self._entry_from_row(key, row)

    # ----------------------------------------------------------------- delete

    def delete_item(self, key: str) -> bool:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(delete(self.table).where(self.table.c.id == key))
        except SQLAlchemyError as e:
            raise StorageError(f"Cache delete failed for {key!r}: {e}") from e
        return result.rowcount > 0

    def delete_expired_items(self, now: datetime | None = None) -> int:
        now = as_utc(now) if now is not None else self.clock.now()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(self.table).where(self.table.c.expires_at_time < now)
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Deleting expired cache items failed: {e}") from e

        count = result.rowcount
        if count:
            logger.info(f"Deleted {count} expired cache items from {self.table_name}")
        return count

    # ---------------------------------------------------------------- helpers

    def _entry_from_row(self, key: str, row: Row) -> CacheEntry:
        mapping = row._mapping
        value = mapping.get("value")
        return CacheEntry(
            key=key,
            value=bytes(value) if value is not None else b"",
            expires_at=mapping["expires_at_time"],
            sliding_expiration=_from_seconds(mapping["sliding_expiration_in_seconds"]),
            absolute_expiration=mapping["absolute_expiration"],
        )

    def _same_expiration_settings(self, row: Row) -> list:
        t = self.table
        conditions = [
            t.c.sliding_expiration_in_seconds == row.sliding_expiration_in_seconds
        ]
        if row.absolute_expiration is None:
            conditions.append(t.c.absolute_expiration.is_(None))
        else:
            conditions.append(t.c.absolute_expiration == row.absolute_expiration)
        return conditions


def _is_duplicate_key(error: IntegrityError) -> bool:
    """True for a unique/primary-key violation, across the drivers we support."""
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code is not None:
        return code == _DUPLICATE_KEY_SQLSTATE
    return "UNIQUE constraint failed" in str(orig)
