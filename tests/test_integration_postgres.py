"""
Integration tests for the PostgreSQL-backed cache.
Uses testcontainers-python to spin up a real PostgreSQL instance for testing.
"""

import pytest
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta, timezone

from sqlalchemy import create_engine, text

try:
    import psycopg  # noqa: F401
    from testcontainers.postgres import PostgresContainer

    HAS_POSTGRES = True
except ImportError:
    HAS_POSTGRES = False

from distributed_sql_cache import (
    KEY_MAX_LENGTH,
    CacheEntryOptions,
    InvalidArgumentError,
    ManualClock,
    SQLCache,
    SQLCacheOptions,
)

SCHEMA = "cache_test"
VALUE = b"Hello, World!"


@pytest.fixture(scope="module")
def postgres_container():
    """Fixture to start a PostgreSQL container for the entire test module."""
    if not HAS_POSTGRES:
        pytest.skip("testcontainers[postgres] and psycopg not installed")

    container = PostgresContainer(image="postgres:16-alpine", driver="psycopg")
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Could not start PostgreSQL container: {e}")
    yield container
    container.stop()


@pytest.fixture(scope="module")
def pg_engine(postgres_container):
    engine = create_engine(postgres_container.get_connection_url(), pool_size=20)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def pg_cache(pg_engine, clock):
    """A cache on a fresh table in a dedicated schema."""
    options = SQLCacheOptions(
        schema_name=SCHEMA,
        table_name=f"cache_{uuid.uuid4().hex[:12]}",
        clock=clock,
        expired_items_deletion_interval=timedelta(hours=2),
    )
    cache = SQLCache(options, engine=pg_engine)
    yield cache
    cache.close()


def read_row(engine, cache, key):
    """Read the raw row with plain SQL, bypassing the store."""
    with engine.connect() as conn:
        return conn.execute(
            text(
                "SELECT id, value, expires_at_time, sliding_expiration_in_seconds, "
                f"absolute_expiration FROM {SCHEMA}.{cache.store.table_name} WHERE id = :id"
            ),
            {"id": key},
        ).one_or_none()


class TestPostgresCache:
    """Facade behaviour against a real PostgreSQL server."""

    def test_missing_key(self, pg_cache):
        assert pg_cache.get("NonExisting") is None

    def test_schema_and_table_created(self, pg_engine, pg_cache):
        with pg_engine.connect() as conn:
            exists = conn.execute(
                text(
                    "SELECT 1 FROM information_schema.tables "
                    "WHERE table_schema = :schema AND table_name = :table"
                ),
                {"schema": SCHEMA, "table": pg_cache.store.table_name},
            ).scalar()
        assert exists == 1

    def test_row_layout(self, pg_engine, pg_cache, clock):
        start = clock.now()
        pg_cache.set(
            "key",
            VALUE,
            CacheEntryOptions(
                sliding_expiration=timedelta(seconds=5),
                absolute_expiration=start + timedelta(seconds=20),
            ),
        )

        row = read_row(pg_engine, pg_cache, "key")
        assert bytes(row.value) == VALUE
        assert row.sliding_expiration_in_seconds == 5
        assert row.expires_at_time == start + timedelta(seconds=5)
        assert row.absolute_expiration == start + timedelta(seconds=20)
        assert row.expires_at_time.utcoffset() is not None

    def test_sliding_capped_at_absolute(self, pg_cache, clock):
        start = clock.now()
        ceiling = start + timedelta(seconds=20)
        pg_cache.set(
            "key",
            VALUE,
            CacheEntryOptions(sliding_expiration=timedelta(seconds=5), absolute_expiration=ceiling),
        )

        for expected in (10, 15, 20, 20):
            clock.advance(seconds=5)
            assert pg_cache.get("key") == VALUE
            assert pg_cache.store.get_entry("key").expires_at == start + timedelta(seconds=expected)

        clock.advance(seconds=1)
        assert pg_cache.get("key") is None

    def test_case_and_whitespace(self, pg_cache):
        pg_cache.set("  Key  ", VALUE, CacheEntryOptions())
        assert pg_cache.get("  Key  ") == VALUE
        assert pg_cache.get("Key") is None
        assert pg_cache.get("  key  ") is None

    def test_maximum_key_width(self, pg_cache):
        key = "a" * KEY_MAX_LENGTH
        pg_cache.set(key, VALUE, CacheEntryOptions())
        assert pg_cache.get(key) == VALUE

        with pytest.raises(InvalidArgumentError):
            pg_cache.set(key + "a", VALUE, CacheEntryOptions())

    def test_remove(self, pg_cache):
        pg_cache.set("key", VALUE, CacheEntryOptions())
        assert pg_cache.remove("key") is True
        assert pg_cache.remove("key") is False
        assert pg_cache.get("key") is None

    def test_purge(self, pg_cache, clock):
        pg_cache.set("short", VALUE, CacheEntryOptions(sliding_expiration=timedelta(seconds=10)))
        pg_cache.set("long", VALUE, CacheEntryOptions(sliding_expiration=timedelta(hours=5)))

        purged = pg_cache.store.delete_expired_items(clock.now() + timedelta(hours=1))
        assert purged == 1
        assert pg_cache.store.get_entry("short") is None
        assert pg_cache.store.get_entry("long") is not None


class TestPostgresConcurrency:
    """Row locking and upsert races."""

    def test_concurrent_inserts_of_new_key(self, pg_cache):
        payloads = [f"payload-{i}".encode() for i in range(8)]
        barrier = threading.Barrier(len(payloads))

        def write(payload):
            barrier.wait()
            pg_cache.set("race", payload, CacheEntryOptions())

        with ThreadPoolExecutor(max_workers=len(payloads)) as pool:
            for future in [pool.submit(write, p) for p in payloads]:
                future.result()

        assert pg_cache.get("race") in payloads

    def test_concurrent_refreshes_serialise(self, pg_cache, clock):
        start = clock.now()
        pg_cache.set("key", VALUE, CacheEntryOptions(sliding_expiration=timedelta(seconds=10)))
        clock.advance(seconds=3)

        with ThreadPoolExecutor(max_workers=12) as pool:
            results = list(pool.map(lambda _: pg_cache.refresh("key"), range(12)))

        assert all(results)
        entry = pg_cache.store.get_entry("key")
        assert entry.expires_at == start + timedelta(seconds=13)
        assert entry.expires_at.tzinfo == timezone.utc
