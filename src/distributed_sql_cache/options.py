"""Configuration for SQLCache."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .clock import Clock, SystemClock


@dataclass
class SQLCacheOptions:
    """
    Settings consumed by SQLCache.

    Attributes:
        connection_string: SQLAlchemy URL; ignored when an engine is handed to the cache
        schema_name: Schema holding the cache table
        table_name: Cache table name
        clock: Time source used for every expiry decision
        expired_items_deletion_interval: Minimum time between purges (None means 30 minutes)
        default_sliding_expiration: Window applied to entries set without any expiration
        create_table_if_not_exists: Create schema and table on construction
        engine_kwargs: Extra keyword arguments for ``sqlalchemy.create_engine``
    """

    connection_string: str | None = None
    schema_name: str | None = None
    table_name: str | None = None
    clock: Clock = field(default_factory=SystemClock)
    expired_items_deletion_interval: timedelta | None = None
    default_sliding_expiration: timedelta = timedelta(minutes=20)
    create_table_if_not_exists: bool = True
    engine_kwargs: dict[str, Any] = field(default_factory=dict)
