"""
Expiration policy.

Turns caller-supplied entry options into the three persisted expiration
fields: the absolute ceiling, the sliding window, and the current
``expires_at`` instant.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from .clock import Clock, SystemClock, as_utc
from .exceptions import InvalidExpirationError


@dataclass(frozen=True)
class CacheEntryOptions:
    """
    Per-entry expiration settings.

    Any combination may be given. When none is set, the cache substitutes its
    configured default sliding window.

    Example:
        CacheEntryOptions(sliding_expiration=timedelta(minutes=5))
        CacheEntryOptions().with_absolute_expiration(timedelta(hours=1))
    """

    absolute_expiration: datetime | None = None
    absolute_expiration_relative_to_now: timedelta | None = None
    sliding_expiration: timedelta | None = None

    def __post_init__(self):
        if self.absolute_expiration is not None:
            object.__setattr__(
                self, "absolute_expiration", as_utc(self.absolute_expiration)
            )
        if (
            self.absolute_expiration_relative_to_now is not None
            and self.absolute_expiration_relative_to_now <= timedelta(0)
        ):
            raise InvalidExpirationError(
                "The relative expiration value must be positive."
            )
        if self.sliding_expiration is not None:
            _check_sliding_window(self.sliding_expiration)

    @property
    def has_expiration(self) -> bool:
        return (
            self.absolute_expiration is not None
            or self.absolute_expiration_relative_to_now is not None
            or self.sliding_expiration is not None
        )

    def with_sliding_expiration(self, window: timedelta) -> CacheEntryOptions:
        return replace(self, sliding_expiration=window)

    def with_absolute_expiration(self, when: datetime | timedelta) -> CacheEntryOptions:
        """Accepts either an instant or a duration relative to the time of ``set``."""
        if isinstance(when, timedelta):
            return replace(self, absolute_expiration_relative_to_now=when)
        return replace(self, absolute_expiration=when)


@dataclass(frozen=True)
class ResolvedExpiration:
    """Expiration fields as they are written to a cache row."""

    expires_at: datetime
    sliding_expiration: timedelta | None
    absolute_expiration: datetime | None


def _check_sliding_window(window: timedelta) -> None:
    if window <= timedelta(0):
        raise InvalidExpirationError("The sliding expiration value must be positive.")
    # Persisted as whole seconds.
    if window.microseconds:
        raise InvalidExpirationError(
            "The sliding expiration value must be a whole number of seconds."
        )


def resolve_absolute_expiration(
    now: datetime,
    relative_to_now: timedelta | None = None,
    absolute: datetime | None = None,
) -> datetime | None:
    """Relative wins over absolute. An absolute instant must lie in the future."""
    if relative_to_now is not None:
        return now + relative_to_now
    if absolute is not None:
        absolute = as_utc(absolute)
        if absolute <= now:
            raise InvalidExpirationError(
                "The absolute expiration value must be in the future."
            )
        return absolute
    return None


def resolve_expires_at(
    now: datetime,
    absolute_expiration: datetime | None = None,
    sliding_expiration: timedelta | None = None,
) -> datetime:
    """First instant at which a freshly written entry is dead."""
    if sliding_expiration is not None:
        expires_at = now + sliding_expiration
        if absolute_expiration is not None and absolute_expiration < expires_at:
            return absolute_expiration
        return expires_at
    if absolute_expiration is not None:
        return absolute_expiration
    raise InvalidExpirationError(
        "Either absolute or sliding expiration needs to be provided."
    )


def apply_defaults(
    options: CacheEntryOptions, default_sliding_expiration: timedelta
) -> CacheEntryOptions:
    if options.has_expiration:
        return options
    return CacheEntryOptions(sliding_expiration=default_sliding_expiration)


class ExpirationPolicy:
    """Resolves entry options against an injected clock."""

    def __init__(self, default_sliding_expiration: timedelta, clock: Clock | None = None):
        _check_sliding_window(default_sliding_expiration)
        self.default_sliding_expiration = default_sliding_expiration
        self.clock = clock if clock is not None else SystemClock()

    def resolve(self, options: CacheEntryOptions) -> ResolvedExpiration:
        now = self.clock.now()
        options = apply_defaults(options, self.default_sliding_expiration)
        absolute = resolve_absolute_expiration(
            now,
            relative_to_now=options.absolute_expiration_relative_to_now,
            absolute=options.absolute_expiration,
        )
        expires_at = resolve_expires_at(now, absolute, options.sliding_expiration)
        return ResolvedExpiration(
            expires_at=expires_at,
            sliding_expiration=options.sliding_expiration,
            absolute_expiration=absolute,
        )
