"""In-memory TTL cache for slow-changing Bitbucket resources."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0
DEFAULT_TTL_SECONDS = 300.0


class CacheKind(StrEnum):
    """Resource kinds used as the first element of every cache key."""

    REPOSITORY = "repository"
    REPOSITORIES = "repositories"
    BRANCHES = "branches"
    PULL_REQUEST = "pull_request"
    PULL_REQUESTS = "pull_requests"
    COMMITS = "commits"
    TOKEN_VALIDATION = "token_validation"


CACHE_TTL_SECONDS: dict[CacheKind, float] = {
    CacheKind.REPOSITORY: 300.0,
    CacheKind.REPOSITORIES: 180.0,
    CacheKind.BRANCHES: 600.0,
    CacheKind.PULL_REQUEST: 60.0,
    CacheKind.PULL_REQUESTS: 60.0,
    CacheKind.COMMITS: 300.0,
    CacheKind.TOKEN_VALIDATION: 3600.0,
}

CacheKey = tuple[Hashable, ...]


def cache_key(kind: CacheKind, *identifiers: Hashable) -> CacheKey:
    """Build a structured cache key for a resource kind."""
    return (kind, *identifiers)


@dataclass(slots=True)
class CacheEntry:
    """Stored value with its insertion time and lifetime."""

    value: Any
    stored_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        """Return whether the entry has outlived its TTL."""
        return now - self.stored_at > self.ttl_seconds


class TTLCache:
    """Key/value map with lazy expiry on read and a periodic sweep."""

    def __init__(
        self,
        *,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._sweeper: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def set(self, key: CacheKey, value: Any, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        """Store a value, replacing any existing entry."""
        self._entries[key] = CacheEntry(
            value=value,
            stored_at=self._clock(),
            ttl_seconds=ttl_seconds,
        )

    def get(self, key: CacheKey) -> Any | None:
        """Return a fresh value, dropping the entry if it has expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            return None
        return entry.value

    def delete(self, key: CacheKey) -> bool:
        """Remove one key; return whether it was present."""
        return self._entries.pop(key, None) is not None

    def invalidate(self, kind: CacheKind, *identifiers: Hashable) -> int:
        """Remove every key of one kind whose identifiers start with the given ones."""
        prefix = cache_key(kind, *identifiers)
        matching = [key for key in self._entries if key[: len(prefix)] == prefix]
        for key in matching:
            del self._entries[key]
        return len(matching)

    def clear(self) -> None:
        """Drop every entry."""
        self._entries.clear()

    def sweep(self) -> int:
        """Delete all expired entries and return how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def start_sweeper(self) -> None:
        """Start the background sweep task on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            self.sweep()

    async def close(self) -> None:
        """Stop the sweeper and drop all entries."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        self.clear()
