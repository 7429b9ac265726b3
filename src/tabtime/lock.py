"""Persisted mutual-exclusion token for aggregation runs."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from tabtime.constants import AGGREGATION_LOCK_KEY, AGGREGATION_LOCK_TTL_MS
from tabtime.models import now_ms

logger = logging.getLogger(__name__)


class AggregationLock:
    """A {"timestamp": ms} record in a key-value store.

    The lock is held while the record exists and is no older than the TTL.
    A record older than the TTL is left over from a crashed run and may be
    taken over.

    Not reentrant.
    """

    def __init__(
        self,
        kv_store: Any,
        *,
        key: str = AGGREGATION_LOCK_KEY,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._kv = kv_store
        self._key = key
        self._clock = clock
        # Serialises check-then-set between threads of this process
        self._mutex = threading.Lock()

    def _held_since(self) -> int | None:
        record = self._kv.get(self._key)
        if not isinstance(record, dict):
            return None
        timestamp = record.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            logger.warning("Ignoring malformed lock record %r", record)
            return None
        return int(timestamp)

    def acquire(self, ttl_ms: int = AGGREGATION_LOCK_TTL_MS) -> bool:
        """Take the lock. Returns False if another run holds it."""
        with self._mutex:
            now = self._clock()
            held_since = self._held_since()
            if held_since is not None and now - held_since <= ttl_ms:
                return False
            if held_since is not None:
                logger.warning(
                    "Taking over stale lock %s (held for %dms, ttl %dms)",
                    self._key,
                    now - held_since,
                    ttl_ms,
                )
            self._kv.set(self._key, {"timestamp": now})
            return True

    def release(self) -> None:
        """Delete the lock record, whoever wrote it."""
        self._kv.delete(self._key)

    @contextmanager
    def held(self, ttl_ms: int = AGGREGATION_LOCK_TTL_MS) -> Iterator[bool]:
        """Context manager yielding whether the lock was acquired.

        Releases on every exit path, but only if this block acquired it.
        """
        acquired = self.acquire(ttl_ms)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
