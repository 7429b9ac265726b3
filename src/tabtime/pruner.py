"""Retention cleanup of processed events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from tabtime.constants import (
    DAY_MS,
    DEFAULT_PRUNER_RETENTION_DAYS,
    PRUNER_RETENTION_DAYS_KEY,
)
from tabtime.models import now_ms

logger = logging.getLogger(__name__)


class DataPruner:
    """Deletes processed events older than the retention period.

    Unprocessed events are never deleted, however old. Failures are logged
    and reported as zero deletions: pruning runs after a successful
    aggregation and must not turn it into a failure.
    """

    def __init__(
        self,
        event_store: Any,
        config_store: Any | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._event_store = event_store
        self._config = config_store
        self._clock = clock

    def retention_days(self) -> float:
        """Configured retention in days, or the default."""
        if self._config is None:
            return DEFAULT_PRUNER_RETENTION_DAYS
        value = self._config.get(PRUNER_RETENTION_DAYS_KEY)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            if value is not None:
                logger.warning("Ignoring invalid retention setting %r", value)
            return DEFAULT_PRUNER_RETENTION_DAYS
        return value

    def run(self) -> int:
        """Delete expired processed events. Returns the number deleted."""
        try:
            cutoff = self._clock() - int(self.retention_days() * DAY_MS)
            old_events = self._event_store.get_processed_events_older_than(cutoff)
            event_ids = [e.id for e in old_events if e.id is not None]
            if not event_ids:
                if old_events:
                    logger.warning("No valid event IDs found for pruning")
                return 0
            deleted = self._event_store.delete_events_by_ids(event_ids)
        except Exception:
            logger.exception("Error during data pruning")
            return 0

        logger.info("Pruned %d old events", deleted)
        return deleted
