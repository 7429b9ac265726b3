"""Periodic, lock-guarded execution of aggregation and pruning."""

from __future__ import annotations

import logging
import time
from typing import Any

from tabtime.constants import (
    AGGREGATION_LOCK_TTL_MS,
    AGGREGATION_TIMER_NAME,
    DEFAULT_AGGREGATION_INTERVAL_MINUTES,
    SCHEDULER_PERIOD_MINUTES_KEY,
)
from tabtime.models import AggregationResult

logger = logging.getLogger(__name__)


class AggregationScheduler:
    """Drives the aggregation engine from a named periodic timer.

    Each tick takes the aggregation lock, runs the engine, runs the pruner
    only if aggregation succeeded, and releases the lock. Ticks never raise.
    """

    def __init__(
        self,
        engine: Any,
        pruner: Any,
        timer: Any,
        lock: Any,
        *,
        config_store: Any | None = None,
        period_key: str = SCHEDULER_PERIOD_MINUTES_KEY,
        timer_name: str = AGGREGATION_TIMER_NAME,
        lock_ttl_ms: int = AGGREGATION_LOCK_TTL_MS,
    ) -> None:
        self._engine = engine
        self._pruner = pruner
        self._timer = timer
        self._lock = lock
        self._config = config_store
        self._period_key = period_key
        self._timer_name = timer_name
        self._lock_ttl_ms = lock_ttl_ms
        self._listener_registered = False
        self._running = False
        self.last_result: AggregationResult | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def period_minutes(self) -> float:
        """Configured run period, or the default."""
        if self._config is None:
            return DEFAULT_AGGREGATION_INTERVAL_MINUTES
        value = self._config.get(self._period_key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            if value is not None:
                logger.warning("Ignoring invalid scheduler period %r", value)
            return DEFAULT_AGGREGATION_INTERVAL_MINUTES
        return value

    def start(self) -> None:
        """Schedule the timer and register the tick handler.

        Safe to call repeatedly: the timer is rescheduled under the same name
        and the handler is registered at most once.
        """
        period = self.period_minutes()
        logger.info("Starting aggregation scheduler, period %s minutes", period)
        self._timer.schedule(self._timer_name, period)

        if not self._listener_registered:
            self._timer.on_tick(self.handle_tick)
            self._listener_registered = True
            logger.debug("Tick handler registered")
        self._running = True

    def stop(self) -> bool:
        """Cancel the timer and deregister the handler.

        Returns:
            Whether the timer was cleared.
        """
        logger.info("Stopping aggregation scheduler")
        cleared = self._timer.cancel(self._timer_name)
        if self._listener_registered:
            self._timer.off_tick(self.handle_tick)
            self._listener_registered = False
            logger.debug("Tick handler removed")
        self._running = False
        logger.info("Scheduler stopped (timer cleared: %s)", cleared)
        return cleared

    def reset(self) -> None:
        self.stop()
        self.start()

    def handle_tick(self, name: str) -> None:
        """Timer callback. Ticks for other timers are ignored."""
        if name != self._timer_name:
            return
        self.run_task()

    def run_now(self) -> bool:
        """Trigger a run immediately, outside the timer."""
        logger.info("Manual aggregation trigger")
        return self.run_task()

    def run_task(self) -> bool:
        """Run aggregation then pruning under the lock.

        The outcome of the run is left in ``last_result``; skipped runs leave
        it untouched. A lock or engine error counts as a failed run.

        Returns:
            False if another run held the lock and this one was skipped.
        """
        start = time.monotonic()
        result: AggregationResult | None = None
        try:
            with self._lock.held(self._lock_ttl_ms) as acquired:
                if not acquired:
                    logger.info("Aggregation task already running, skipping")
                    return False

                logger.info("Scheduled aggregation task started")
                result = self._engine.run()
                if result.success:
                    logger.info("Aggregation completed, %d events processed", result.processed_count)
                    self._pruner.run()
                else:
                    logger.error("Aggregation failed: %s", result.error)
        except Exception as e:
            logger.exception("Error during scheduled aggregation")
            if result is None:
                result = AggregationResult(success=False, error=str(e))

        self.last_result = result
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Aggregation task finished in %dms", duration_ms)
        return True
