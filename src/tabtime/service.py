"""Lifecycle facade over the aggregation scheduler."""

from __future__ import annotations

import logging
from typing import Any

from tabtime.engine import AggregationEngine
from tabtime.lock import AggregationLock
from tabtime.pruner import DataPruner
from tabtime.scheduler import AggregationScheduler

logger = logging.getLogger(__name__)


class AggregationService:
    """Starts and stops aggregation for the host application.

    Errors from the scheduler are logged and re-raised unchanged; this is
    the boundary where the embedding application handles them.
    """

    def __init__(self, scheduler: AggregationScheduler) -> None:
        self._scheduler = scheduler

    @property
    def scheduler(self) -> AggregationScheduler:
        return self._scheduler

    @classmethod
    def create(cls, store: Any, timer: Any) -> AggregationService:
        """Wire engine, pruner, lock and scheduler around one store.

        Args:
            store: A SQLiteStore (or anything providing the event, stat,
                key-value and config interfaces).
            timer: Host timer (ThreadTimer, ManualTimer).
        """
        scheduler = AggregationScheduler(
            AggregationEngine(store, store),
            DataPruner(store, store),
            timer,
            AggregationLock(store),
            config_store=store,
        )
        return cls(scheduler)

    def start(self) -> None:
        try:
            self._scheduler.start()
        except Exception as e:
            logger.error("Failed to start aggregation service: %s", e)
            raise
        logger.info("Aggregation service started")

    def stop(self) -> None:
        try:
            self._scheduler.stop()
        except Exception as e:
            logger.error("Failed to stop aggregation service: %s", e)
            raise
        logger.info("Aggregation service stopped")
