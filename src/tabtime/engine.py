"""Incremental aggregation of tab lifecycle events into per-day URL totals."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from tabtime.models import (
    AccumulationDelta,
    AggregationResult,
    Event,
    accumulation_key,
    utc_date_string,
)
from tabtime.urls import parse_url

logger = logging.getLogger(__name__)

TimelineKey = tuple[str, str | None]


def group_timelines(events: list[Event]) -> dict[TimelineKey, list[Event]]:
    """Partition events into timelines and sort each one by timestamp.

    A timeline is every event sharing one (visit_id, activity_id) pair.
    activity_id None is the visit's open-time timeline; every other
    activity_id is a separate active-time timeline.

    The sort is stable: events with equal timestamps keep fetch order.
    """
    timelines: defaultdict[TimelineKey, list[Event]] = defaultdict(list)
    for event in events:
        timelines[event.timeline_key].append(event)
    return {
        key: sorted(timeline, key=lambda e: e.timestamp)
        for key, timeline in timelines.items()
    }


def timeline_elapsed_ms(timeline: list[Event]) -> int:
    """Sum of consecutive gaps across a sorted timeline.

    Interior events close the interval opened by their predecessor and open
    the one closed by their successor, so the sum equals last - first.
    """
    return sum(
        timeline[i + 1].timestamp - timeline[i].timestamp
        for i in range(len(timeline) - 1)
    )


def plan_aggregation(
    events: list[Event],
) -> tuple[dict[str, AccumulationDelta], list[int]]:
    """Compute accumulation deltas and resolved event IDs for a batch.

    Pure: performs no store I/O. Every URL in the batch is parsed before
    anything is returned, so a malformed URL raises UrlParseError and the
    caller commits nothing.

    Returns:
        (deltas keyed by "date:url" with a positive total, sorted IDs of
        every event in a timeline of two or more events)
    """
    parsed_urls = {url: parse_url(url) for url in dict.fromkeys(e.url for e in events)}

    deltas: dict[str, AccumulationDelta] = {}
    processed_ids: list[int] = []
    orphaned = 0

    for (visit_id, activity_id), timeline in group_timelines(events).items():
        if len(timeline) < 2:
            # Wait for the counterpart event on a later run
            orphaned += 1
            logger.debug(
                "Skipping single-event timeline visit=%s activity=%s type=%s",
                visit_id,
                activity_id,
                timeline[0].event_type.value,
            )
            continue

        processed_ids.extend(e.id for e in timeline if e.id is not None)

        # Sorted, so never negative. Zero-length timelines are resolved
        # without writing anything.
        elapsed = timeline_elapsed_ms(timeline)
        if elapsed <= 0:
            logger.debug("Zero-length timeline visit=%s activity=%s", visit_id, activity_id)
            continue

        first = timeline[0]
        date = utc_date_string(first.timestamp)
        key = accumulation_key(date, first.url)
        delta = deltas.get(key)
        if delta is None:
            hostname, parent_domain = parsed_urls[first.url]
            delta = AccumulationDelta(
                date=date,
                url=first.url,
                hostname=hostname,
                parent_domain=parent_domain,
            )
            deltas[key] = delta

        if activity_id is None:
            delta.open_time_to_add += elapsed
        else:
            delta.active_time_to_add += elapsed

    if orphaned:
        logger.info("Left %d single-event timelines unprocessed", orphaned)

    return (
        {key: d for key, d in deltas.items() if d.total > 0},
        sorted(set(processed_ids)),
    )


class AggregationEngine:
    """Turns unprocessed events into durable per-(date, url) time totals.

    Nothing is written until the whole batch has been computed. With a
    transactional store (one object serving both roles with
    commit_aggregation()) the upserts and the processed flags land together,
    so a failed run leaves no totals behind and can simply be retried.
    Otherwise all accumulations are written before any event is marked.
    """

    def __init__(self, event_store: Any, stat_store: Any) -> None:
        """
        Args:
            event_store: Provides fetch_unprocessed_events() and mark_processed(ids).
            stat_store: Provides upsert_accumulation(...), and optionally
                commit_aggregation(deltas, ids) when it is also the event store.
        """
        self._event_store = event_store
        self._stat_store = stat_store

    def run(self) -> AggregationResult:
        """Run one aggregation pass. Never raises."""
        logger.info("Aggregation started")
        try:
            events = self._event_store.fetch_unprocessed_events()
            logger.info("Fetched %d unprocessed events", len(events))
            if not events:
                return AggregationResult(success=True, processed_count=0)

            deltas, processed_ids = plan_aggregation(events)
            self._commit(deltas, processed_ids)
        except Exception as e:
            logger.error("Aggregation failed: %s", e)
            return AggregationResult(success=False, processed_count=0, error=str(e))

        logger.info(
            "Aggregation finished: %d accumulations, %d events processed",
            len(deltas),
            len(processed_ids),
        )
        return AggregationResult(success=True, processed_count=len(processed_ids))

    def _commit(self, deltas: dict[str, AccumulationDelta], processed_ids: list[int]) -> None:
        """Write accumulations, then mark their source events processed.

        When one store plays both roles and offers commit_aggregation(), the
        whole run is applied in a single transaction. Otherwise upserts and
        marking are separate calls.
        """
        ordered = [deltas[key] for key in sorted(deltas)]
        for delta in ordered:
            logger.debug(
                "Upserting %s:%s open=+%dms active=+%dms",
                delta.date,
                delta.url,
                delta.open_time_to_add,
                delta.active_time_to_add,
            )

        commit = getattr(self._stat_store, "commit_aggregation", None)
        if commit is not None and self._stat_store is self._event_store:
            commit(ordered, processed_ids)
            return

        for delta in ordered:
            self._stat_store.upsert_accumulation(
                delta.date,
                delta.url,
                delta.hostname,
                delta.parent_domain,
                delta.open_time_to_add,
                delta.active_time_to_add,
            )

        if processed_ids:
            self._event_store.mark_processed(processed_ids)
