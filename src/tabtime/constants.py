"""Scheduling, locking and retention settings."""

from pathlib import Path

# Keys prefixed "sync:" are user settings, "local:" keys are runtime state.

DEFAULT_PRUNER_RETENTION_DAYS = 30
PRUNER_RETENTION_DAYS_KEY = "sync:pruner_retention_days"

DEFAULT_AGGREGATION_INTERVAL_MINUTES = 60
SCHEDULER_PERIOD_MINUTES_KEY = "sync:scheduler_period"

AGGREGATION_TIMER_NAME = "aggregateData"

AGGREGATION_LOCK_KEY = "local:aggregation_lock"
AGGREGATION_LOCK_TTL_MS = 5 * 60 * 1000  # 5 minutes

DAY_MS = 24 * 60 * 60 * 1000

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "tabtime" / "events.db"
