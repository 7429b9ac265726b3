"""Per-tab open/active time aggregation."""
