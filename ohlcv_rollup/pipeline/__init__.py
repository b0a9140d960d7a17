"""Tick -> candle rollup and point dedup pipeline.

Implements raw event storage, minute and higher-timeframe aggregation, the
latest-value layer, backfill and identity resolution.
"""

__all__ = [
    "aggregation",
    "api",
    "backfill",
    "cli",
    "config",
    "db",
    "dedup",
    "errors",
    "models",
    "persistence",
    "refresh",
    "validation",
]
