"""CLI scripts for loading, rebuilding and exporting rollup data.

Scripts:
- ingest_ticks_from_csv: Inspect, clean and ingest a tick CSV, then run an aggregation pass
- backfill_derived_tables: Rebuild derived tables for a market/time range
- resolve_market_identity: Map a symbol to its market key and retag history
- export_duckdb_candles_to_csv: Export candles for one market/timeframe
- purge_market_data: Irreversibly delete all rows for a market key

Usage:
    python -m ohlcv_rollup.scripts.ingest_ticks_from_csv --help
    python -m ohlcv_rollup.scripts.backfill_derived_tables --help
"""

__all__ = [
    "ingest_ticks_from_csv",
    "backfill_derived_tables",
    "resolve_market_identity",
    "export_duckdb_candles_to_csv",
    "purge_market_data",
]
