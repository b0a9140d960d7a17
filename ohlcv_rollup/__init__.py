"""OHLCV Rollup - time-series rollup and deduplication for trade ticks and metric points.

Provides:
- Raw tick/point store on DuckDB with redelivery-safe appends
- 1-minute candle aggregation with materialized or on-read higher timeframes
- Latest-value (argmax by version) point series
- Backfill / recompute engine and identity resolution
- CLI scripts for ingestion, backfill, export and purge
"""

__version__ = "0.1.0"

# Expose main submodules
from . import pipeline
from . import scripts

__all__ = ["pipeline", "scripts", "__version__"]
