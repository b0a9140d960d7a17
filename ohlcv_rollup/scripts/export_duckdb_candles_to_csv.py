#!/usr/bin/env python3
from __future__ import annotations

"""
Export candles for one market and timeframe from DuckDB to a CSV.

Usage examples:
  python -m ohlcv_rollup.scripts.export_duckdb_candles_to_csv \
    --duckdb data/ohlcv_rollup.duckdb --market-key mk-42 --timeframe 1h \
    --start "2024-01-01" --end "2024-02-01" --out "data/mk-42_1h.csv" --overwrite

Notes:
  - Outputs columns: market_key, bucket_start, open, high, low, close, volume, trade_count (UTC-naive)
  - Higher timeframes come from candles_rollup under --strategy materialized, otherwise they are computed on read
  - By default prevents overwriting unless --overwrite is passed
"""

import argparse
import sys
from pathlib import Path
from typing import Optional

# Add project root to path if running as script
if __name__ == "__main__":
    project_root = Path(__file__).resolve().parent.parent.parent
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))

import pandas as pd

from ohlcv_rollup.pipeline.api import dynamic_candles, materialized_candles
from ohlcv_rollup.pipeline.config import STRATEGIES, PipelineConfig
from ohlcv_rollup.pipeline.models import CANDLE_COLUMNS, TIMEFRAME_FREQ


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export candles from DuckDB to CSV")
    parser.add_argument("--duckdb", type=Path, required=True, help="Path to DuckDB file")
    parser.add_argument("--market-key", required=True, help="Market key to export")
    parser.add_argument("--timeframe", default="1m", choices=list(TIMEFRAME_FREQ), help="Candle timeframe")
    parser.add_argument("--start", default="1970-01-01", help="First bucket (inclusive)")
    parser.add_argument("--end", default=None, help="Last bucket (inclusive); default now")
    parser.add_argument("--strategy", choices=STRATEGIES, default=None)
    parser.add_argument("--out", required=True, help="Output CSV path")
    parser.add_argument("--overwrite", action="store_true", help="Allow overwriting existing output file")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if out_path.exists() and not args.overwrite:
        print(f"ERROR: Output exists: {out_path}. Pass --overwrite to replace.")
        return 2

    cfg = PipelineConfig.from_env(db_path=args.duckdb, strategy=args.strategy)
    end = args.end or pd.Timestamp.now(tz="UTC").tz_localize(None)
    if cfg.materialized and args.timeframe in cfg.timeframes:
        df = materialized_candles(cfg, args.market_key, args.timeframe, args.start, end)
    else:
        df = dynamic_candles(cfg, args.market_key, args.timeframe, args.start, end)
    if df.empty:
        print("WARN: No candles fetched from DuckDB; writing empty CSV with header.")
    # Ensure column order
    df = df.loc[:, CANDLE_COLUMNS].copy()

    df.to_csv(out_path, index=False)
    if not df.empty:
        print(f"Wrote {len(df):,} rows to {out_path}")
        print(f"Range: {df['bucket_start'].iloc[0]} .. {df['bucket_start'].iloc[-1]}")
    else:
        print(f"Wrote empty CSV to {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
