#!/usr/bin/env python3
from __future__ import annotations

"""
Ingest raw trade ticks from a CSV into DuckDB and fold them into candles.

Expected columns (header required, case-insensitive):
  timestamp,price,size,side and market_key and/or symbol, optionally event_id

timestamp may be epoch milliseconds or an ISO string (naive = UTC).

Essential steps:
  - Inspect: rows, time range, markets, duplicate event ids
  - Clean/transform: normalize columns, parse timestamps (UTC-naive), numeric types, sort
  - Optional range filter via --start/--end
  - Ingest: append-if-absent by event_id, refresh touched 1m buckets, then one aggregation pass

Usage example:
  python -m ohlcv_rollup.scripts.ingest_ticks_from_csv \
    --csv data/ticks.csv --duckdb data/ohlcv_rollup.duckdb --chunk-size 5000
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

# Add project root to path if running as script
if __name__ == "__main__":
    project_root = Path(__file__).resolve().parent.parent.parent
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))

import numpy as np
import pandas as pd

from ohlcv_rollup.pipeline.api import ingest_ticks, run_aggregation_pass
from ohlcv_rollup.pipeline.config import STRATEGIES, PipelineConfig


TICK_CSV_COLUMNS = ["event_id", "market_key", "symbol", "timestamp", "price", "size", "side"]


def _parse_timestamps(col: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(col):
        return pd.to_datetime(col, unit="ms", utc=True).dt.tz_convert("UTC").dt.tz_localize(None)
    return pd.to_datetime(col, utc=True, errors="coerce").dt.tz_convert("UTC").dt.tz_localize(None)


def inspect_dataframe(df: pd.DataFrame) -> None:
    df = df.rename(columns=lambda c: str(c).strip().lower())
    print(f"[INSPECT] rows={len(df):,}")
    if "timestamp" not in df.columns:
        print("[WARN] 'timestamp' column missing; unexpected format")
        return
    ts = _parse_timestamps(df["timestamp"])
    if ts.dropna().empty:
        print("[INSPECT] empty timestamp series")
        return
    print(f"[INSPECT] ts_range: {ts.min()} .. {ts.max()}")
    # Minute continuity: buckets with no ticks between first and last tick
    minutes = ts.dropna().dt.floor("min").drop_duplicates().sort_values()
    diffs = minutes.diff().dropna().dt.total_seconds().values
    if diffs.size:
        ok = bool(np.all(diffs == 60))
        empty_minutes = int(np.sum(diffs / 60 - 1))
        print(f"[INSPECT] minute_continuous={ok} empty_minutes={empty_minutes}")
    for key_col in ("market_key", "symbol"):
        if key_col in df.columns:
            print(f"[INSPECT] distinct {key_col}: {df[key_col].nunique()}")
    if "event_id" in df.columns:
        dup_cnt = df["event_id"].dropna().duplicated().sum()
        if dup_cnt:
            print(f"[INSPECT] duplicate event ids: {dup_cnt}")


def clean_transform(
    df: pd.DataFrame,
    *,
    start: Optional[pd.Timestamp] = None,
    end: Optional[pd.Timestamp] = None,
) -> pd.DataFrame:
    # Normalize column names
    df = df.copy()
    df.columns = [str(c).strip().lower() for c in df.columns]
    required = {"timestamp", "price", "size", "side"}
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"missing required columns in CSV: {sorted(missing)}")
    if "market_key" not in df.columns and "symbol" not in df.columns:
        raise ValueError("CSV needs a market_key or symbol column")
    for col in TICK_CSV_COLUMNS:
        if col not in df.columns:
            df[col] = None

    out = df.loc[:, TICK_CSV_COLUMNS].copy()
    out["timestamp"] = _parse_timestamps(df["timestamp"])
    out["price"] = pd.to_numeric(df["price"], errors="coerce")
    out["size"] = pd.to_numeric(df["size"], errors="coerce")

    # Drop rows whose timestamp could not be parsed; the rest is validated per tick on ingest
    before = len(out)
    out = out.dropna(subset=["timestamp"]).copy()
    dropped = before - len(out)
    if dropped:
        print(f"[CLEAN] dropped rows with unparseable timestamps: {dropped}")

    # Optional range filter
    if start is not None:
        out = out[out["timestamp"] >= start]
    if end is not None:
        out = out[out["timestamp"] <= end]

    out = out.sort_values("timestamp", kind="mergesort").reset_index(drop=True)
    if not out.empty:
        print(f"[CHECK] rows={len(out):,} range={out['timestamp'].iloc[0]}..{out['timestamp'].iloc[-1]}")
    return out


def to_payloads(df: pd.DataFrame) -> list[dict]:
    obj = df.astype(object).where(df.notna(), None)
    return obj.to_dict(orient="records")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Ingest trade ticks from CSV into DuckDB and aggregate candles")
    p.add_argument("--csv", type=Path, required=True, help="Path to tick CSV file")
    p.add_argument("--duckdb", type=Path, required=True, help="Path to DuckDB file")
    p.add_argument("--strategy", choices=STRATEGIES, default=None, help="Higher timeframe strategy")
    p.add_argument("--start", type=str, default=None, help="Start timestamp (inclusive), e.g., 2024-01-01 00:00:00")
    p.add_argument("--end", type=str, default=None, help="End timestamp (inclusive)")
    p.add_argument("--chunk-size", type=int, default=5000, help="Ticks per ingestion batch")
    p.add_argument("--dry-run", action="store_true", help="Inspect and clean only; do not write to DB")
    p.add_argument("--debug", action="store_true")
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        df_raw = pd.read_csv(args.csv)
        inspect_dataframe(df_raw)

        start = pd.to_datetime(args.start, utc=True).tz_convert("UTC").tz_localize(None) if args.start else None
        end = pd.to_datetime(args.end, utc=True).tz_convert("UTC").tz_localize(None) if args.end else None
        df = clean_transform(df_raw, start=start, end=end)
    except (OSError, ValueError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2

    if args.dry_run:
        print("[DRY-RUN] Skipping DB insert.")
        return 0

    cfg = PipelineConfig.from_env(db_path=args.duckdb, strategy=args.strategy)
    accepted = duplicates = rejected = failures = 0
    try:
        for i in range(0, len(df), args.chunk_size):
            res = ingest_ticks(cfg, to_payloads(df.iloc[i : i + args.chunk_size]))
            accepted += res.accepted
            duplicates += res.duplicates
            rejected += len(res.rejected)
            failures += res.refresh_failures
        pass_res = run_aggregation_pass(cfg)
    except Exception as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        if args.debug:
            raise
        return 3

    print(
        f"[INFO] accepted={accepted} duplicates={duplicates} rejected={rejected} "
        f"refresh_failures={failures + pass_res.failures} watermark={pass_res.watermark} db={args.duckdb}"
    )
    return 0 if pass_res.failures == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
