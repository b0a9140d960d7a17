#!/usr/bin/env python3
from __future__ import annotations

"""
Rebuild derived tables (candles, latest-value points, metric minutes) for one
market and time range strictly from the raw event store.

Each target is rebuilt independently; a failed target is reported and can be
retried on its own with --targets.

Example:
  python -m ohlcv_rollup.scripts.backfill_derived_tables \
    --duckdb data/ohlcv_rollup.duckdb --market-key mk-42 \
    --start "2024-01-01 00:00:00" --end "2024-01-02 00:00:00" \
    --targets candles_1m,candles_rollup --persist-dir artifacts
"""

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path if running as script
if __name__ == "__main__":
    project_root = Path(__file__).resolve().parent.parent.parent
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))

import pandas as pd

from ohlcv_rollup.pipeline.backfill import ALL_TARGETS, BackfillRequest, run_backfill
from ohlcv_rollup.pipeline.config import STRATEGIES, PipelineConfig
from ohlcv_rollup.pipeline.errors import BackfillError
from ohlcv_rollup.pipeline.persistence import PersistConfig, now_utc_run_id, write_backfill_report


@dataclass
class RunConfig:
    duckdb_path: Path
    market_key: str
    start: pd.Timestamp
    end: pd.Timestamp
    targets: Sequence[str] = ALL_TARGETS
    strategy: Optional[str] = None
    dry_run: bool = False
    persist_dir: Optional[Path] = None
    dataset_slug: str = "backfill_reports"
    debug: bool = False


def run_once(cfg: RunConfig) -> int:
    pipeline_cfg = PipelineConfig.from_env(db_path=cfg.duckdb_path, strategy=cfg.strategy)
    req = BackfillRequest(
        market_key=cfg.market_key,
        start=cfg.start,
        end=cfg.end,
        targets=tuple(cfg.targets),
        dry_run=cfg.dry_run,
    )
    report = run_backfill(pipeline_cfg, req)

    for r in report.results:
        line = f"{r.target}: status={r.status} deleted={r.rows_deleted} written={r.rows_written}"
        if r.error:
            line += f" error={r.error}"
        print(line)

    if cfg.persist_dir is not None:
        out = write_backfill_report(PersistConfig(cfg.persist_dir, cfg.dataset_slug), now_utc_run_id(), report)
        if cfg.debug:
            print(f"[INFO] report written to {out}")

    try:
        report.raise_for_failures()
    except BackfillError as e:
        print(f"[WARN] {e}", file=sys.stderr)
        return 1
    return 0


def parse_args(argv: Optional[list[str]] = None) -> RunConfig:
    p = argparse.ArgumentParser(description="Rebuild derived tables for a market/time range from raw data")
    p.add_argument("--duckdb", type=Path, required=True, help="Path to DuckDB file")
    p.add_argument("--market-key", required=True, help="Market key to rebuild")
    p.add_argument("--start", required=True, help="Range start (inclusive), e.g., 2024-01-01 00:00:00")
    p.add_argument("--end", required=True, help="Range end (exclusive)")
    p.add_argument(
        "--targets",
        default=",".join(ALL_TARGETS),
        help=f"Comma separated subset of {','.join(ALL_TARGETS)}",
    )
    p.add_argument("--strategy", choices=STRATEGIES, default=None)
    p.add_argument("--dry-run", action="store_true", help="Compute row counts only; do not write")
    p.add_argument("--persist-dir", type=Path, default=None, help="Directory root for report artifacts")
    p.add_argument("--dataset", default="backfill_reports", help="Dataset slug directory for artifacts")
    p.add_argument("--debug", action="store_true")
    args = p.parse_args(argv)
    return RunConfig(
        duckdb_path=args.duckdb,
        market_key=args.market_key,
        start=pd.to_datetime(args.start, utc=True).tz_convert("UTC").tz_localize(None),
        end=pd.to_datetime(args.end, utc=True).tz_convert("UTC").tz_localize(None),
        targets=[t.strip() for t in args.targets.split(",") if t.strip()],
        strategy=args.strategy,
        dry_run=bool(args.dry_run),
        persist_dir=args.persist_dir,
        dataset_slug=args.dataset,
        debug=bool(args.debug),
    )


def main(argv: Optional[list[str]] = None) -> int:
    cfg = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if cfg.debug else logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        return run_once(cfg)
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2
    except Exception as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        if cfg.debug:
            raise
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
