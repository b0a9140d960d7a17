from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import pandas as pd

from .api import dynamic_candles, materialized_candles, run_aggregation_pass
from .config import BASE_TIMEFRAME, STRATEGIES, PipelineConfig
from .db import available_markets, ensure_schema, health_stats, latest_price
from .models import compute_current_minute
from .validation import compare_candles, validate_candles


@dataclass
class RunConfig:
    duckdb_path: Path
    strategy: Optional[str] = None
    lookback_minutes: int = 60
    markets: Optional[List[str]] = None
    dry_run: bool = False
    debug: bool = False


def run_once(cfg: RunConfig) -> int:
    """One scheduled pass: aggregate pending ticks, then check recent candles per market."""
    pipeline_cfg = PipelineConfig.from_env(db_path=cfg.duckdb_path, strategy=cfg.strategy)
    ensure_schema(pipeline_cfg.db_path)

    current_minute, _ = compute_current_minute()
    window_start = current_minute - pd.Timedelta(minutes=cfg.lookback_minutes)

    if cfg.dry_run:
        if cfg.debug:
            print("[DRY-RUN] Skipping aggregation pass")
        failures = 0
        buckets = 0
    else:
        res = run_aggregation_pass(pipeline_cfg)
        failures = res.failures
        buckets = res.buckets
        if cfg.debug:
            print(
                f"[INFO] aggregation pass: markets={res.markets} buckets={res.buckets} "
                f"point_buckets={res.point_buckets} watermark={res.watermark} points_watermark={res.points_watermark}"
            )

    markets = cfg.markets or available_markets(pipeline_cfg.db_path)
    invalid = 0
    for market_key in markets:
        minutes = dynamic_candles(pipeline_cfg, market_key, BASE_TIMEFRAME, window_start, current_minute)
        v = validate_candles(minutes, BASE_TIMEFRAME)
        if not v.ok:
            invalid += 1
            print(f"[WARN] {market_key} 1m candles invalid: {v.reason}")
            continue
        if cfg.debug:
            print(f"[INFO] {market_key}: candles_1m={v.validated_rows} last_close={latest_price(pipeline_cfg.db_path, market_key)}")
        if pipeline_cfg.materialized:
            for tf in pipeline_cfg.timeframes:
                a = materialized_candles(pipeline_cfg, market_key, tf, window_start, current_minute)
                b = dynamic_candles(pipeline_cfg, market_key, tf, window_start, current_minute)
                c = compare_candles(a, b)
                if not c.ok:
                    invalid += 1
                    print(f"[WARN] {market_key} {tf} materialized/dynamic mismatch: {c.reason}")

    stats = health_stats(pipeline_cfg.db_path)
    # Log concise stats
    print(
        f"ticks={stats.tick_count} markets={stats.market_count} candles_1m={stats.candle_1m_count} "
        f"buckets_refreshed={buckets} refresh_failures={failures} invalid={invalid} newest_tick={stats.newest_tick}"
    )
    return 0 if (failures == 0 and invalid == 0) else 1


def parse_args(argv: Optional[list[str]] = None) -> RunConfig:
    p = argparse.ArgumentParser(description="Scheduled tick -> candle aggregation pass")
    p.add_argument("--duckdb", type=Path, required=True, help="Path to DuckDB file")
    p.add_argument("--strategy", choices=STRATEGIES, default=None, help="Higher timeframe strategy (default: env or dynamic)")
    p.add_argument("--lookback-minutes", type=int, default=60, help="Window of recent candles to validate")
    p.add_argument("--market", action="append", dest="markets", help="Restrict validation to market key (repeatable)")
    p.add_argument("--dry-run", action="store_true", help="Do not write to DB")
    p.add_argument("--debug", action="store_true", help="Verbose logging")
    args = p.parse_args(argv)

    return RunConfig(
        duckdb_path=args.duckdb,
        strategy=args.strategy,
        lookback_minutes=args.lookback_minutes,
        markets=args.markets,
        dry_run=args.dry_run,
        debug=args.debug,
    )


def main(argv: Optional[list[str]] = None) -> int:
    cfg = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if cfg.debug else logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return run_once(cfg)
    except Exception as e:  # surface clear error message
        print(f"[ERROR] {e}", file=sys.stderr)
        if cfg.debug:
            raise
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
