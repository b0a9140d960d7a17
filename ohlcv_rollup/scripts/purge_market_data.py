#!/usr/bin/env python3
from __future__ import annotations

"""
Irreversibly delete every raw and derived row for one market key.

Covers raw ticks and points, candles (1m and rollups), latest-value points,
metric minutes, identity mappings and backfill markers.

Example:
  python -m ohlcv_rollup.scripts.purge_market_data \
    --duckdb data/ohlcv_rollup.duckdb --market-key mk-42 --yes
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

from ohlcv_rollup.pipeline.db import ensure_schema, purge_market


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Purge all rows for a market key (irreversible)")
    p.add_argument("--duckdb", type=Path, required=True, help="Path to DuckDB file")
    p.add_argument("--market-key", required=True, help="Market key to purge")
    p.add_argument("--yes", action="store_true", help="Confirm the irreversible delete")
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    if not args.yes:
        print(f"[ERROR] Refusing to purge {args.market_key} without --yes", file=sys.stderr)
        return 2
    if not args.duckdb.exists():
        print(f"[ERROR] DuckDB file not found: {args.duckdb}", file=sys.stderr)
        return 2

    ensure_schema(args.duckdb)
    deleted = purge_market(args.duckdb, args.market_key)
    for table, n in deleted.items():
        print(f"{table}: deleted={n}")
    print(f"[INFO] purged {sum(deleted.values())} rows for {args.market_key}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
