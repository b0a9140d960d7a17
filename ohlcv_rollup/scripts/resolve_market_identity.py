#!/usr/bin/env python3
from __future__ import annotations

"""
Record that a human symbol resolves to a market key and retag its history.

Ticks and points ingested before the market was registered are stored under
the bare symbol. This moves them to the market key and rebuilds every derived
row that depended on the symbol. Running it again is a no-op.

Example:
  python -m ohlcv_rollup.scripts.resolve_market_identity \
    --duckdb data/ohlcv_rollup.duckdb --symbol NICKEL --market-key mk-42
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

from ohlcv_rollup.pipeline.api import resolve_identity
from ohlcv_rollup.pipeline.config import STRATEGIES, PipelineConfig
from ohlcv_rollup.pipeline.errors import IdentityConflictError


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Resolve a symbol to its market key and backfill history")
    p.add_argument("--duckdb", type=Path, required=True, help="Path to DuckDB file")
    p.add_argument("--symbol", required=True, help="Human symbol, e.g., NICKEL")
    p.add_argument("--market-key", required=True, help="Stable market identifier")
    p.add_argument("--strategy", choices=STRATEGIES, default=None)
    p.add_argument("--debug", action="store_true")
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    cfg = PipelineConfig.from_env(db_path=args.duckdb, strategy=args.strategy)
    try:
        report = resolve_identity(cfg, args.symbol, args.market_key)
    except (IdentityConflictError, ValueError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2
    except Exception as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        if args.debug:
            raise
        return 3

    retagged = " ".join(f"{k}={v}" for k, v in sorted(report.retagged.items()))
    print(f"resolved {args.symbol.upper()} -> {args.market_key} retagged: {retagged or 'none'}")
    for r in report.results:
        print(f"{r.target}: status={r.status} deleted={r.rows_deleted} written={r.rows_written}")
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
