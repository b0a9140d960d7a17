"""Backfill / recompute engine.

Rebuilds derived tables for one market and time range strictly from the raw
event store. Each target is rebuilt in its own transaction under an advisory
(market_key, target) marker; a failure in one target is recorded in the
report and the remaining targets still run.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import pandas as pd

from . import db
from .config import PipelineConfig
from .errors import BackfillError
from .refresh import (
    RebuildResult,
    rebuild_candles_1m,
    rebuild_candles_rollup,
    rebuild_metric_minutes,
    rebuild_points_latest,
)


logger = logging.getLogger(__name__)


TARGET_CANDLES_1M = db.CANDLES_1M_TABLE
TARGET_CANDLES_ROLLUP = db.CANDLES_ROLLUP_TABLE
TARGET_POINTS_LATEST = db.POINTS_LATEST_TABLE
TARGET_METRIC_1M = db.METRIC_1M_TABLE
# rebuild order: rollups read candles_1m, metric minutes read points_latest
ALL_TARGETS = (TARGET_CANDLES_1M, TARGET_CANDLES_ROLLUP, TARGET_POINTS_LATEST, TARGET_METRIC_1M)

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"
STATUS_DRY_RUN = "dry_run"


@dataclass(frozen=True)
class BackfillRequest:
    market_key: str
    start: pd.Timestamp
    end: pd.Timestamp
    targets: Sequence[str] = ALL_TARGETS
    dry_run: bool = False


@dataclass(frozen=True)
class BackfillTargetResult:
    target: str
    status: str
    rows_deleted: int = 0
    rows_written: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != STATUS_FAILED


@dataclass
class BackfillReport:
    market_key: str
    start: Optional[pd.Timestamp]
    end: Optional[pd.Timestamp]
    results: List[BackfillTargetResult] = field(default_factory=list)
    retagged: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failed_targets(self) -> List[str]:
        return [r.target for r in self.results if not r.ok]

    def raise_for_failures(self) -> None:
        if not self.ok:
            details = "; ".join(f"{r.target}: {r.error}" for r in self.results if not r.ok)
            raise BackfillError(f"backfill for {self.market_key} failed: {details}")

    def result_for(self, target: str) -> Optional[BackfillTargetResult]:
        for r in self.results:
            if r.target == target:
                return r
        return None

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "market_key": self.market_key,
                    "start": self.start,
                    "end": self.end,
                    "target": r.target,
                    "status": r.status,
                    "rows_deleted": r.rows_deleted,
                    "rows_written": r.rows_written,
                    "error": r.error or "",
                }
                for r in self.results
            ],
            columns=["market_key", "start", "end", "target", "status", "rows_deleted", "rows_written", "error"],
        )


Rebuilder = Callable[[PipelineConfig, object, BackfillRequest], RebuildResult]

_REBUILDERS: Dict[str, Rebuilder] = {
    TARGET_CANDLES_1M: lambda cfg, con, req: rebuild_candles_1m(con, req.market_key, req.start, req.end, req.dry_run),
    TARGET_CANDLES_ROLLUP: lambda cfg, con, req: rebuild_candles_rollup(
        con, req.market_key, req.start, req.end, cfg.timeframes, req.dry_run
    ),
    TARGET_POINTS_LATEST: lambda cfg, con, req: rebuild_points_latest(con, req.market_key, req.start, req.end, req.dry_run),
    TARGET_METRIC_1M: lambda cfg, con, req: rebuild_metric_minutes(con, req.market_key, req.start, req.end, req.dry_run),
}


def _run_target(cfg: PipelineConfig, req: BackfillRequest, target: str, owner: str) -> BackfillTargetResult:
    acquired = False
    try:
        if not req.dry_run:
            acquired = db.try_acquire_marker(cfg.db_path, req.market_key, target, owner, cfg.marker_ttl)
            if not acquired:
                logger.warning("backfill of %s for %s already in progress; skipping", target, req.market_key)
                return BackfillTargetResult(target, STATUS_SKIPPED)
        with db.transaction(cfg.db_path) as con:
            res = _REBUILDERS[target](cfg, con, req)
    except Exception as e:  # isolate per-target failures so the other targets still run
        logger.exception("backfill of %s for %s failed", target, req.market_key)
        return BackfillTargetResult(target, STATUS_FAILED, error=f"{type(e).__name__}: {e}")
    finally:
        if acquired:
            db.release_marker(cfg.db_path, req.market_key, target, owner)

    status = STATUS_DRY_RUN if req.dry_run else STATUS_OK
    logger.info(
        "backfill %s %s: deleted=%d written=%d (%s)", target, req.market_key, res.rows_deleted, res.rows_written, status
    )
    return BackfillTargetResult(target, status, res.rows_deleted, res.rows_written)


def run_backfill(cfg: PipelineConfig, req: BackfillRequest, owner: Optional[str] = None) -> BackfillReport:
    """Rebuild the requested targets for req.market_key over [req.start, req.end).

    Candle ranges are widened to whole buckets. Returns per-target results;
    never raises for a single target's failure.
    """
    unknown = [t for t in req.targets if t not in _REBUILDERS]
    if unknown:
        raise ValueError(f"unknown backfill targets: {unknown}; expected a subset of {list(ALL_TARGETS)}")
    if req.end <= req.start:
        raise ValueError(f"backfill range is empty: start={req.start} end={req.end}")

    db.ensure_schema(cfg.db_path)
    owner = owner or uuid.uuid4().hex
    report = BackfillReport(req.market_key, req.start, req.end)
    for target in [t for t in ALL_TARGETS if t in set(req.targets)]:
        report.results.append(_run_target(cfg, req, target, owner))
    if not report.ok:
        logger.error("backfill for %s finished with failed targets: %s", req.market_key, report.failed_targets)
    return report


def run_identity_backfill(cfg: PipelineConfig, symbol: str, market_key: str, owner: Optional[str] = None) -> BackfillReport:
    """Move rows ingested under a bare symbol to market_key and rebuild what depended on them.

    Safe to run again: once nothing is stored under the symbol it is a no-op.
    """
    db.ensure_schema(cfg.db_path)
    with db.transaction(cfg.db_path) as con:
        ranges = [
            db.time_range_for_key(con, db.TICKS_TABLE, symbol),
            db.time_range_for_key(con, db.POINTS_TABLE, symbol, ts_col="ts"),
        ]
        retagged = db.retag_raw_rows(con, symbol, market_key)
        for table in (db.CANDLES_1M_TABLE, db.CANDLES_ROLLUP_TABLE, db.POINTS_LATEST_TABLE, db.METRIC_1M_TABLE):
            con.execute(f"DELETE FROM {table} WHERE market_key = ?", [symbol])

    ranges = [r for r in ranges if r is not None]
    if not ranges:
        logger.info("identity %s -> %s: nothing stored under the bare symbol", symbol, market_key)
        return BackfillReport(market_key, None, None, retagged=retagged)

    start = min(r[0] for r in ranges)
    # end is exclusive; step past the newest retagged row
    end = max(r[1] for r in ranges) + pd.Timedelta(microseconds=1)
    logger.info("identity %s -> %s: retagged %s, rebuilding %s..%s", symbol, market_key, retagged, start, end)
    report = run_backfill(cfg, BackfillRequest(market_key, start, end), owner=owner)
    report.retagged = retagged
    return report
