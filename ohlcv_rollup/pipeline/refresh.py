"""Re-fold derived rows for a market and time range from what is on record.

Live ingestion and the backfill engine both go through these functions: a
refresh of one bucket is just a rebuild over a one-bucket range. Every
rebuild replaces whole buckets inside the caller's transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import duckdb  # type: ignore
import pandas as pd

from . import db
from .aggregation import fold_ticks_to_minutes, rollup_candles
from .dedup import METRIC_MINUTE_COLUMNS, fold_metric_minutes, latest_by_version
from .errors import AggregationError
from .models import CANDLE_COLUMNS, POINT_COLUMNS, align_range, timeframe_delta, to_pydatetime


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RebuildResult:
    rows_deleted: int
    rows_written: int
    frame: pd.DataFrame


def rebuild_candles_1m(con, market_key: str, start: pd.Timestamp, end: pd.Timestamp, dry_run: bool = False) -> RebuildResult:
    lo, hi = align_range(start, end, "1m")
    candles = fold_ticks_to_minutes(db.read_ticks(con, market_key, lo, hi))
    where = "market_key = ? AND bucket_start >= ? AND bucket_start < ?"
    params = [market_key, to_pydatetime(lo), to_pydatetime(hi)]
    if dry_run:
        return RebuildResult(db.count_rows(con, db.CANDLES_1M_TABLE, where, params), len(candles), candles)
    deleted, written = db.replace_rows(con, db.CANDLES_1M_TABLE, where, params, candles, CANDLE_COLUMNS)
    return RebuildResult(deleted, written, candles)


def rebuild_candles_rollup(
    con,
    market_key: str,
    start: pd.Timestamp,
    end: pd.Timestamp,
    timeframes: Iterable[str],
    dry_run: bool = False,
) -> RebuildResult:
    """Rebuild materialized higher-timeframe candles from candles_1m."""
    deleted = written = 0
    frames = []
    for tf in timeframes:
        lo, hi = align_range(start, end, tf)
        rolled = rollup_candles(db.read_candles_1m(con, market_key, lo, hi), tf)
        rolled.insert(1, "timeframe", tf)
        where = "market_key = ? AND timeframe = ? AND bucket_start >= ? AND bucket_start < ?"
        params = [market_key, tf, to_pydatetime(lo), to_pydatetime(hi)]
        if dry_run:
            d, w = db.count_rows(con, db.CANDLES_ROLLUP_TABLE, where, params), len(rolled)
        else:
            d, w = db.replace_rows(
                con, db.CANDLES_ROLLUP_TABLE, where, params, rolled, ["timeframe"] + CANDLE_COLUMNS
            )
        deleted += d
        written += w
        frames.append(rolled)
    frame = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=["timeframe"] + CANDLE_COLUMNS)
    return RebuildResult(deleted, written, frame)


def rebuild_points_latest(con, market_key: str, start: pd.Timestamp, end: pd.Timestamp, dry_run: bool = False) -> RebuildResult:
    latest = latest_by_version(db.read_points_raw(con, market_key, start, end))
    where = "market_key = ? AND ts >= ? AND ts < ?"
    params = [market_key, to_pydatetime(start), to_pydatetime(end)]
    if dry_run:
        return RebuildResult(db.count_rows(con, db.POINTS_LATEST_TABLE, where, params), len(latest), latest)
    deleted, written = db.replace_rows(con, db.POINTS_LATEST_TABLE, where, params, latest, POINT_COLUMNS)
    return RebuildResult(deleted, written, latest)


def rebuild_metric_minutes(con, market_key: str, start: pd.Timestamp, end: pd.Timestamp, dry_run: bool = False) -> RebuildResult:
    lo, hi = align_range(start, end, "1m")
    minutes = fold_metric_minutes(db.read_points_latest(con, market_key, lo, hi))
    where = "market_key = ? AND bucket_start >= ? AND bucket_start < ?"
    params = [market_key, to_pydatetime(lo), to_pydatetime(hi)]
    if dry_run:
        return RebuildResult(db.count_rows(con, db.METRIC_1M_TABLE, where, params), len(minutes), minutes)
    deleted, written = db.replace_rows(con, db.METRIC_1M_TABLE, where, params, minutes, METRIC_MINUTE_COLUMNS)
    return RebuildResult(deleted, written, minutes)


def refresh_buckets(
    con,
    market_key: str,
    buckets: Iterable[pd.Timestamp],
    rollup_timeframes: Iterable[str] = (),
) -> pd.DataFrame:
    """Recompute the given 1m buckets (and their enclosing rollup buckets) from raw ticks.

    Returns the refreshed 1m candles. Raises AggregationError when the store
    rejects a read or write; the caller's transaction is then rolled back.
    """
    one_minute = timeframe_delta("1m")
    tfs = list(rollup_timeframes)
    frames = []
    for bucket in sorted(set(buckets)):
        try:
            res = rebuild_candles_1m(con, market_key, bucket, bucket + one_minute)
            if tfs:
                rebuild_candles_rollup(con, market_key, bucket, bucket + one_minute, tfs)
            db.clear_pending(con, market_key, db.PENDING_CANDLES, bucket)
        except duckdb.Error as e:
            raise AggregationError(f"refresh of {market_key} bucket {bucket} failed: {e}") from e
        frames.append(res.frame)
    if not frames:
        return pd.DataFrame(columns=CANDLE_COLUMNS)
    logger.debug("refreshed %d bucket(s) for %s", len(frames), market_key)
    return pd.concat(frames, ignore_index=True)


def refresh_point_buckets(con, market_key: str, buckets: Iterable[pd.Timestamp]) -> int:
    """Re-merge latest values and metric minutes of the given 1m buckets from points_raw.

    Returns the number of buckets refreshed. Raises AggregationError like
    refresh_buckets.
    """
    one_minute = timeframe_delta("1m")
    done = 0
    for bucket in sorted(set(buckets)):
        try:
            rebuild_points_latest(con, market_key, bucket, bucket + one_minute)
            rebuild_metric_minutes(con, market_key, bucket, bucket + one_minute)
            db.clear_pending(con, market_key, db.PENDING_POINTS, bucket)
        except duckdb.Error as e:
            raise AggregationError(f"point refresh of {market_key} bucket {bucket} failed: {e}") from e
        done += 1
    return done
