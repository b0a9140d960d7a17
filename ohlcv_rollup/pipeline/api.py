"""Ingestion and query surface.

Raw writes commit on their own, before any derived table is touched, so a
failing aggregation refresh never loses a tick. Refresh failures are logged
and picked up again by run_aggregation_pass or a backfill.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, TypeVar

import duckdb  # type: ignore
import pandas as pd

from . import db
from .aggregation import rollup_candles, touched_buckets
from .backfill import BackfillReport, run_identity_backfill
from .config import BASE_TIMEFRAME, PipelineConfig
from .dedup import finalize_metric_series
from .errors import AggregationError, IdentityConflictError, PointValidationError, TickValidationError, ValidationError
from .models import (
    CANDLE_COLUMNS,
    TIMEFRAME_FREQ,
    Candle,
    Point,
    candles_from_dataframe,
    empty_candle_frame,
    floor_to_timeframe,
    points_from_dataframe,
    timeframe_delta,
    to_utc_naive,
)
from .refresh import refresh_buckets, refresh_point_buckets
from .validation import validate_point, validate_tick


logger = logging.getLogger(__name__)

T = TypeVar("T")

EARLIEST = pd.Timestamp("1970-01-01")
LATEST = pd.Timestamp("2200-01-01")
# DuckDB TIMESTAMP resolution; turns an inclusive end into an exclusive one
_RESOLUTION = pd.Timedelta(microseconds=1)

# derived writes aborted by a concurrent writer are re-run from a fresh read
WRITE_ATTEMPTS = 5
_RETRY_BACKOFF_S = 0.005

_READY: Set[str] = set()


def _ready(cfg: PipelineConfig) -> None:
    key = str(cfg.db_path)
    if key not in _READY:
        db.ensure_schema(cfg.db_path)
        _READY.add(key)


def _rollup_timeframes(cfg: PipelineConfig) -> Tuple[str, ...]:
    return cfg.timeframes if cfg.materialized else ()


def _is_write_conflict(e: BaseException) -> bool:
    cause = e.__cause__ if isinstance(e, AggregationError) else e
    return isinstance(cause, duckdb.TransactionException)


def _retry_on_conflict(action: Callable[[], T], what: str) -> T:
    """Run action, re-running it while DuckDB aborts it on a write-write conflict.

    Other errors, and a conflict on the last attempt, propagate.
    """
    attempt = 1
    while True:
        try:
            return action()
        except (AggregationError, duckdb.TransactionException) as e:
            if attempt >= WRITE_ATTEMPTS or not _is_write_conflict(e):
                raise
            logger.debug("write conflict on %s (attempt %d/%d): %s", what, attempt, WRITE_ATTEMPTS, e)
            time.sleep(random.uniform(0, _RETRY_BACKOFF_S * attempt))
            attempt += 1


def _minute_buckets(df: pd.DataFrame, ts_col: str) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "market_key": df["market_key"].astype(str),
            "bucket_start": pd.to_datetime(df[ts_col]).dt.floor(TIMEFRAME_FREQ[BASE_TIMEFRAME]),
        }
    )


@dataclass(frozen=True)
class TickIngestResult:
    market_key: str
    event_id: str
    duplicate: bool
    deferred_identity: bool
    candle: Optional[Candle]


@dataclass
class BatchIngestResult:
    accepted: int = 0
    duplicates: int = 0
    rejected: List[ValidationError] = field(default_factory=list)
    buckets_refreshed: int = 0
    refresh_failures: int = 0
    candles: pd.DataFrame = field(default_factory=empty_candle_frame)


@dataclass(frozen=True)
class PointIngestResult:
    arrival_seq: int
    latest: Optional[Point]


@dataclass(frozen=True)
class AggregationPassResult:
    markets: int
    buckets: int
    failures: int
    watermark: int
    point_buckets: int = 0
    points_watermark: int = 0


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------


def _append_ticks(cfg: PipelineConfig, rows: List[Dict[str, Any]]) -> Tuple[pd.DataFrame, db.AppendResult]:
    df = pd.DataFrame(rows)
    with db.transaction(cfg.db_path) as con:
        unresolved = df["market_key"].isna()
        mapping = db.lookup_market_keys(con, df.loc[unresolved, "symbol"]) if unresolved.any() else {}
        # deferred identity: keep the bare symbol as key until resolution backfill runs
        df.loc[unresolved, "market_key"] = df.loc[unresolved, "symbol"].map(lambda s: mapping.get(s, s))
        df["deferred"] = unresolved & ~df["symbol"].isin(list(mapping))
        appended = db.append_ticks_if_absent(
            con, df.loc[:, ["event_id", "market_key", "symbol", "timestamp", "price", "size", "side"]]
        )
        db.enqueue_refresh(con, db.PENDING_CANDLES, _minute_buckets(appended.inserted, "timestamp"))
    return df, appended


def _refresh_market(cfg: PipelineConfig, market_key: str, buckets: List[pd.Timestamp]) -> pd.DataFrame:
    with db.transaction(cfg.db_path) as con:
        return refresh_buckets(con, market_key, buckets, _rollup_timeframes(cfg))


def _refresh_market_points(cfg: PipelineConfig, market_key: str, buckets: List[pd.Timestamp]) -> int:
    with db.transaction(cfg.db_path) as con:
        return refresh_point_buckets(con, market_key, buckets)


def _refresh_touched(cfg: PipelineConfig, touched: pd.DataFrame) -> Tuple[pd.DataFrame, int, int]:
    """Refresh every 1m bucket hit by touched (market_key, timestamp) rows, one transaction per market.

    Returns (refreshed candles, buckets refreshed, markets that failed).
    """
    frames = []
    buckets_done = 0
    failures = 0
    for market_key, grp in touched.groupby("market_key", sort=True):
        key = str(market_key)
        buckets = touched_buckets(grp["timestamp"], BASE_TIMEFRAME)
        try:
            frames.append(_retry_on_conflict(lambda: _refresh_market(cfg, key, buckets), f"candles of {key}"))
        except (AggregationError, duckdb.Error) as e:
            failures += 1
            logger.error(
                "aggregation refresh failed for %s (%d bucket(s)); left for the next pass: %s",
                key,
                len(buckets),
                e,
            )
            continue
        buckets_done += len(buckets)
    candles = pd.concat(frames, ignore_index=True) if frames else empty_candle_frame()
    return candles, buckets_done, failures


def ingest_tick(cfg: PipelineConfig, payload: Mapping[str, Any]) -> TickIngestResult:
    """Validate, store and aggregate a single tick.

    Returns the refreshed 1-minute candle of the tick's bucket for live
    feedback; candle is None when the refresh failed. Raises
    TickValidationError for malformed payloads.
    """
    try:
        row = validate_tick(payload)
    except TickValidationError as e:
        logger.warning("rejected tick %s: %s", e.fields, e.reason)
        raise
    _ready(cfg)
    df, appended = _append_ticks(cfg, [row])
    stored = df.iloc[0]
    candles, _, _ = _refresh_touched(cfg, df.loc[:, ["market_key", "timestamp"]])

    bucket = floor_to_timeframe(stored["timestamp"], BASE_TIMEFRAME)
    match = candles[candles["bucket_start"] == bucket] if not candles.empty else candles
    candle = candles_from_dataframe(match, BASE_TIMEFRAME)[0] if not match.empty else None
    return TickIngestResult(
        market_key=str(stored["market_key"]),
        event_id=str(stored["event_id"]),
        duplicate=bool(appended.duplicate_ids),
        deferred_identity=bool(stored["deferred"]),
        candle=candle,
    )


def ingest_ticks(cfg: PipelineConfig, payloads: Iterable[Mapping[str, Any]]) -> BatchIngestResult:
    """Batch form of ingest_tick: malformed rows are logged and dropped, not raised."""
    result = BatchIngestResult()
    rows = []
    for payload in payloads:
        try:
            rows.append(validate_tick(payload))
        except TickValidationError as e:
            logger.warning("rejected tick %s: %s", e.fields, e.reason)
            result.rejected.append(e)
    if not rows:
        return result

    _ready(cfg)
    df, appended = _append_ticks(cfg, rows)
    result.accepted = len(appended.inserted)
    result.duplicates = len(appended.duplicate_ids)
    candles, result.buckets_refreshed, result.refresh_failures = _refresh_touched(
        cfg, df.loc[:, ["market_key", "timestamp"]]
    )
    result.candles = candles
    return result


def _refresh_touched_points(cfg: PipelineConfig, touched: pd.DataFrame) -> Tuple[int, int]:
    """Point counterpart of _refresh_touched over (market_key, bucket_start) rows.

    Returns (buckets refreshed, markets that failed).
    """
    buckets_done = 0
    failures = 0
    for market_key, grp in touched.groupby("market_key", sort=True):
        key = str(market_key)
        buckets = touched_buckets(grp["bucket_start"], BASE_TIMEFRAME)
        try:
            buckets_done += _retry_on_conflict(lambda: _refresh_market_points(cfg, key, buckets), f"points of {key}")
        except (AggregationError, duckdb.Error) as e:
            failures += 1
            logger.error("point refresh failed for %s (%d bucket(s)); left for the next pass: %s", key, len(buckets), e)
    return buckets_done, failures


def _advance_watermark(cfg: PipelineConfig, name: str, seen: pd.DataFrame, current: int) -> int:
    if seen.empty:
        return current
    high = int(seen["arrival_seq"].max())
    with db.transaction(cfg.db_path) as con:
        db.set_state(con, name, high)
    return high


def run_aggregation_pass(cfg: PipelineConfig) -> AggregationPassResult:
    """Scheduled pass: re-fold every bucket dirtied since the last clean pass.

    A 1m bucket is picked up when a tick or point above the stored watermark
    falls in it, or while it is still in the pending-refresh queue. Queue
    entries are written with the raw rows and cleared by the refresh that
    folded them, so rows committed out of arrival_seq order and refreshes
    lost to write conflicts are not skipped. Each watermark only advances
    when its side refreshed cleanly.
    """
    _ready(cfg)
    with db.connection(cfg.db_path) as con:
        tick_mark = db.get_state(con, db.AGGREGATION_WATERMARK)
        point_mark = db.get_state(con, db.POINTS_WATERMARK)
        ticks = db.ticks_since(con, tick_mark)
        points = db.points_since(con, point_mark)
        queued_candles = db.read_pending(con, db.PENDING_CANDLES)
        queued_points = db.read_pending(con, db.PENDING_POINTS)

    candle_work = pd.concat([_minute_buckets(ticks, "timestamp"), queued_candles], ignore_index=True)
    point_work = pd.concat([_minute_buckets(points, "ts"), queued_points], ignore_index=True)

    buckets = failures = point_buckets = point_failures = 0
    if not candle_work.empty:
        _, buckets, failures = _refresh_touched(cfg, candle_work.rename(columns={"bucket_start": "timestamp"}))
    if not point_work.empty:
        point_buckets, point_failures = _refresh_touched_points(cfg, point_work)
    if failures == 0:
        tick_mark = _advance_watermark(cfg, db.AGGREGATION_WATERMARK, ticks, tick_mark)
    if point_failures == 0:
        point_mark = _advance_watermark(cfg, db.POINTS_WATERMARK, points, point_mark)

    markets = pd.concat([candle_work["market_key"], point_work["market_key"]]).nunique()
    return AggregationPassResult(
        markets=int(markets),
        buckets=buckets,
        failures=failures + point_failures,
        watermark=tick_mark,
        point_buckets=point_buckets,
        points_watermark=point_mark,
    )


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------


def ingest_point(cfg: PipelineConfig, payload: Mapping[str, Any]) -> PointIngestResult:
    """Append a point version and merge it into the latest-value table.

    Returns the authoritative value for the point's key after the merge.
    Raises PointValidationError for malformed payloads.
    """
    try:
        row = validate_point(payload)
    except PointValidationError as e:
        logger.warning("rejected point %s: %s", e.fields, e.reason)
        raise
    _ready(cfg)
    with db.transaction(cfg.db_path) as con:
        appended = db.append_points(con, pd.DataFrame([row]))
        db.enqueue_refresh(con, db.PENDING_POINTS, _minute_buckets(appended, "ts"))
    seq = int(appended["arrival_seq"].iloc[0])
    market_key = row["market_key"]
    bucket = floor_to_timeframe(row["ts"], BASE_TIMEFRAME)

    def merge() -> pd.DataFrame:
        # re-merges every version on record for the minute, not just this one
        with db.transaction(cfg.db_path) as con:
            refresh_point_buckets(con, market_key, [bucket])
            return db.read_point_latest_for_key(con, market_key, row["series_key"], row["ts"], row["x"])

    try:
        latest = _retry_on_conflict(merge, f"latest value of {market_key}/{row['series_key']}")
    except (AggregationError, duckdb.Error) as e:
        logger.error(
            "latest-value merge failed for %s/%s at %s; left for the next pass: %s",
            market_key,
            row["series_key"],
            row["ts"],
            e,
        )
        return PointIngestResult(seq, None)
    return PointIngestResult(seq, points_from_dataframe(latest)[0])


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _bucket_range(timeframe: str, start: Any, end: Any) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """[first bucket, end of the bucket containing `end`)."""
    lo = floor_to_timeframe(to_utc_naive(start), timeframe)
    hi = floor_to_timeframe(to_utc_naive(end), timeframe) + timeframe_delta(timeframe)
    return lo, hi


def dynamic_candles(cfg: PipelineConfig, market_key: str, timeframe: str, start: Any, end: Any) -> pd.DataFrame:
    """Compute timeframe candles at read time from candles_1m."""
    lo, hi = _bucket_range(timeframe, start, end)
    _ready(cfg)
    with db.connection(cfg.db_path) as con:
        minutes = db.read_candles_1m(con, market_key, lo, hi)
    if timeframe == BASE_TIMEFRAME:
        return minutes
    return rollup_candles(minutes, timeframe)


def materialized_candles(cfg: PipelineConfig, market_key: str, timeframe: str, start: Any, end: Any) -> pd.DataFrame:
    """Read timeframe candles kept up to date in candles_rollup."""
    lo, hi = _bucket_range(timeframe, start, end)
    _ready(cfg)
    with db.connection(cfg.db_path) as con:
        if timeframe == BASE_TIMEFRAME:
            return db.read_candles_1m(con, market_key, lo, hi)
        return db.read_candles_rollup(con, market_key, timeframe, lo, hi)


def query_candles(cfg: PipelineConfig, market_key: str, timeframe: str, start: Any, end: Any) -> List[Candle]:
    """Candles for market_key with bucket_start in [floor(start), end], ascending.

    The bucket containing `end` is included even if it is still forming.
    Missing data yields an empty list.
    """
    timeframe_delta(timeframe)
    if cfg.materialized and timeframe in cfg.timeframes:
        df = materialized_candles(cfg, market_key, timeframe, start, end)
    else:
        df = dynamic_candles(cfg, market_key, timeframe, start, end)
    df = df.sort_values("bucket_start", kind="mergesort").loc[:, CANDLE_COLUMNS]
    return candles_from_dataframe(df, timeframe)


def query_points(
    cfg: PipelineConfig,
    market_key: str,
    series_key: str,
    start: Any = None,
    end: Any = None,
) -> List[Point]:
    """Latest values for a series with ts in [start, end], ascending by (ts, x)."""
    lo = EARLIEST if start is None else to_utc_naive(start)
    hi = LATEST if end is None else to_utc_naive(end) + _RESOLUTION
    _ready(cfg)
    with db.connection(cfg.db_path) as con:
        df = db.read_points_latest(con, market_key, lo, hi, series_key=series_key)
    return points_from_dataframe(df.sort_values(["ts", "x"], kind="mergesort"))


def query_metric_series(
    cfg: PipelineConfig,
    market_key: str,
    series_key: str,
    timeframe: str = "1m",
    agg: str = "last",
    start: Any = None,
    end: Any = None,
    sma: int = 0,
    limit: int = 2000,
) -> pd.DataFrame:
    """Metric series as a (ts, value[, sma]) frame; see dedup.finalize_metric_series."""
    lo = EARLIEST if start is None else floor_to_timeframe(to_utc_naive(start), BASE_TIMEFRAME)
    hi = LATEST if end is None else to_utc_naive(end) + _RESOLUTION
    _ready(cfg)
    with db.connection(cfg.db_path) as con:
        minutes = db.read_metric_minutes(con, market_key, series_key, lo, hi)
    return finalize_metric_series(minutes, agg=agg, timeframe=timeframe, sma=sma, limit=limit)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def resolve_identity(cfg: PipelineConfig, symbol: str, market_key: str) -> BackfillReport:
    """Record symbol -> market_key and retag/rebuild everything stored under the bare symbol."""
    symbol = symbol.strip().upper()
    market_key = market_key.strip()
    if not symbol or not market_key:
        raise ValueError("symbol and market_key are required")
    _ready(cfg)
    with db.transaction(cfg.db_path) as con:
        existing = db.lookup_market_keys(con, [symbol]).get(symbol)
        if existing is not None and existing != market_key:
            raise IdentityConflictError(f"symbol {symbol} already resolved to {existing}, not {market_key}")
        db.insert_identity_if_absent(con, symbol, market_key)
    logger.info("identity resolved: %s -> %s", symbol, market_key)
    return run_identity_backfill(cfg, symbol, market_key)
