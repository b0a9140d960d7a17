"""Latest-value reductions for point series.

Writers append new versions and never update in place. The authoritative
value for a natural key (market_key, series_key, ts, x) is the argmax over
(version, value, arrival_seq). The reduction is associative and commutative,
so it can be applied to any subset of the raw log, in any order, and merged
again with the same function.
"""

from __future__ import annotations

import pandas as pd

from .models import POINT_COLUMNS, TIMEFRAME_FREQ, timeframe_delta


POINT_KEY = ["market_key", "series_key", "ts", "x"]
METRIC_MINUTE_COLUMNS = [
    "market_key",
    "series_key",
    "bucket_start",
    "last_value",
    "last_version",
    "avg_value",
    "min_value",
    "max_value",
    "sample_count",
]
AGG_COLUMN = {
    "last": "last_value",
    "avg": "avg_value",
    "min": "min_value",
    "max": "max_value",
}


def empty_point_frame() -> pd.DataFrame:
    return pd.DataFrame(columns=POINT_COLUMNS).astype(
        {
            "market_key": object,
            "series_key": object,
            "ts": "datetime64[ns]",
            "x": float,
            "value": float,
            "version": "int64",
            "arrival_seq": "int64",
        }
    )


def latest_by_version(points: pd.DataFrame) -> pd.DataFrame:
    """Keep exactly one row per natural key: the one with the highest (version, value, arrival_seq)."""
    if points.empty:
        return empty_point_frame()
    df = points.sort_values(POINT_KEY + ["version", "value", "arrival_seq"], kind="mergesort")
    out = df.drop_duplicates(subset=POINT_KEY, keep="last")
    return out.loc[:, POINT_COLUMNS].reset_index(drop=True)


def fold_metric_minutes(latest: pd.DataFrame) -> pd.DataFrame:
    """Bucket latest point values into minutes with last/avg/min/max/count.

    "last" is the value of the point with the highest version in the minute;
    ties fall back to the later (ts, x) and then the larger value.
    """
    if latest.empty:
        return pd.DataFrame(columns=METRIC_MINUTE_COLUMNS)
    df = latest.copy()
    df["bucket_start"] = df["ts"].dt.floor(TIMEFRAME_FREQ["1m"])
    df = df.sort_values(
        ["market_key", "series_key", "bucket_start", "version", "ts", "x", "value"], kind="mergesort"
    )
    out = (
        df.groupby(["market_key", "series_key", "bucket_start"], sort=True)
        .agg(
            last_value=("value", "last"),
            last_version=("version", "last"),
            avg_value=("value", "mean"),
            min_value=("value", "min"),
            max_value=("value", "max"),
            sample_count=("value", "size"),
        )
        .reset_index()
    )
    out["sample_count"] = out["sample_count"].astype("int64")
    return out.loc[:, METRIC_MINUTE_COLUMNS]


def finalize_metric_series(
    minutes: pd.DataFrame,
    agg: str = "last",
    timeframe: str = "1m",
    sma: int = 0,
    limit: int = 2000,
) -> pd.DataFrame:
    """Turn metric minute buckets into a plottable (ts, value[, sma]) series.

    Finalized minute values are averaged into the requested timeframe. The
    moving average covers up to `sma` trailing rows and is computed before
    the most recent `limit` rows are kept.
    """
    if agg not in AGG_COLUMN:
        raise ValueError(f"agg must be one of {list(AGG_COLUMN)}, got {agg!r}")
    timeframe_delta(timeframe)
    cols = ["ts", "value"] + (["sma"] if sma > 0 else [])
    if minutes.empty:
        return pd.DataFrame(columns=cols)

    col = AGG_COLUMN[agg]
    series = (
        minutes.sort_values("bucket_start", kind="mergesort")
        .loc[:, ["bucket_start", col]]
        .rename(columns={"bucket_start": "ts", col: "value"})
        .reset_index(drop=True)
    )
    series["value"] = series["value"].astype(float)
    if timeframe != "1m":
        series["ts"] = series["ts"].dt.floor(TIMEFRAME_FREQ[timeframe])
        series = series.groupby("ts", sort=True)["value"].mean().reset_index()
    if sma > 0:
        series["sma"] = series["value"].rolling(window=sma, min_periods=1).mean()
    return series.tail(limit).reset_index(drop=True).loc[:, cols]
