"""Candle reductions.

Both folds are pure functions over the rows currently on record, so running
them again over the same input yields identical candles. The minute fold
orders ticks by (timestamp, arrival_seq) before taking first/last, which
makes open/close deterministic for ticks sharing a millisecond.
"""

from __future__ import annotations

import pandas as pd

from .models import CANDLE_COLUMNS, TIMEFRAME_FREQ, empty_candle_frame, timeframe_delta


def fold_ticks_to_minutes(ticks: pd.DataFrame) -> pd.DataFrame:
    """Fold raw ticks into one 1-minute candle per (market_key, bucket_start).

    Expects columns market_key, timestamp, price, size, arrival_seq.
    """
    if ticks.empty:
        return empty_candle_frame()
    df = ticks.sort_values(["market_key", "timestamp", "arrival_seq"], kind="mergesort").copy()
    df["bucket_start"] = df["timestamp"].dt.floor(TIMEFRAME_FREQ["1m"])
    out = (
        df.groupby(["market_key", "bucket_start"], sort=True)
        .agg(
            open=("price", "first"),
            high=("price", "max"),
            low=("price", "min"),
            close=("price", "last"),
            volume=("size", "sum"),
            trade_count=("price", "size"),
        )
        .reset_index()
    )
    out["trade_count"] = out["trade_count"].astype("int64")
    return out.loc[:, CANDLE_COLUMNS]


def rollup_candles(candles: pd.DataFrame, timeframe: str) -> pd.DataFrame:
    """Re-aggregate finer candles (normally 1m) into timeframe buckets.

    open comes from the earliest contributing candle, close from the latest;
    high/low are max/min, volume and trade_count are sums.
    """
    timeframe_delta(timeframe)
    if candles.empty:
        return empty_candle_frame()
    df = candles.sort_values(["market_key", "bucket_start"], kind="mergesort").copy()
    df["window_start"] = df["bucket_start"].dt.floor(TIMEFRAME_FREQ[timeframe])
    out = (
        df.groupby(["market_key", "window_start"], sort=True)
        .agg(
            open=("open", "first"),
            high=("high", "max"),
            low=("low", "min"),
            close=("close", "last"),
            volume=("volume", "sum"),
            trade_count=("trade_count", "sum"),
        )
        .reset_index()
        .rename(columns={"window_start": "bucket_start"})
    )
    out["trade_count"] = out["trade_count"].astype("int64")
    return out.loc[:, CANDLE_COLUMNS]


def touched_buckets(timestamps: pd.Series, timeframe: str) -> list[pd.Timestamp]:
    """Distinct bucket starts hit by a set of timestamps, ascending."""
    if timestamps.empty:
        return []
    floored = pd.to_datetime(timestamps).dt.floor(TIMEFRAME_FREQ[timeframe])
    return sorted(pd.Timestamp(t) for t in floored.unique())
