from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import pandas as pd

from .errors import TimeframeValidationError


SIDE_BUY = "buy"
SIDE_SELL = "sell"
SIDES = (SIDE_BUY, SIDE_SELL)

# pandas offset aliases; all buckets are epoch anchored in UTC
TIMEFRAME_FREQ = {
    "1m": "1min",
    "5m": "5min",
    "15m": "15min",
    "30m": "30min",
    "1h": "1h",
    "4h": "4h",
    "1d": "1D",
}

TICK_COLUMNS = ["event_id", "market_key", "symbol", "timestamp", "price", "size", "side", "arrival_seq"]
CANDLE_COLUMNS = ["market_key", "bucket_start", "open", "high", "low", "close", "volume", "trade_count"]
POINT_COLUMNS = ["market_key", "series_key", "ts", "x", "value", "version", "arrival_seq"]


@dataclass(frozen=True)
class Tick:
    market_key: str
    timestamp: pd.Timestamp
    price: float
    size: float
    side: str
    event_id: str
    symbol: Optional[str] = None
    arrival_seq: Optional[int] = None


@dataclass(frozen=True)
class Candle:
    market_key: str
    timeframe: str
    bucket_start: pd.Timestamp
    open: float
    high: float
    low: float
    close: float
    volume: float
    trade_count: int


@dataclass(frozen=True)
class Point:
    market_key: str
    series_key: str
    ts: pd.Timestamp
    x: float
    value: float
    version: int
    arrival_seq: Optional[int] = None

    @property
    def natural_key(self) -> Tuple[str, str, pd.Timestamp, float]:
        return (self.market_key, self.series_key, self.ts, self.x)


def timeframe_delta(timeframe: str) -> pd.Timedelta:
    if timeframe not in TIMEFRAME_FREQ:
        raise TimeframeValidationError(
            f"timeframe must be one of {list(TIMEFRAME_FREQ)}, got {timeframe!r}", fields={"timeframe": timeframe}
        )
    return pd.Timedelta(TIMEFRAME_FREQ[timeframe])


def to_utc_naive(value: Any) -> pd.Timestamp:
    """Coerce epoch milliseconds, ISO strings or datetimes to a UTC-naive Timestamp.

    Naive inputs are taken to be UTC already.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = pd.to_datetime(value, unit="ms", utc=True)
    else:
        ts = pd.Timestamp(value)
        if ts.tzinfo is None:
            return ts
    return ts.tz_convert("UTC").tz_localize(None)


def to_pydatetime(ts: Any) -> datetime:
    return pd.Timestamp(ts).to_pydatetime()


def floor_to_timeframe(ts: pd.Timestamp, timeframe: str) -> pd.Timestamp:
    timeframe_delta(timeframe)
    return pd.Timestamp(ts).floor(TIMEFRAME_FREQ[timeframe])


def align_range(start: pd.Timestamp, end: pd.Timestamp, timeframe: str) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """Widen [start, end) outward to whole buckets of timeframe."""
    lo = floor_to_timeframe(start, timeframe)
    hi = floor_to_timeframe(end, timeframe)
    if hi < end:
        hi = hi + timeframe_delta(timeframe)
    return lo, hi


def epoch_ms(ts: pd.Timestamp) -> int:
    return int(pd.Timestamp(ts).value // 1_000_000)


def empty_candle_frame() -> pd.DataFrame:
    return pd.DataFrame(columns=CANDLE_COLUMNS).astype(
        {
            "market_key": object,
            "bucket_start": "datetime64[ns]",
            "open": float,
            "high": float,
            "low": float,
            "close": float,
            "volume": float,
            "trade_count": "int64",
        }
    )


def ticks_to_dataframe(ticks: List[Tick]) -> pd.DataFrame:
    """Map ticks into the canonical frame, sorted by (timestamp, arrival_seq)."""
    if not ticks:
        return pd.DataFrame(columns=TICK_COLUMNS)
    df = pd.DataFrame(
        [
            {
                "event_id": t.event_id,
                "market_key": t.market_key,
                "symbol": t.symbol,
                "timestamp": pd.Timestamp(t.timestamp),
                "price": float(t.price),
                "size": float(t.size),
                "side": t.side,
                "arrival_seq": t.arrival_seq if t.arrival_seq is not None else i,
            }
            for i, t in enumerate(ticks)
        ]
    )
    return df.sort_values(["timestamp", "arrival_seq"], kind="mergesort").reset_index(drop=True)


def candles_from_dataframe(df: pd.DataFrame, timeframe: str) -> List[Candle]:
    return [
        Candle(
            market_key=str(r.market_key),
            timeframe=timeframe,
            bucket_start=pd.Timestamp(r.bucket_start),
            open=float(r.open),
            high=float(r.high),
            low=float(r.low),
            close=float(r.close),
            volume=float(r.volume),
            trade_count=int(r.trade_count),
        )
        for r in df.itertuples(index=False)
    ]


def points_from_dataframe(df: pd.DataFrame) -> List[Point]:
    return [
        Point(
            market_key=str(r.market_key),
            series_key=str(r.series_key),
            ts=pd.Timestamp(r.ts),
            x=float(r.x),
            value=float(r.value),
            version=int(r.version),
            arrival_seq=int(r.arrival_seq) if pd.notna(r.arrival_seq) else None,
        )
        for r in df.itertuples(index=False)
    ]


def compute_current_minute(now: datetime | None = None) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """Return (current_bucket, last_closed_bucket) for the 1-minute timeframe, UTC-naive."""
    now = now or datetime.now(timezone.utc)
    current = to_utc_naive(now).floor("min")
    return current, current - pd.Timedelta(minutes=1)
