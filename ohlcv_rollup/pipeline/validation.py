from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import pandas as pd

from .errors import PointValidationError, TickValidationError
from .models import SIDES, TIMEFRAME_FREQ, epoch_ms, to_utc_naive


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: str
    validated_rows: int


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _timestamp(value: Any) -> Optional[pd.Timestamp]:
    if value is None:
        return None
    try:
        ts = to_utc_naive(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return None if pd.isna(ts) else ts


def derive_event_id(key: str, ts: pd.Timestamp, price: float, size: float, side: str) -> str:
    """Stable id for a tick payload that arrived without one, so redeliveries collide."""
    raw = f"{key}|{epoch_ms(ts)}|{price!r}|{size!r}|{side}"
    return "derived:" + hashlib.sha1(raw.encode("utf-8")).hexdigest()


def validate_tick(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Check a raw tick payload and return a normalized row.

    The row has event_id, market_key (may be None), symbol (upper-cased, may be
    None), timestamp, price, size and side. Raises TickValidationError.
    """
    market_key = _clean_str(payload.get("market_key"))
    symbol = _clean_str(payload.get("symbol"))
    symbol = symbol.upper() if symbol else None
    ident = {"market_key": market_key, "symbol": symbol, "timestamp": payload.get("timestamp")}

    if not market_key and not symbol:
        raise TickValidationError("market_key or symbol is required", ident)
    ts = _timestamp(payload.get("timestamp"))
    if ts is None:
        raise TickValidationError("timestamp missing or unparseable", ident)
    price = _finite(payload.get("price"))
    if price is None or price <= 0:
        raise TickValidationError(f"price must be finite and > 0, got {payload.get('price')!r}", ident)
    size = _finite(payload.get("size"))
    if size is None or size < 0:
        raise TickValidationError(f"size must be finite and >= 0, got {payload.get('size')!r}", ident)
    side = (_clean_str(payload.get("side")) or "").lower()
    if side not in SIDES:
        raise TickValidationError(f"side must be one of {SIDES}, got {payload.get('side')!r}", ident)

    event_id = _clean_str(payload.get("event_id")) or derive_event_id(market_key or symbol, ts, price, size, side)
    return {
        "event_id": event_id,
        "market_key": market_key,
        "symbol": symbol,
        "timestamp": ts,
        "price": price,
        "size": size,
        "side": side,
    }


def validate_point(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Check a raw point payload and return a normalized row. Raises PointValidationError.

    x defaults to the timestamp in epoch milliseconds, version to 1.
    """
    market_key = _clean_str(payload.get("market_key"))
    series_key = _clean_str(payload.get("series_key"))
    ident = {"market_key": market_key, "series_key": series_key, "timestamp": payload.get("timestamp")}

    if not market_key:
        raise PointValidationError("market_key is required", ident)
    if not series_key:
        raise PointValidationError("series_key is required", ident)
    ts = _timestamp(payload.get("timestamp"))
    if ts is None:
        raise PointValidationError("timestamp missing or unparseable", ident)
    value = _finite(payload.get("value"))
    if value is None:
        raise PointValidationError(f"value must be finite, got {payload.get('value')!r}", ident)
    if payload.get("x") is None:
        x = float(epoch_ms(ts))
    else:
        x = _finite(payload.get("x"))
        if x is None:
            raise PointValidationError(f"x must be finite, got {payload.get('x')!r}", ident)
    raw_version = payload.get("version", 1)
    if raw_version is None:
        raw_version = 1
    if isinstance(raw_version, bool) or _finite(raw_version) is None or float(raw_version) != int(float(raw_version)):
        raise PointValidationError(f"version must be a non-negative integer, got {raw_version!r}", ident)
    version = int(float(raw_version))
    if version < 0:
        raise PointValidationError(f"version must be a non-negative integer, got {raw_version!r}", ident)

    return {
        "market_key": market_key,
        "series_key": series_key,
        "ts": ts,
        "x": x,
        "value": value,
        "version": version,
        "source": _clean_str(payload.get("source")),
    }


def validate_candles(df: pd.DataFrame, timeframe: str = "1m") -> ValidationResult:
    """Check OHLC invariants and bucket spacing for one market's candles.

    - low <= min(open, close), high >= max(open, close), low <= high
    - volume >= 0, trade_count >= 0
    - bucket starts strictly increasing and aligned to the timeframe
    """
    if df.empty:
        return ValidationResult(True, "no candles", 0)
    if timeframe not in TIMEFRAME_FREQ:
        return ValidationResult(False, f"unknown timeframe {timeframe}", 0)

    for col in ["open", "high", "low", "close", "volume"]:
        if df[col].isna().any():
            return ValidationResult(False, f"NaN in column {col}", 0)

    body_low = df[["open", "close"]].min(axis=1)
    body_high = df[["open", "close"]].max(axis=1)
    if (df["low"] > body_low).any():
        return ValidationResult(False, "low above min(open, close)", 0)
    if (df["high"] < body_high).any():
        return ValidationResult(False, "high below max(open, close)", 0)
    if (df["low"] > df["high"]).any():
        return ValidationResult(False, "low above high", 0)
    if (df["volume"] < 0).any():
        return ValidationResult(False, "negative volume", 0)
    if (df["trade_count"] < 0).any():
        return ValidationResult(False, "negative trade_count", 0)

    starts = pd.to_datetime(df["bucket_start"])
    if not starts.is_monotonic_increasing or starts.duplicated().any():
        return ValidationResult(False, "bucket_start not strictly increasing", 0)
    if not (starts.dt.floor(TIMEFRAME_FREQ[timeframe]) == starts).all():
        return ValidationResult(False, f"bucket_start not aligned to {timeframe}", 0)

    return ValidationResult(True, "validated", len(df))


def compare_candles(left: pd.DataFrame, right: pd.DataFrame, tolerance: float = 0.0) -> ValidationResult:
    """Check two candle frames cover the same buckets with matching values.

    tolerance=0 demands exact equality, which is what the materialized and
    on-read rollups must satisfy.
    """
    if len(left) != len(right):
        return ValidationResult(False, f"row count mismatch ({len(left)} vs {len(right)})", 0)
    if left.empty:
        return ValidationResult(True, "both empty", 0)

    l = left.sort_values("bucket_start").reset_index(drop=True)
    r = right.sort_values("bucket_start").reset_index(drop=True)
    if [pd.Timestamp(t) for t in l["bucket_start"]] != [pd.Timestamp(t) for t in r["bucket_start"]]:
        return ValidationResult(False, "bucket_start mismatch", 0)

    for col in ["open", "high", "low", "close", "volume", "trade_count"]:
        diff = (l[col].astype(float) - r[col].astype(float)).abs().max()
        if pd.isna(diff):
            return ValidationResult(False, f"NaN in column {col}", 0)
        if diff > tolerance:
            return ValidationResult(False, f"mismatch in {col} (max diff {diff})", 0)

    return ValidationResult(True, "validated", len(l))
