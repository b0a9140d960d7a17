from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

import pandas as pd


STRATEGY_DYNAMIC = "dynamic"
STRATEGY_MATERIALIZED = "materialized"
STRATEGIES = (STRATEGY_DYNAMIC, STRATEGY_MATERIALIZED)

BASE_TIMEFRAME = "1m"
HIGHER_TIMEFRAMES: Tuple[str, ...] = ("5m", "15m", "30m", "1h", "4h", "1d")

DEFAULT_DB_PATH = Path("data/ohlcv_rollup.duckdb")


@dataclass(frozen=True)
class PipelineConfig:
    db_path: Path
    strategy: str = STRATEGY_DYNAMIC
    # higher timeframes kept in candles_rollup when strategy is materialized
    timeframes: Tuple[str, ...] = HIGHER_TIMEFRAMES
    marker_ttl: pd.Timedelta = field(default_factory=lambda: pd.Timedelta(minutes=30))

    def __post_init__(self) -> None:
        if self.strategy not in STRATEGIES:
            raise ValueError(f"strategy must be one of {STRATEGIES}, got {self.strategy!r}")
        unknown = [tf for tf in self.timeframes if tf not in HIGHER_TIMEFRAMES]
        if unknown:
            raise ValueError(f"unsupported rollup timeframes: {unknown}")

    @property
    def materialized(self) -> bool:
        return self.strategy == STRATEGY_MATERIALIZED

    @classmethod
    def from_env(cls, db_path: Optional[Path] = None, strategy: Optional[str] = None) -> "PipelineConfig":
        """Build a config from explicit values, falling back to ROLLUP_* environment variables."""
        path = db_path or Path(os.getenv("ROLLUP_DUCKDB_PATH", str(DEFAULT_DB_PATH)))
        strat = strategy or os.getenv("ROLLUP_STRATEGY", STRATEGY_DYNAMIC)
        raw_tfs = os.getenv("ROLLUP_TIMEFRAMES", "")
        tfs = tuple(t.strip() for t in raw_tfs.split(",") if t.strip()) or HIGHER_TIMEFRAMES
        ttl_min = float(os.getenv("ROLLUP_MARKER_TTL_MINUTES", "30"))
        return cls(db_path=path, strategy=strat, timeframes=tfs, marker_ttl=pd.Timedelta(minutes=ttl_min))
