from __future__ import annotations

import pandas as pd
import pytest

from ohlcv_rollup.pipeline.config import STRATEGY_MATERIALIZED, PipelineConfig


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "rollup_test.duckdb"


@pytest.fixture
def cfg(db_path):
    return PipelineConfig(db_path=db_path)


@pytest.fixture
def mat_cfg(db_path):
    return PipelineConfig(db_path=db_path, strategy=STRATEGY_MATERIALIZED)


@pytest.fixture
def tick():
    """Factory for raw tick payloads; market_key defaults to mk-1 unless a symbol is given."""

    def _tick(ts, price, size=1.0, side="buy", market_key="mk-1", **extra):
        payload = {"timestamp": pd.Timestamp(ts), "price": price, "size": size, "side": side}
        if market_key is not None and "symbol" not in extra:
            payload["market_key"] = market_key
        payload.update(extra)
        return payload

    return _tick


@pytest.fixture
def point():
    def _point(ts, value, version=1, series_key="tvl", market_key="mk-1", **extra):
        payload = {
            "market_key": market_key,
            "series_key": series_key,
            "timestamp": pd.Timestamp(ts),
            "value": value,
            "version": version,
        }
        payload.update(extra)
        return payload

    return _point
