from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from ohlcv_rollup.pipeline.config import HIGHER_TIMEFRAMES, PipelineConfig


def test_defaults():
    cfg = PipelineConfig(db_path=Path("x.duckdb"))
    assert cfg.strategy == "dynamic"
    assert not cfg.materialized
    assert cfg.timeframes == HIGHER_TIMEFRAMES
    assert cfg.marker_ttl == pd.Timedelta(minutes=30)


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("ROLLUP_DUCKDB_PATH", str(tmp_path / "env.duckdb"))
    monkeypatch.setenv("ROLLUP_STRATEGY", "materialized")
    monkeypatch.setenv("ROLLUP_TIMEFRAMES", "5m, 1h")
    monkeypatch.setenv("ROLLUP_MARKER_TTL_MINUTES", "5")
    cfg = PipelineConfig.from_env()
    assert cfg.db_path == tmp_path / "env.duckdb"
    assert cfg.materialized
    assert cfg.timeframes == ("5m", "1h")
    assert cfg.marker_ttl == pd.Timedelta(minutes=5)

    # explicit arguments win over the environment
    cfg = PipelineConfig.from_env(db_path=tmp_path / "arg.duckdb", strategy="dynamic")
    assert cfg.db_path == tmp_path / "arg.duckdb"
    assert cfg.strategy == "dynamic"


def test_rejects_bad_values():
    with pytest.raises(ValueError):
        PipelineConfig(db_path=Path("x.duckdb"), strategy="cascading")
    with pytest.raises(ValueError):
        PipelineConfig(db_path=Path("x.duckdb"), timeframes=("1m",))
