from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import duckdb  # type: ignore
import numpy as np
import pandas as pd
import pytest

from ohlcv_rollup.pipeline import api, db
from ohlcv_rollup.pipeline.errors import PointValidationError, TickValidationError, TimeframeValidationError
from ohlcv_rollup.pipeline.validation import compare_candles


DAY = pd.Timestamp("2024-01-01")


def _boom(*args, **kwargs):
    raise duckdb.IOException("simulated store outage")


def test_ingest_tick_returns_live_minute_candle(cfg, tick):
    for ts, price in [("2024-01-01 10:00:05", 100.0), ("2024-01-01 10:00:20", 105.0), ("2024-01-01 10:00:50", 98.0)]:
        res = api.ingest_tick(cfg, tick(ts, price))
    assert not res.duplicate
    assert not res.deferred_identity
    c = res.candle
    assert c.market_key == "mk-1"
    assert c.timeframe == "1m"
    assert c.bucket_start == pd.Timestamp("2024-01-01 10:00")
    assert (c.open, c.high, c.low, c.close, c.volume, c.trade_count) == (100.0, 105.0, 98.0, 98.0, 3.0, 3)

    candles = api.query_candles(cfg, "mk-1", "1m", DAY, DAY + pd.Timedelta(days=1))
    assert candles == [c]


def test_redelivered_tick_is_not_double_counted(cfg, tick):
    payload = tick("2024-01-01 10:00:05", 100.0, size=2.0)
    first = api.ingest_tick(cfg, payload)
    second = api.ingest_tick(cfg, dict(payload))
    assert not first.duplicate
    assert second.duplicate
    assert second.event_id == first.event_id
    assert second.candle.volume == 2.0
    assert second.candle.trade_count == 1

    explicit = tick("2024-01-01 10:00:06", 101.0, event_id="tx-9:1")
    api.ingest_tick(cfg, explicit)
    assert api.ingest_tick(cfg, explicit).duplicate
    assert db.health_stats(cfg.db_path).tick_count == 2


def test_rejected_tick_is_not_stored(cfg, tick):
    with pytest.raises(TickValidationError):
        api.ingest_tick(cfg, tick("2024-01-01 10:00:05", 0.0))
    with pytest.raises(TickValidationError):
        api.ingest_tick(cfg, {"timestamp": "2024-01-01 10:00:05", "price": 1.0, "size": 1.0, "side": "buy"})
    assert api.query_candles(cfg, "mk-1", "1m", DAY, DAY + pd.Timedelta(days=1)) == []


def test_batch_ingest_counts(cfg, tick):
    payloads = [
        tick("2024-01-01 10:00:05", 100.0, event_id="a"),
        tick("2024-01-01 10:01:05", 101.0, event_id="b"),
        tick("2024-01-01 10:01:06", -1.0, event_id="bad"),
        tick("2024-01-01 10:01:07", 102.0, event_id="b"),
        tick("2024-01-01 10:02:00", 50.0, market_key="mk-2", event_id="c"),
    ]
    res = api.ingest_ticks(cfg, payloads)
    assert res.accepted == 3
    assert res.duplicates == 1
    assert len(res.rejected) == 1
    assert res.rejected[0].fields["market_key"] == "mk-1"
    assert res.buckets_refreshed == 3
    assert res.refresh_failures == 0
    assert sorted(res.candles["market_key"].unique()) == ["mk-1", "mk-2"]

    assert api.ingest_ticks(cfg, []).accepted == 0


def test_query_candles_higher_timeframe_and_inclusive_end(cfg, tick):
    api.ingest_ticks(
        cfg,
        [
            tick("2024-01-01 10:00:30", 100.0, size=5.0),
            tick("2024-01-01 10:01:30", 102.0, size=3.0),
            tick("2024-01-01 10:02:30", 101.0, size=4.0),
            tick("2024-01-01 10:05:00", 90.0, size=1.0),
        ],
    )
    five = api.query_candles(cfg, "mk-1", "5m", "2024-01-01 10:00", "2024-01-01 10:04:59")
    assert len(five) == 1
    c = five[0]
    assert (c.open, c.close, c.high, c.low, c.volume, c.trade_count) == (100.0, 101.0, 102.0, 100.0, 12.0, 3)

    # the bucket holding `end` is returned even though it is still forming
    both = api.query_candles(cfg, "mk-1", "5m", "2024-01-01 10:00", "2024-01-01 10:05")
    assert [x.bucket_start for x in both] == [pd.Timestamp("2024-01-01 10:00"), pd.Timestamp("2024-01-01 10:05")]

    assert api.query_candles(cfg, "mk-404", "5m", DAY, DAY + pd.Timedelta(days=1)) == []
    with pytest.raises(TimeframeValidationError) as excinfo:
        api.query_candles(cfg, "mk-1", "3m", DAY, DAY)
    assert excinfo.value.fields == {"timeframe": "3m"}


def test_materialized_and_dynamic_agree(cfg, mat_cfg, tick):
    rng = np.random.default_rng(11)
    n = 150
    offsets = rng.integers(0, 150 * 60 * 1000, size=n)
    prices = np.round(rng.uniform(95, 105, size=n), 4)
    sizes = np.round(rng.uniform(0, 2, size=n), 4)
    payloads = [
        tick(DAY + pd.Timedelta(hours=23) + pd.Timedelta(milliseconds=int(o)), float(p), size=float(s), event_id=f"t{i}")
        for i, (o, p, s) in enumerate(zip(offsets, prices, sizes))
    ]
    # out-of-order arrival across two batches
    api.ingest_ticks(mat_cfg, payloads[1::2])
    api.ingest_ticks(mat_cfg, payloads[0::2])

    start, end = DAY, DAY + pd.Timedelta(days=2)
    for tf in mat_cfg.timeframes:
        materialized = api.materialized_candles(mat_cfg, "mk-1", tf, start, end)
        dynamic = api.dynamic_candles(mat_cfg, "mk-1", tf, start, end)
        assert not dynamic.empty
        res = compare_candles(materialized, dynamic)
        assert res.ok, f"{tf}: {res.reason}"
        assert api.query_candles(mat_cfg, "mk-1", tf, start, end) == api.query_candles(cfg, "mk-1", tf, start, end)

    daily = api.query_candles(cfg, "mk-1", "1d", start, end)
    assert [c.bucket_start for c in daily] == [DAY, DAY + pd.Timedelta(days=1)]
    assert sum(c.trade_count for c in daily) == n
    assert sum(c.volume for c in daily) == pytest.approx(float(sizes.sum()))


def test_refresh_failure_keeps_raw_tick_and_recovers(cfg, tick, monkeypatch):
    monkeypatch.setattr(api, "refresh_buckets", _boom)
    res = api.ingest_tick(cfg, tick("2024-01-01 10:00:05", 100.0))
    assert res.candle is None
    assert db.health_stats(cfg.db_path).tick_count == 1
    assert api.query_candles(cfg, "mk-1", "1m", DAY, DAY + pd.Timedelta(days=1)) == []

    failed = api.run_aggregation_pass(cfg)
    assert failed.failures == 1
    assert failed.watermark == 0

    monkeypatch.undo()
    recovered = api.run_aggregation_pass(cfg)
    assert recovered.failures == 0
    assert recovered.markets == 1
    assert recovered.buckets == 1
    assert recovered.watermark > 0
    candles = api.query_candles(cfg, "mk-1", "1m", DAY, DAY + pd.Timedelta(days=1))
    assert [c.close for c in candles] == [100.0]

    idle = api.run_aggregation_pass(cfg)
    assert (idle.markets, idle.buckets, idle.watermark) == (0, 0, recovered.watermark)


def test_batch_refresh_failure_is_counted(cfg, tick, monkeypatch):
    monkeypatch.setattr(api, "refresh_buckets", _boom)
    res = api.ingest_ticks(cfg, [tick("2024-01-01 10:00:05", 100.0), tick("2024-01-01 10:00:06", 100.0, market_key="mk-2")])
    assert res.accepted == 2
    assert res.refresh_failures == 2
    assert res.buckets_refreshed == 0
    assert res.candles.empty


def test_point_versions_resolve_to_highest(cfg, point):
    ts = "2024-01-01 10:00:00"
    r1 = api.ingest_point(cfg, point(ts, 10.0, version=1))
    r2 = api.ingest_point(cfg, point(ts, 99.0, version=2))
    r3 = api.ingest_point(cfg, point(ts, 5.0, version=1))
    assert r1.arrival_seq < r2.arrival_seq < r3.arrival_seq
    assert r1.latest.value == 10.0
    assert r2.latest.value == 99.0
    assert r3.latest.value == 99.0
    assert r3.latest.version == 2

    # reverse submission order in another market
    api.ingest_point(cfg, point(ts, 99.0, version=2, market_key="mk-2"))
    assert api.ingest_point(cfg, point(ts, 10.0, version=1, market_key="mk-2")).latest.value == 99.0

    points = api.query_points(cfg, "mk-1", "tvl")
    assert len(points) == 1
    assert points[0].natural_key == ("mk-1", "tvl", pd.Timestamp(ts), float(pd.Timestamp(ts).value // 1_000_000))


def test_query_points_range_is_inclusive(cfg, point):
    for minute, value in [(0, 1.0), (1, 2.0), (2, 3.0)]:
        api.ingest_point(cfg, point(DAY + pd.Timedelta(minutes=minute), value))
    api.ingest_point(cfg, point(DAY, 7.0, series_key="volume"))
    got = api.query_points(cfg, "mk-1", "tvl", DAY, DAY + pd.Timedelta(minutes=1))
    assert [p.value for p in got] == [1.0, 2.0]
    assert [p.value for p in api.query_points(cfg, "mk-1", "volume")] == [7.0]


def test_point_validation(cfg, point):
    with pytest.raises(PointValidationError):
        api.ingest_point(cfg, point("2024-01-01 10:00:00", float("nan")))


def test_metric_series(cfg, point):
    api.ingest_point(cfg, point("2024-01-01 10:00:10", 10.0))
    api.ingest_point(cfg, point("2024-01-01 10:00:40", 30.0))
    api.ingest_point(cfg, point("2024-01-01 10:01:05", 8.0))
    # a newer version of the 10:00:10 point moves the minute's average
    api.ingest_point(cfg, point("2024-01-01 10:00:10", 20.0, version=2))

    last = api.query_metric_series(cfg, "mk-1", "tvl")
    assert last["ts"].tolist() == [pd.Timestamp("2024-01-01 10:00"), pd.Timestamp("2024-01-01 10:01")]
    assert last["value"].tolist() == [20.0, 8.0]

    avg = api.query_metric_series(cfg, "mk-1", "tvl", agg="avg")
    assert avg["value"].tolist() == [25.0, 8.0]

    windowed = api.query_metric_series(cfg, "mk-1", "tvl", timeframe="5m", agg="max", sma=2)
    assert windowed["value"].tolist() == [19.0]
    assert windowed["sma"].tolist() == [19.0]

    # start is floored to its minute
    assert api.query_metric_series(cfg, "mk-1", "tvl", start="2024-01-01 10:01:30")["value"].tolist() == [8.0]
    assert api.query_metric_series(cfg, "mk-1", "tvl", start="2024-01-01 10:02").empty
    assert api.query_metric_series(cfg, "mk-1", "tvl", limit=1)["value"].tolist() == [8.0]


def test_metric_merge_failure_leaves_raw_point(cfg, point, monkeypatch):
    monkeypatch.setattr(api, "refresh_point_buckets", _boom)
    res = api.ingest_point(cfg, point("2024-01-01 10:00:10", 10.0))
    assert res.latest is None
    monkeypatch.undo()
    with db.connection(cfg.db_path) as con:
        raw = db.read_points_raw(con, "mk-1", DAY, DAY + pd.Timedelta(days=1))
        assert db.read_pending(con, db.PENDING_POINTS)["bucket_start"].tolist() == [pd.Timestamp("2024-01-01 10:00")]
    assert raw["value"].tolist() == [10.0]
    assert api.query_points(cfg, "mk-1", "tvl") == []

    # the scheduled pass re-merges the point without a manual backfill
    res = api.run_aggregation_pass(cfg)
    assert (res.failures, res.point_buckets) == (0, 1)
    assert res.points_watermark == 1
    assert [p.value for p in api.query_points(cfg, "mk-1", "tvl")] == [10.0]
    assert api.query_metric_series(cfg, "mk-1", "tvl")["value"].tolist() == [10.0]
    with db.connection(cfg.db_path) as con:
        assert db.read_pending(con, db.PENDING_POINTS).empty


def _conflicts_then(real, conflicts):
    calls = []

    def flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) <= conflicts:
            raise duckdb.TransactionException("TransactionContext Error: Conflict on tuple deletion!")
        return real(*args, **kwargs)

    return flaky, calls


def test_point_merge_retries_write_conflicts(cfg, point, monkeypatch):
    api.ingest_point(cfg, point("2024-01-01 10:00:00", 1.0, version=1))
    flaky, calls = _conflicts_then(api.refresh_point_buckets, api.WRITE_ATTEMPTS - 1)
    monkeypatch.setattr(api, "refresh_point_buckets", flaky)
    res = api.ingest_point(cfg, point("2024-01-01 10:00:00", 2.0, version=2))
    assert len(calls) == api.WRITE_ATTEMPTS
    assert (res.latest.version, res.latest.value) == (2, 2.0)


def test_point_merge_gives_up_after_bounded_attempts(cfg, point, monkeypatch):
    api.ingest_point(cfg, point("2024-01-01 10:00:00", 1.0, version=1))
    flaky, calls = _conflicts_then(api.refresh_point_buckets, api.WRITE_ATTEMPTS)
    monkeypatch.setattr(api, "refresh_point_buckets", flaky)
    res = api.ingest_point(cfg, point("2024-01-01 10:00:00", 2.0, version=2))
    assert len(calls) == api.WRITE_ATTEMPTS
    assert res.latest is None
    assert api.query_points(cfg, "mk-1", "tvl")[0].version == 1

    monkeypatch.undo()
    api.run_aggregation_pass(cfg)
    assert api.query_points(cfg, "mk-1", "tvl")[0].version == 2


def test_candle_refresh_retries_write_conflicts(cfg, tick, monkeypatch):
    flaky, calls = _conflicts_then(api.refresh_buckets, 2)
    monkeypatch.setattr(api, "refresh_buckets", flaky)
    res = api.ingest_tick(cfg, tick("2024-01-01 10:00:05", 100.0))
    assert len(calls) == 3
    assert res.candle.trade_count == 1


def test_pass_picks_up_tick_committed_below_watermark(cfg, tick, monkeypatch):
    # tick A fails its own refresh, while a pass has already moved the
    # watermark past A's arrival_seq (A committed after a later tick)
    monkeypatch.setattr(api, "refresh_buckets", _boom)
    api.ingest_tick(cfg, tick("2024-01-01 10:00:05", 100.0))
    monkeypatch.undo()
    api.ingest_tick(cfg, tick("2024-01-01 10:07:00", 90.0))
    with db.transaction(cfg.db_path) as con:
        db.set_state(con, db.AGGREGATION_WATERMARK, 2)

    res = api.run_aggregation_pass(cfg)
    assert (res.failures, res.buckets, res.watermark) == (0, 1, 2)
    candles = api.query_candles(cfg, "mk-1", "1m", DAY, DAY + pd.Timedelta(days=1))
    assert [(c.bucket_start, c.close) for c in candles] == [
        (pd.Timestamp("2024-01-01 10:00"), 100.0),
        (pd.Timestamp("2024-01-01 10:07"), 90.0),
    ]
    with db.connection(cfg.db_path) as con:
        assert db.read_pending(con, db.PENDING_CANDLES).empty


def test_concurrent_writers_converge(cfg, tick, point):
    ts = pd.Timestamp("2024-01-01 10:00:00")
    api.ingest_tick(cfg, tick(ts, 100.0, event_id="seed"))
    api.ingest_point(cfg, point(ts, 1.0, version=1))

    n = 16
    start = threading.Barrier(2 * n)

    def write_tick(i):
        start.wait()
        api.ingest_tick(cfg, tick(ts + pd.Timedelta(seconds=i + 1), 100.0 + i, size=0.5, event_id=f"t{i}"))

    def write_point(i):
        start.wait()
        api.ingest_point(cfg, point(ts, float(i + 2), version=i + 2))

    with ThreadPoolExecutor(max_workers=2 * n) as pool:
        futures = [pool.submit(write_tick, i) for i in range(n)] + [pool.submit(write_point, i) for i in range(n)]
        for f in futures:
            f.result()

    res = api.run_aggregation_pass(cfg)
    assert res.failures == 0

    with db.connection(cfg.db_path) as con:
        raw = db.read_ticks(con, "mk-1", DAY, DAY + pd.Timedelta(days=1))
        assert db.read_pending(con, db.PENDING_CANDLES).empty
        assert db.read_pending(con, db.PENDING_POINTS).empty
    candles = api.query_candles(cfg, "mk-1", "1m", DAY, DAY + pd.Timedelta(days=1))
    assert len(candles) == 1
    assert candles[0].trade_count == len(raw) == n + 1
    assert candles[0].volume == pytest.approx(float(raw["size"].sum()))

    latest = api.query_points(cfg, "mk-1", "tvl")
    assert [(p.version, p.value) for p in latest] == [(n + 1, float(n + 1))]
    assert api.query_metric_series(cfg, "mk-1", "tvl")["value"].tolist() == [float(n + 1)]
