from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

import duckdb  # type: ignore
import pandas as pd

from .models import CANDLE_COLUMNS, POINT_COLUMNS, to_pydatetime


TICKS_TABLE = "ticks_raw"
POINTS_TABLE = "points_raw"
IDENTITY_TABLE = "identity_map"
CANDLES_1M_TABLE = "candles_1m"
CANDLES_ROLLUP_TABLE = "candles_rollup"
POINTS_LATEST_TABLE = "points_latest"
METRIC_1M_TABLE = "metric_series_1m"
MARKERS_TABLE = "backfill_markers"
STATE_TABLE = "pipeline_state"
PENDING_TABLE = "pending_refresh"

AGGREGATION_WATERMARK = "aggregation_watermark"
POINTS_WATERMARK = "points_watermark"

# pending_refresh kinds
PENDING_CANDLES = "candles"
PENDING_POINTS = "points"

# market key column per table, in purge order (derived tables first)
MARKET_TABLES = [
    CANDLES_ROLLUP_TABLE,
    CANDLES_1M_TABLE,
    METRIC_1M_TABLE,
    POINTS_LATEST_TABLE,
    PENDING_TABLE,
    POINTS_TABLE,
    TICKS_TABLE,
    IDENTITY_TABLE,
    MARKERS_TABLE,
]

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS seq_ticks_raw START 1;",
    "CREATE SEQUENCE IF NOT EXISTS seq_points_raw START 1;",
    f"""
    CREATE TABLE IF NOT EXISTS {TICKS_TABLE} (
      event_id VARCHAR NOT NULL,
      market_key VARCHAR NOT NULL,
      symbol VARCHAR,
      timestamp TIMESTAMP NOT NULL,
      price DOUBLE NOT NULL,
      size DOUBLE NOT NULL,
      side VARCHAR NOT NULL,
      arrival_seq BIGINT DEFAULT nextval('seq_ticks_raw'),
      ingested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{TICKS_TABLE}_event ON {TICKS_TABLE}(event_id);",
    f"""
    CREATE TABLE IF NOT EXISTS {POINTS_TABLE} (
      market_key VARCHAR NOT NULL,
      series_key VARCHAR NOT NULL,
      ts TIMESTAMP NOT NULL,
      x DOUBLE NOT NULL,
      value DOUBLE NOT NULL,
      version BIGINT NOT NULL,
      source VARCHAR,
      arrival_seq BIGINT DEFAULT nextval('seq_points_raw'),
      ingested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {IDENTITY_TABLE} (
      symbol VARCHAR NOT NULL,
      market_key VARCHAR NOT NULL,
      resolved_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{IDENTITY_TABLE}_symbol ON {IDENTITY_TABLE}(symbol);",
    f"""
    CREATE TABLE IF NOT EXISTS {CANDLES_1M_TABLE} (
      market_key VARCHAR NOT NULL,
      bucket_start TIMESTAMP NOT NULL,
      open DOUBLE,
      high DOUBLE,
      low DOUBLE,
      close DOUBLE,
      volume DOUBLE,
      trade_count BIGINT,
      updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {CANDLES_ROLLUP_TABLE} (
      market_key VARCHAR NOT NULL,
      timeframe VARCHAR NOT NULL,
      bucket_start TIMESTAMP NOT NULL,
      open DOUBLE,
      high DOUBLE,
      low DOUBLE,
      close DOUBLE,
      volume DOUBLE,
      trade_count BIGINT,
      updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {POINTS_LATEST_TABLE} (
      market_key VARCHAR NOT NULL,
      series_key VARCHAR NOT NULL,
      ts TIMESTAMP NOT NULL,
      x DOUBLE NOT NULL,
      value DOUBLE,
      version BIGINT,
      arrival_seq BIGINT
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {METRIC_1M_TABLE} (
      market_key VARCHAR NOT NULL,
      series_key VARCHAR NOT NULL,
      bucket_start TIMESTAMP NOT NULL,
      last_value DOUBLE,
      last_version BIGINT,
      avg_value DOUBLE,
      min_value DOUBLE,
      max_value DOUBLE,
      sample_count BIGINT
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {MARKERS_TABLE} (
      market_key VARCHAR NOT NULL,
      target VARCHAR NOT NULL,
      owner VARCHAR NOT NULL,
      started_at TIMESTAMP NOT NULL
    );
    """,
    f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{MARKERS_TABLE}_key ON {MARKERS_TABLE}(market_key, target);",
    f"""
    CREATE TABLE IF NOT EXISTS {STATE_TABLE} (
      name VARCHAR NOT NULL,
      value BIGINT NOT NULL
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {PENDING_TABLE} (
      market_key VARCHAR NOT NULL,
      kind VARCHAR NOT NULL,
      bucket_start TIMESTAMP NOT NULL,
      queued_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
]


@dataclass(frozen=True)
class AppendResult:
    inserted: pd.DataFrame
    duplicate_ids: List[str]


def _connect(db_path: Path):
    db_path.parent.mkdir(parents=True, exist_ok=True)
    con = duckdb.connect(str(db_path))
    con.execute("SET TimeZone='UTC';")
    return con


def _scan_name(prefix: str) -> str:
    # one name per call; fixed names race between concurrent connections
    return f"{prefix}_{uuid4().hex}"


def ensure_schema(db_path: Path) -> None:
    con = _connect(db_path)
    try:
        for stmt in _SCHEMA:
            con.execute(stmt)
    finally:
        con.close()


@contextmanager
def connection(db_path: Path) -> Iterator[duckdb.DuckDBPyConnection]:
    con = _connect(db_path)
    try:
        yield con
    finally:
        con.close()


@contextmanager
def transaction(db_path: Path) -> Iterator[duckdb.DuckDBPyConnection]:
    """Single-transaction connection; rolled back on any exception."""
    con = _connect(db_path)
    try:
        con.execute("BEGIN TRANSACTION;")
        try:
            yield con
        except BaseException:
            con.execute("ROLLBACK;")
            raise
        con.execute("COMMIT;")
    finally:
        con.close()


# ---------------------------------------------------------------------------
# Raw event store
# ---------------------------------------------------------------------------


def append_ticks_if_absent(con, ticks: pd.DataFrame) -> AppendResult:
    """Append ticks whose event_id is not yet on record.

    Expects columns event_id, market_key, symbol, timestamp, price, size, side.
    Returns the inserted rows (with arrival_seq) and the event ids skipped as redeliveries.
    """
    batch = ticks.drop_duplicates(subset=["event_id"], keep="first")
    dup_in_batch = ticks.loc[ticks.duplicated(subset=["event_id"], keep="first"), "event_id"].tolist()
    name = _scan_name("tmp_ticks")
    con.register(name, batch)
    try:
        existing = con.execute(
            f"""
            SELECT t.event_id
            FROM {name} t
            WHERE EXISTS (SELECT 1 FROM {TICKS_TABLE} d WHERE d.event_id = t.event_id)
            """
        ).fetchall()
        inserted = con.execute(
            f"""
            INSERT INTO {TICKS_TABLE} (event_id, market_key, symbol, timestamp, price, size, side)
            SELECT t.event_id, t.market_key, t.symbol, t.timestamp, t.price, t.size, t.side
            FROM {name} t
            WHERE NOT EXISTS (
                SELECT 1 FROM {TICKS_TABLE} d WHERE d.event_id = t.event_id
            )
            RETURNING event_id, market_key, timestamp, arrival_seq
            """
        ).fetch_df()
    finally:
        con.unregister(name)
    return AppendResult(inserted=inserted, duplicate_ids=[r[0] for r in existing] + dup_in_batch)


def append_points(con, points: pd.DataFrame) -> pd.DataFrame:
    """Append point versions unconditionally; returns them with their arrival_seq."""
    name = _scan_name("tmp_points")
    con.register(name, points)
    try:
        return con.execute(
            f"""
            INSERT INTO {POINTS_TABLE} (market_key, series_key, ts, x, value, version, source)
            SELECT market_key, series_key, ts, x, value, version, source FROM {name}
            RETURNING market_key, series_key, ts, x, value, version, arrival_seq
            """
        ).fetch_df()
    finally:
        con.unregister(name)


def read_ticks(con, market_key: str, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
    return con.execute(
        f"""
        SELECT event_id, market_key, symbol, timestamp, price, size, side, arrival_seq
        FROM {TICKS_TABLE}
        WHERE market_key = ? AND timestamp >= ? AND timestamp < ?
        ORDER BY timestamp, arrival_seq
        """,
        [market_key, to_pydatetime(start), to_pydatetime(end)],
    ).fetch_df()


def read_points_raw(con, market_key: str, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
    return con.execute(
        f"""
        SELECT {", ".join(POINT_COLUMNS)}
        FROM {POINTS_TABLE}
        WHERE market_key = ? AND ts >= ? AND ts < ?
        ORDER BY arrival_seq
        """,
        [market_key, to_pydatetime(start), to_pydatetime(end)],
    ).fetch_df()


def ticks_since(con, arrival_seq: int) -> pd.DataFrame:
    return con.execute(
        f"SELECT market_key, timestamp, arrival_seq FROM {TICKS_TABLE} WHERE arrival_seq > ?",
        [arrival_seq],
    ).fetch_df()


def points_since(con, arrival_seq: int) -> pd.DataFrame:
    return con.execute(
        f"SELECT market_key, ts, arrival_seq FROM {POINTS_TABLE} WHERE arrival_seq > ?",
        [arrival_seq],
    ).fetch_df()


def enqueue_refresh(con, kind: str, buckets: pd.DataFrame) -> None:
    """Queue (market_key, bucket_start) pairs for a derived refresh.

    Written in the same transaction as the raw rows that dirtied them; the
    refresh that folds those rows clears the entries in its own transaction.
    """
    if buckets.empty:
        return
    rows = buckets.loc[:, ["market_key", "bucket_start"]].drop_duplicates().assign(kind=kind)
    name = _scan_name("tmp_pending")
    con.register(name, rows)
    try:
        con.execute(
            f"INSERT INTO {PENDING_TABLE} (market_key, kind, bucket_start) SELECT market_key, kind, bucket_start FROM {name}"
        )
    finally:
        con.unregister(name)


def read_pending(con, kind: str) -> pd.DataFrame:
    return con.execute(
        f"SELECT DISTINCT market_key, bucket_start FROM {PENDING_TABLE} WHERE kind = ? ORDER BY market_key, bucket_start",
        [kind],
    ).fetch_df()


def clear_pending(con, market_key: str, kind: str, bucket_start: pd.Timestamp) -> None:
    con.execute(
        f"DELETE FROM {PENDING_TABLE} WHERE market_key = ? AND kind = ? AND bucket_start = ?",
        [market_key, kind, to_pydatetime(bucket_start)],
    )


def time_range_for_key(con, table: str, market_key: str, ts_col: str = "timestamp"):
    res = con.execute(
        f"SELECT MIN({ts_col}), MAX({ts_col}) FROM {table} WHERE market_key = ?", [market_key]
    ).fetchone()
    if res is None or res[0] is None:
        return None
    return pd.Timestamp(res[0]), pd.Timestamp(res[1])


def retag_raw_rows(con, symbol: str, market_key: str) -> Dict[str, int]:
    """Move raw rows stored under a bare symbol to the resolved market key."""
    counts = {}
    counts[TICKS_TABLE] = con.execute(
        f"SELECT COUNT(*) FROM {TICKS_TABLE} WHERE market_key = ?", [symbol]
    ).fetchone()[0]
    con.execute(
        f"UPDATE {TICKS_TABLE} SET market_key = ?, symbol = COALESCE(symbol, ?) WHERE market_key = ?",
        [market_key, symbol, symbol],
    )
    counts[POINTS_TABLE] = con.execute(
        f"SELECT COUNT(*) FROM {POINTS_TABLE} WHERE market_key = ?", [symbol]
    ).fetchone()[0]
    con.execute(f"UPDATE {POINTS_TABLE} SET market_key = ? WHERE market_key = ?", [market_key, symbol])
    return {k: int(v) for k, v in counts.items()}


# ---------------------------------------------------------------------------
# Derived tables
# ---------------------------------------------------------------------------


def read_candles_1m(con, market_key: str, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
    return con.execute(
        f"""
        SELECT {", ".join(CANDLE_COLUMNS)}
        FROM {CANDLES_1M_TABLE}
        WHERE market_key = ? AND bucket_start >= ? AND bucket_start < ?
        ORDER BY bucket_start
        """,
        [market_key, to_pydatetime(start), to_pydatetime(end)],
    ).fetch_df()


def read_candles_rollup(con, market_key: str, timeframe: str, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
    return con.execute(
        f"""
        SELECT {", ".join(CANDLE_COLUMNS)}
        FROM {CANDLES_ROLLUP_TABLE}
        WHERE market_key = ? AND timeframe = ? AND bucket_start >= ? AND bucket_start < ?
        ORDER BY bucket_start
        """,
        [market_key, timeframe, to_pydatetime(start), to_pydatetime(end)],
    ).fetch_df()


def read_points_latest(
    con,
    market_key: str,
    start: pd.Timestamp,
    end: pd.Timestamp,
    series_key: Optional[str] = None,
) -> pd.DataFrame:
    where = "market_key = ? AND ts >= ? AND ts < ?"
    params: list = [market_key, to_pydatetime(start), to_pydatetime(end)]
    if series_key is not None:
        where += " AND series_key = ?"
        params.append(series_key)
    return con.execute(
        f"""
        SELECT {", ".join(POINT_COLUMNS)}
        FROM {POINTS_LATEST_TABLE}
        WHERE {where}
        ORDER BY series_key, ts, x
        """,
        params,
    ).fetch_df()


def read_point_latest_for_key(con, market_key: str, series_key: str, ts: pd.Timestamp, x: float) -> pd.DataFrame:
    return con.execute(
        f"""
        SELECT {", ".join(POINT_COLUMNS)}
        FROM {POINTS_LATEST_TABLE}
        WHERE market_key = ? AND series_key = ? AND ts = ? AND x = ?
        """,
        [market_key, series_key, to_pydatetime(ts), float(x)],
    ).fetch_df()


def read_metric_minutes(con, market_key: str, series_key: str, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
    return con.execute(
        f"""
        SELECT *
        FROM {METRIC_1M_TABLE}
        WHERE market_key = ? AND series_key = ? AND bucket_start >= ? AND bucket_start < ?
        ORDER BY bucket_start
        """,
        [market_key, series_key, to_pydatetime(start), to_pydatetime(end)],
    ).fetch_df()


def replace_rows(con, table: str, where: str, params: list, rows: pd.DataFrame, columns: Iterable[str]) -> tuple[int, int]:
    """Delete the rows matching `where` and insert `rows` in their place.

    Callers run this inside a transaction so readers never see the gap.
    Returns (rows_deleted, rows_written).
    """
    deleted = con.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()[0]
    con.execute(f"DELETE FROM {table} WHERE {where}", params)
    if rows.empty:
        return int(deleted), 0
    cols = list(columns)
    name = _scan_name("tmp_rows")
    con.register(name, rows.loc[:, cols])
    try:
        con.execute(f"INSERT INTO {table} ({', '.join(cols)}) SELECT {', '.join(cols)} FROM {name}")
    finally:
        con.unregister(name)
    return int(deleted), len(rows)


def count_rows(con, table: str, where: str, params: list) -> int:
    return int(con.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()[0])


# ---------------------------------------------------------------------------
# Identity map
# ---------------------------------------------------------------------------


def lookup_market_keys(con, symbols: Iterable[str]) -> Dict[str, str]:
    wanted = sorted({s for s in symbols if s})
    if not wanted:
        return {}
    rows = con.execute(
        f"SELECT symbol, market_key FROM {IDENTITY_TABLE} WHERE symbol IN ({', '.join('?' for _ in wanted)})",
        wanted,
    ).fetchall()
    return {s: k for s, k in rows}


def insert_identity_if_absent(con, symbol: str, market_key: str) -> None:
    con.execute(
        f"""
        INSERT INTO {IDENTITY_TABLE} (symbol, market_key)
        SELECT ?, ?
        WHERE NOT EXISTS (SELECT 1 FROM {IDENTITY_TABLE} WHERE symbol = ?)
        """,
        [symbol, market_key, symbol],
    )


# ---------------------------------------------------------------------------
# Advisory backfill markers and pipeline state
# ---------------------------------------------------------------------------


def try_acquire_marker(db_path: Path, market_key: str, target: str, owner: str, ttl: pd.Timedelta) -> bool:
    """Take the (market_key, target) marker unless a fresh one is held by someone else."""
    now = pd.Timestamp.now(tz="UTC").tz_localize(None)
    with transaction(db_path) as con:
        con.execute(
            f"DELETE FROM {MARKERS_TABLE} WHERE market_key = ? AND target = ? AND started_at < ?",
            [market_key, target, to_pydatetime(now - ttl)],
        )
    try:
        with transaction(db_path) as con:
            con.execute(
                f"INSERT INTO {MARKERS_TABLE} (market_key, target, owner, started_at) VALUES (?, ?, ?, ?)",
                [market_key, target, owner, to_pydatetime(now)],
            )
    except duckdb.ConstraintException:
        return False
    return True


def release_marker(db_path: Path, market_key: str, target: str, owner: str) -> None:
    with connection(db_path) as con:
        con.execute(
            f"DELETE FROM {MARKERS_TABLE} WHERE market_key = ? AND target = ? AND owner = ?",
            [market_key, target, owner],
        )


def get_state(con, name: str, default: int = 0) -> int:
    res = con.execute(f"SELECT value FROM {STATE_TABLE} WHERE name = ?", [name]).fetchone()
    return default if res is None else int(res[0])


def set_state(con, name: str, value: int) -> None:
    if con.execute(f"SELECT 1 FROM {STATE_TABLE} WHERE name = ?", [name]).fetchone() is None:
        con.execute(f"INSERT INTO {STATE_TABLE} (name, value) VALUES (?, ?)", [name, int(value)])
    else:
        con.execute(f"UPDATE {STATE_TABLE} SET value = ? WHERE name = ?", [int(value), name])


# ---------------------------------------------------------------------------
# Stats and administration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HealthStats:
    tick_count: int
    market_count: int
    candle_1m_count: int
    oldest_tick: Optional[pd.Timestamp]
    newest_tick: Optional[pd.Timestamp]
    oldest_candle: Optional[pd.Timestamp]
    newest_candle: Optional[pd.Timestamp]


def _ts_or_none(value) -> Optional[pd.Timestamp]:
    return None if value is None else pd.Timestamp(value)


def health_stats(db_path: Path) -> HealthStats:
    with connection(db_path) as con:
        t = con.execute(
            f"SELECT COUNT(*), COUNT(DISTINCT market_key), MIN(timestamp), MAX(timestamp) FROM {TICKS_TABLE}"
        ).fetchone()
        c = con.execute(f"SELECT COUNT(*), MIN(bucket_start), MAX(bucket_start) FROM {CANDLES_1M_TABLE}").fetchone()
    return HealthStats(
        tick_count=int(t[0]),
        market_count=int(t[1]),
        candle_1m_count=int(c[0]),
        oldest_tick=_ts_or_none(t[2]),
        newest_tick=_ts_or_none(t[3]),
        oldest_candle=_ts_or_none(c[1]),
        newest_candle=_ts_or_none(c[2]),
    )


def latest_price(db_path: Path, market_key: str) -> Optional[float]:
    with connection(db_path) as con:
        res = con.execute(
            f"SELECT close FROM {CANDLES_1M_TABLE} WHERE market_key = ? ORDER BY bucket_start DESC LIMIT 1",
            [market_key],
        ).fetchone()
    return None if res is None else float(res[0])


def available_markets(db_path: Path) -> List[str]:
    with connection(db_path) as con:
        rows = con.execute(f"SELECT DISTINCT market_key FROM {CANDLES_1M_TABLE} ORDER BY market_key").fetchall()
    return [r[0] for r in rows]


def purge_market(db_path: Path, market_key: str) -> Dict[str, int]:
    """Irreversibly delete every raw and derived row for market_key."""
    deleted: Dict[str, int] = {}
    with transaction(db_path) as con:
        for table in MARKET_TABLES:
            deleted[table] = count_rows(con, table, "market_key = ?", [market_key])
            con.execute(f"DELETE FROM {table} WHERE market_key = ?", [market_key])
    return deleted
