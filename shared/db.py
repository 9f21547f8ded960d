import os
import sqlite3
from pathlib import Path
from typing import Optional

DB_PATH_DEFAULT = Path("data/strategy_search.sqlite3")

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS event_log (
    id      INTEGER PRIMARY KEY AUTOINCREMENT,
    ts_utc  TEXT NOT NULL,
    level   TEXT NOT NULL,
    message TEXT NOT NULL
);

-- BACKTEST / OPTIMIZATION RESULTS

CREATE TABLE IF NOT EXISTS backtest_results (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    ts_utc          TEXT    NOT NULL,
    label           TEXT    NOT NULL,
    strategy_name   TEXT,
    start_date      TEXT,
    end_date        TEXT,
    final_equity    REAL,
    total_trades    INTEGER,
    win_rate        REAL,
    profit_factor   REAL,
    max_drawdown    REAL,
    sharpe_ratio    REAL,
    sortino_ratio   REAL,
    metrics_json    TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS trades (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    backtest_id     INTEGER NOT NULL,
    trade_id        TEXT    NOT NULL,
    symbol          TEXT    NOT NULL,
    direction       TEXT    NOT NULL,
    entry_price     REAL    NOT NULL,
    exit_price      REAL,
    quantity        REAL    NOT NULL,
    open_time       TEXT    NOT NULL,
    close_time      TEXT,
    realized_pnl    REAL,
    exit_reason     TEXT,
    FOREIGN KEY (backtest_id) REFERENCES backtest_results(id)
);

CREATE INDEX IF NOT EXISTS idx_trades_backtest
    ON trades (backtest_id);

CREATE TABLE IF NOT EXISTS optimization_results (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    ts_utc                  TEXT    NOT NULL,
    theory_id               TEXT    NOT NULL,
    theory_name             TEXT    NOT NULL,
    theory_json             TEXT    NOT NULL,
    backtest_id             INTEGER,
    initial_fitness         REAL,
    final_fitness           REAL,
    improvement_pct         REAL,
    optimization_seconds    REAL,
    FOREIGN KEY (backtest_id) REFERENCES backtest_results(id)
);

CREATE TABLE IF NOT EXISTS generation_results (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    optimization_id         INTEGER NOT NULL,
    generation              INTEGER NOT NULL,
    best_fitness            REAL    NOT NULL,
    generation_best_fitness REAL    NOT NULL,
    average_fitness         REAL    NOT NULL,
    worst_fitness           REAL    NOT NULL,
    FOREIGN KEY (optimization_id) REFERENCES optimization_results(id)
);
"""


def get_db_path() -> Path:
    p = os.getenv("STRATSEARCH_DB_PATH", "").strip()
    return Path(p) if p else DB_PATH_DEFAULT


def connect(db_path: Optional[Path] = None) -> sqlite3.Connection:
    db_path = Path(db_path) if db_path is not None else get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_schema(db_path: Optional[Path] = None) -> Path:
    conn = connect(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()
    return Path(db_path) if db_path is not None else get_db_path()
