from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from shared.db import connect, init_schema
from strategy_search.engine.types import BacktestResult, OptimizationResult
from strategy_search.strategies.theory import Theory, theory_id


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _ts(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class ResultStore:
    """Sqlite sink for finished backtests and optimizations."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = init_schema(db_path)
        self._lock = threading.Lock()

    def _insert_backtest(self, db: sqlite3.Connection, result: BacktestResult, label: str) -> int:
        cur = db.execute(
            """INSERT INTO backtest_results
               (ts_utc, label, strategy_name, start_date, end_date, final_equity, total_trades,
                win_rate, profit_factor, max_drawdown, sharpe_ratio, sortino_ratio, metrics_json)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)""",
            (
                _utc_now_iso(),
                label,
                result.strategy_name,
                _ts(result.start_date),
                _ts(result.end_date),
                result.final_equity,
                result.total_trades,
                result.win_rate,
                result.profit_factor,
                result.max_drawdown,
                result.sharpe_ratio,
                result.sortino_ratio,
                json.dumps(result.as_dict(), default=str),
            ),
        )
        backtest_id = int(cur.lastrowid)
        db.executemany(
            """INSERT INTO trades
               (backtest_id, trade_id, symbol, direction, entry_price, exit_price, quantity,
                open_time, close_time, realized_pnl, exit_reason)
               VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
            [
                (
                    backtest_id,
                    t.id,
                    t.symbol,
                    t.direction.name,
                    t.entry_price,
                    t.exit_price,
                    t.quantity,
                    _ts(t.open_time),
                    _ts(t.close_time),
                    t.realized_pnl,
                    t.exit_reason,
                )
                for t in result.trades
            ],
        )
        return backtest_id

    def save_backtest(self, result: BacktestResult, label: str = "") -> int:
        """Persist a backtest with its trades. Returns the row id."""
        with self._lock:
            db = connect(self.db_path)
            try:
                backtest_id = self._insert_backtest(db, result, label or result.strategy_name)
                db.commit()
            finally:
                db.close()
        return backtest_id

    def save_optimization(self, opt: OptimizationResult) -> int:
        theory: Theory = opt.best_theory
        with self._lock:
            db = connect(self.db_path)
            try:
                backtest_id = None
                if opt.backtest_result is not None:
                    backtest_id = self._insert_backtest(db, opt.backtest_result, f"optimized:{theory.name}")
                cur = db.execute(
                    """INSERT INTO optimization_results
                       (ts_utc, theory_id, theory_name, theory_json, backtest_id, initial_fitness,
                        final_fitness, improvement_pct, optimization_seconds)
                       VALUES (?,?,?,?,?,?,?,?,?)""",
                    (
                        _utc_now_iso(),
                        theory_id(theory),
                        theory.name,
                        json.dumps(theory.to_dict()),
                        backtest_id,
                        opt.initial_fitness,
                        opt.final_fitness,
                        opt.improvement_percentage,
                        opt.optimization_seconds,
                    ),
                )
                optimization_id = int(cur.lastrowid)
                db.executemany(
                    """INSERT INTO generation_results
                       (optimization_id, generation, best_fitness, generation_best_fitness,
                        average_fitness, worst_fitness)
                       VALUES (?,?,?,?,?,?)""",
                    [
                        (
                            optimization_id,
                            g.generation,
                            g.best_fitness,
                            g.generation_best_fitness,
                            g.average_fitness,
                            g.worst_fitness,
                        )
                        for g in opt.generation_results
                    ],
                )
                db.commit()
            finally:
                db.close()
        return optimization_id

    def load_optimizations(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Stored optimizations, best final fitness first, with the theory rebuilt."""
        sql = """SELECT o.*, b.sharpe_ratio, b.max_drawdown, b.win_rate, b.profit_factor,
                        b.total_trades, b.final_equity
                 FROM optimization_results o
                 LEFT JOIN backtest_results b ON b.id = o.backtest_id
                 ORDER BY o.final_fitness DESC, o.id ASC"""
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        db = connect(self.db_path)
        try:
            rows = db.execute(sql, params).fetchall()
            out: list[dict[str, Any]] = []
            for row in rows:
                item = dict(row)
                item["theory"] = Theory.from_dict(json.loads(item.pop("theory_json")))
                gens = db.execute(
                    "SELECT * FROM generation_results WHERE optimization_id = ? ORDER BY generation",
                    (item["id"],),
                ).fetchall()
                item["generations"] = [dict(g) for g in gens]
                out.append(item)
        finally:
            db.close()
        return out
