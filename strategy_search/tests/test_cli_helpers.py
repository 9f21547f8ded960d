from __future__ import annotations

import argparse
import json
from pathlib import Path

import pandas as pd
import pytest

from strategy_search.cli import _build_strategy, _parse_params, _parse_ts, _write_run_artifacts
from strategy_search.engine.types import BacktestResult, GenerationResult, OptimizationResult, Trade
from strategy_search.strategies.evaluator import TheoryStrategy
from strategy_search.strategies.generator import TheoryGenerator
from strategy_search.strategies.sma_cross import SMACrossStrategy


def test_parse_params_and_timestamps() -> None:
    assert _parse_params(["FastPeriod=5", " SlowPeriod =30.5"]) == {"FastPeriod": 5.0, "SlowPeriod": 30.5}
    with pytest.raises(ValueError):
        _parse_params(["FastPeriod"])
    assert _parse_ts("2024-01-01") == pd.Timestamp("2024-01-01", tz="UTC")
    assert _parse_ts("2024-01-01T02:00:00+02:00") == pd.Timestamp("2024-01-01", tz="UTC")


def test_build_strategy_from_theory_file(tmp_path: Path) -> None:
    theory = TheoryGenerator(seed=3).generate_theory(["BTCUSD"])
    p = tmp_path / "theory.json"
    p.write_text(json.dumps(theory.to_dict()), encoding="utf-8")

    strat = _build_strategy(argparse.Namespace(theory_json=str(p)))
    assert isinstance(strat, TheoryStrategy)
    assert strat.theory == theory
    assert isinstance(_build_strategy(argparse.Namespace(theory_json=None)), SMACrossStrategy)


def test_run_artifacts_are_written(tmp_path: Path) -> None:
    theory = TheoryGenerator(seed=4).generate_theory(["BTCUSD"])
    start = pd.Timestamp("2023-01-01", tz="UTC")
    trade = Trade(symbol="BTCUSD", entry_price=100.0, quantity=1.0, open_time=start)
    trade.close(101.0, start + pd.Timedelta(days=1), "signal")
    result = BacktestResult(start_date=start, end_date=start + pd.Timedelta(days=30), trades=[trade])
    opt = OptimizationResult(
        best_theory=theory,
        backtest_result=result,
        generation_results=[GenerationResult(0, 0.1, 0.1, 0.05, 0.0)],
        base_theory=theory,
    )
    cfg_path = tmp_path / "search.yml"
    cfg_path.write_text("symbols: [BTCUSD]\n", encoding="utf-8")

    run_dir = tmp_path / "run"
    _write_run_artifacts(run_dir, [opt], cfg_path)

    payload = json.loads((run_dir / "results.json").read_text(encoding="utf-8"))
    assert payload[0]["theory"]["name"] == theory.name
    assert payload[0]["generations"][0]["generation"] == 0
    assert payload[0]["initial_backtest"] is None
    assert (run_dir / "config_snapshot.yml").read_text(encoding="utf-8") == "symbols: [BTCUSD]\n"
    trades = pd.read_parquet(run_dir / "trades.parquet")
    assert list(trades["label"]) == [theory.name]
    assert trades["realized_pnl"].iloc[0] == pytest.approx(1.0)
